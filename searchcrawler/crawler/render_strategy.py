"""
Decides whether a URL is fetched with plain HTTP or rendered in a headless browser.
"""

import re
import logging
from enum import Enum
from typing import List, Optional

from bs4 import BeautifulSoup


class RenderMode(Enum):
    PLAIN = 'plain'
    RENDERED = 'rendered'


MIN_BODY_TEXT_LENGTH = 50
SPA_BODY_TEXT_LENGTH = 1000

FRAMEWORK_SELECTORS = (
    # Angular
    '[ng-app], [data-ng-app], [ng-controller], [data-ng-controller], [ng-model]',
    # React
    '[data-reactroot], [data-reactid]',
    # Vue
    '[v-app], [v-bind], [v-model], [v-if], [v-for]',
)
SPA_MOUNT_SELECTOR = '#app, #root, #application, .app, .application'
LAZY_LOAD_SELECTOR = '[data-src], [loading="lazy"]'


def requires_javascript(html: Optional[str]) -> bool:
    """Heuristically detect pages whose content only appears after scripts run."""
    if not html:
        return False

    soup = BeautifulSoup(html, 'lxml')
    body = soup.find('body')
    if body is None:
        body_text = ''
    else:
        for element in body(['script', 'style', 'noscript', 'template']):
            element.decompose()
        body_text = body.get_text(strip=True)

    if len(body_text) < MIN_BODY_TEXT_LENGTH:
        return True

    if any(soup.select_one(selector) for selector in FRAMEWORK_SELECTORS):
        return True

    if soup.select_one(SPA_MOUNT_SELECTOR) and len(body_text) < SPA_BODY_TEXT_LENGTH:
        return True

    return soup.select_one(LAZY_LOAD_SELECTOR) is not None


class RenderStrategySelector:
    """
    Chooses a fetch strategy per URL.

    Decision order: rendering disabled -> plain; URL matches an always-render
    pattern -> rendered; auto-detect on and HTML looks script-driven ->
    rendered; otherwise plain.
    """

    def __init__(self, enabled: bool = False, auto_detect: bool = False,
                 url_patterns: Optional[List[str]] = None):
        self.enabled = enabled
        self.auto_detect = auto_detect
        self.url_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in url_patterns or []]
        self.logger = logging.getLogger(__name__)

    def matches_render_pattern(self, url: str) -> bool:
        return any(pattern.search(url) for pattern in self.url_patterns)

    def decide(self, url: str, html: Optional[str] = None) -> RenderMode:
        if not self.enabled:
            return RenderMode.PLAIN

        if self.matches_render_pattern(url):
            return RenderMode.RENDERED

        if self.auto_detect and html and requires_javascript(html):
            self.logger.info(f"Auto-detected JavaScript-heavy page: {url}")
            return RenderMode.RENDERED

        return RenderMode.PLAIN
