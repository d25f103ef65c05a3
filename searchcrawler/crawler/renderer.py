"""
Headless browser rendering for JavaScript-driven pages (Playwright).
"""

import asyncio
import logging
from typing import Dict, Optional
from dataclasses import dataclass, field

from playwright.async_api import async_playwright, Browser, Page, Playwright
from playwright.async_api import Error as PlaywrightError


class RenderError(Exception):
    """Navigation or selector wait failed while rendering a page."""
    pass


@dataclass
class RenderResult:
    """Result of a rendered fetch."""
    final_url: str
    html: str
    metadata: Dict[str, str] = field(default_factory=dict)


AUTO_SCROLL_SCRIPT = """
async ([distance, maxDistance]) => {
    await new Promise((resolve) => {
        let totalHeight = 0;
        const timer = setInterval(() => {
            const scrollHeight = document.body.scrollHeight;
            window.scrollBy(0, distance);
            totalHeight += distance;
            if (totalHeight >= scrollHeight || totalHeight > maxDistance) {
                clearInterval(timer);
                resolve();
            }
        }, 100);
    });
}
"""

METADATA_SCRIPT = """
() => {
    const metadata = {};
    document.querySelectorAll('meta').forEach((tag) => {
        const name = tag.getAttribute('name') || tag.getAttribute('property');
        const content = tag.getAttribute('content');
        if (name && content) {
            metadata[name] = content;
        }
    });
    const canonical = document.querySelector('link[rel="canonical"]');
    if (canonical && canonical.getAttribute('href')) {
        metadata.canonical = canonical.getAttribute('href');
    }
    return metadata;
}
"""


class PageRenderer:
    """
    Renders pages in a shared headless Chromium.

    The browser is launched on first use and shared by every worker; each
    render opens its own page, which is always closed afterwards.
    """

    def __init__(self, user_agent: str, timeout: float = 10.0,
                 wait_for_selector: str = 'body', scroll_to_bottom: bool = True,
                 scroll_step: int = 100, max_scroll_distance: int = 10000,
                 settle_time_ms: int = 1000, headless: bool = True):
        self.user_agent = user_agent
        self.timeout = timeout
        self.wait_for_selector = wait_for_selector
        self.scroll_to_bottom = scroll_to_bottom
        self.scroll_step = scroll_step
        self.max_scroll_distance = max_scroll_distance
        self.settle_time_ms = settle_time_ms
        self.headless = headless

        self.logger = logging.getLogger(__name__)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()
        self._closed = False

        self.stats = {
            'pages_rendered': 0,
            'render_errors': 0
        }

    async def _get_browser(self) -> Browser:
        """Get or lazily launch the shared browser."""
        if self._closed:
            raise RenderError("Renderer has been closed")

        async with self._launch_lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=[
                        '--no-sandbox',
                        '--disable-setuid-sandbox',
                        '--disable-dev-shm-usage',
                        '--disable-gpu',
                    ]
                )
                self.logger.info("Headless browser launched")
        return self._browser

    async def render(self, url: str) -> RenderResult:
        """
        Navigate to url, wait for content, scroll lazy content into view and
        return the rendered HTML.
        """
        browser = await self._get_browser()
        timeout_ms = self.timeout * 1000
        page: Optional[Page] = None

        try:
            page = await browser.new_page(
                user_agent=self.user_agent,
                viewport={'width': 1920, 'height': 1080}
            )
            page.set_default_navigation_timeout(timeout_ms)

            self.logger.info(f"Rendering {url}")
            await page.goto(url, wait_until='networkidle', timeout=timeout_ms)
            await page.wait_for_selector(self.wait_for_selector, timeout=timeout_ms)

            if self.scroll_to_bottom:
                await page.evaluate(AUTO_SCROLL_SCRIPT, [self.scroll_step, self.max_scroll_distance])

            await page.wait_for_timeout(self.settle_time_ms)

            html = await page.content()
            metadata = await page.evaluate(METADATA_SCRIPT)
            self.stats['pages_rendered'] += 1

            return RenderResult(final_url=page.url, html=html, metadata=metadata or {})

        except PlaywrightError as e:
            self.stats['render_errors'] += 1
            raise RenderError(f"Failed to render {url}: {e}") from e

        finally:
            if page is not None:
                try:
                    await page.close()
                except PlaywrightError as e:
                    self.logger.warning(f"Error closing page for {url}: {e}")

    async def close(self):
        """Close the shared browser. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self.logger.info("Headless browser closed")

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()
