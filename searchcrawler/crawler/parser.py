"""
Web page parser for extracting page data and outbound links.
"""

import re
import json
import logging
from datetime import datetime, timezone
from typing import List, Dict, Optional, Any
from urllib.parse import urljoin, urlparse, urlunparse
from dataclasses import dataclass, field
from bs4 import BeautifulSoup, Comment


CRAWLABLE_CONTENT_TYPES = ('text/html', 'application/xhtml+xml')

SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.ico', '.woff', '.woff2', '.ttf', '.eot'
)


def normalize_url(url: str, base_url: Optional[str] = None) -> Optional[str]:
    """
    Canonical form used for dedup: scheme and host lower-cased, fragment
    dropped, one trailing slash dropped, query kept.

    Returns None for anything that is not an absolute http(s) URL.
    """
    if not url:
        return None
    try:
        absolute = urljoin(base_url, url.strip()) if base_url else url.strip()
        parsed = urlparse(absolute)
    except ValueError:
        return None

    scheme = parsed.scheme.lower()
    if scheme not in ('http', 'https') or not parsed.netloc:
        return None

    path = parsed.path
    if path.endswith('/'):
        path = path[:-1]

    return urlunparse((scheme, parsed.netloc.lower(), path, parsed.params, parsed.query, ''))


def extract_domain(url: str) -> Optional[str]:
    """Extract the host name of a URL."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    return hostname.lower() if hostname else None


def should_crawl_content_type(content_type: Optional[str]) -> bool:
    """Only HTML and XHTML responses are crawled."""
    if not content_type:
        return False
    content_type = content_type.lower()
    return any(ct in content_type for ct in CRAWLABLE_CONTENT_TYPES)


@dataclass
class PageData:
    """Container for data extracted from a crawled page."""
    url: str
    title: str = ''
    description: str = ''
    keywords: str = ''
    h1: List[str] = field(default_factory=list)
    h2: List[str] = field(default_factory=list)
    body_text: str = ''
    structured_data: List[Any] = field(default_factory=list)
    images: List[Dict[str, str]] = field(default_factory=list)
    language: Optional[str] = None
    canonical_url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    word_count: int = 0
    domain: Optional[str] = None
    final_url: Optional[str] = None
    rendered: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if self.domain is None:
            self.domain = extract_domain(self.url)


class ContentParser:
    """
    Parses HTML content to extract page data, metadata and links.
    """

    def __init__(self, allowed_domains: Optional[List[str]] = None,
                 blocked_domains: Optional[List[str]] = None):
        self.allowed_domains = set(allowed_domains) if allowed_domains else set()
        self.blocked_domains = set(blocked_domains) if blocked_domains else set()
        self.logger = logging.getLogger(__name__)

        self.whitespace_pattern = re.compile(r'\s+')

    def extract_page_data(self, html: str, url: str) -> PageData:
        """
        Parse HTML content and extract structured page data.

        Args:
            html: Raw HTML content
            url: The URL of the page

        Returns:
            PageData object with extracted data
        """
        soup = BeautifulSoup(html, 'lxml')
        page_data = PageData(url=url)

        # JSON-LD has to be read before scripts are stripped
        self._extract_structured_data(soup, page_data)

        for element in soup(['script', 'style', 'noscript', 'iframe', 'object']):
            element.decompose()
        for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
            comment.extract()

        self._extract_title(soup, page_data)
        self._extract_meta_tags(soup, page_data)
        self._extract_language(soup, page_data)
        self._extract_canonical_url(soup, page_data, url)
        self._extract_headings(soup, page_data)
        self._extract_body_text(soup, page_data)
        self._extract_images(soup, page_data, url)

        if page_data.body_text:
            page_data.word_count = len(page_data.body_text.split())

        self.logger.debug(f"Extracted page data from {url}: {page_data.word_count} words")
        return page_data

    def extract_links(self, html: str, base_url: str) -> List[str]:
        """Extract normalized, deduplicated outbound links."""
        soup = BeautifulSoup(html, 'lxml')
        links = []
        seen = set()

        for element in soup.select('a[href], link[rel="canonical"][href]'):
            href = element.get('href', '').strip()
            if not href or href.startswith('#'):
                continue

            normalized_url = normalize_url(href, base_url)
            if normalized_url and normalized_url not in seen and self._is_valid_url(normalized_url):
                seen.add(normalized_url)
                links.append(normalized_url)

        return links

    def should_crawl_content_type(self, content_type: Optional[str]) -> bool:
        return should_crawl_content_type(content_type)

    def _extract_title(self, soup: BeautifulSoup, page_data: PageData):
        title_tag = soup.find('title')
        if title_tag:
            page_data.title = self._clean_text(title_tag.get_text())

    def _extract_meta_tags(self, soup: BeautifulSoup, page_data: PageData):
        """Extract description, keywords and the flat meta map."""
        for tag in soup.find_all('meta'):
            name = tag.get('name') or tag.get('property')
            content = tag.get('content')
            if name and content:
                page_data.metadata[name] = content

        page_data.description = self._clean_text(
            page_data.metadata.get('description') or page_data.metadata.get('og:description', '')
        )
        page_data.keywords = self._clean_text(page_data.metadata.get('keywords', ''))

    def _extract_language(self, soup: BeautifulSoup, page_data: PageData):
        html_tag = soup.find('html')
        if html_tag:
            page_data.language = html_tag.get('lang') or html_tag.get('xml:lang')

    def _extract_canonical_url(self, soup: BeautifulSoup, page_data: PageData, base_url: str):
        canonical = soup.find('link', attrs={'rel': 'canonical'})
        if canonical and canonical.get('href'):
            page_data.canonical_url = urljoin(base_url, canonical['href'])
            page_data.metadata['canonical'] = page_data.canonical_url

    def _extract_headings(self, soup: BeautifulSoup, page_data: PageData):
        page_data.h1 = [self._clean_text(h.get_text()) for h in soup.find_all('h1') if h.get_text().strip()]
        page_data.h2 = [self._clean_text(h.get_text()) for h in soup.find_all('h2') if h.get_text().strip()]

    def _extract_body_text(self, soup: BeautifulSoup, page_data: PageData):
        body = soup.find('body') or soup
        page_data.body_text = self._clean_text(body.get_text(separator=' ', strip=True))

    def _extract_images(self, soup: BeautifulSoup, page_data: PageData, base_url: str):
        for img in soup.find_all('img', src=True):
            src = img['src'].strip()
            if not src:
                continue
            page_data.images.append({
                'src': urljoin(base_url, src),
                'alt': img.get('alt', ''),
                'title': img.get('title', '')
            })

    def _extract_structured_data(self, soup: BeautifulSoup, page_data: PageData):
        for script in soup.find_all('script', type='application/ld+json'):
            try:
                page_data.structured_data.append(json.loads(script.string or ''))
            except json.JSONDecodeError:
                continue

    def _is_valid_url(self, url: str) -> bool:
        """Check if URL is worth crawling."""
        domain = extract_domain(url)
        if not domain:
            return False

        if any(blocked in domain for blocked in self.blocked_domains):
            return False

        if self.allowed_domains and not any(allowed in domain for allowed in self.allowed_domains):
            return False

        path = urlparse(url).path.lower()
        return not path.endswith(SKIP_EXTENSIONS)

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())
