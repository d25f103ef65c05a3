"""
Web page fetcher implementation with robots.txt support.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Optional, Dict
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser
from dataclasses import dataclass
from aiohttp import ClientSession, ClientTimeout, ClientError


MAX_REDIRECTS = 5
MAX_CONTENT_SIZE = 10 * 1024 * 1024
READ_CHUNK_SIZE = 8192

TEXT_CONTENT_TYPES = (
    'text/html',
    'text/plain',
    'text/xml',
    'application/xml',
    'application/xhtml+xml',
    'application/json',
    'application/ld+json',
)


class FetchError(Exception):
    """Network failure, timeout or non-2xx response."""

    def __init__(self, url: str, message: str, status_code: int = 0):
        super().__init__(f"Failed to fetch {url}: {message}")
        self.url = url
        self.status_code = status_code


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    encoding: Optional[str] = None
    final_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300

    def raise_for_error(self):
        if not self.ok:
            raise FetchError(self.url, self.error or f"HTTP {self.status_code}", self.status_code)


class RobotsChecker:
    """Manages robots.txt checking, one cached parser per origin."""

    def __init__(self, user_agent: str, request_timeout: float = 10):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.robots_cache: Dict[str, RobotFileParser] = {}
        self.robots_check_time: Dict[str, float] = {}
        self.cache_ttl = 3600  # 1 hour cache TTL
        self.logger = logging.getLogger(__name__)

    def _get_origin(self, url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    async def is_allowed(self, url: str, session: ClientSession,
                         user_agent: Optional[str] = None) -> bool:
        """Check if URL can be fetched according to robots.txt."""
        user_agent = user_agent or self.user_agent
        origin = self._get_origin(url)
        current_time = time.time()

        if (origin in self.robots_cache and
                current_time - self.robots_check_time.get(origin, 0) < self.cache_ttl):
            return self.robots_cache[origin].can_fetch(user_agent, url)

        robots_url = urljoin(origin, '/robots.txt')
        rp = RobotFileParser()
        rp.set_url(robots_url)
        try:
            async with session.get(robots_url, timeout=ClientTimeout(total=self.request_timeout)) as response:
                if response.status == 200:
                    rp.parse((await response.text()).splitlines())
                else:
                    # Missing robots.txt allows everything
                    rp.parse([])
        except (ClientError, asyncio.TimeoutError) as e:
            self.logger.warning(f"Could not fetch robots.txt for {origin}: {e}")
            rp.parse([])

        self.robots_cache[origin] = rp
        self.robots_check_time[origin] = current_time
        return rp.can_fetch(user_agent, url)


class WebFetcher:
    """
    Fetches web pages with connection pooling, robots.txt compliance and
    size-limited reads.
    """

    def __init__(self, user_agent: str, request_timeout: float = 10,
                 max_concurrent_requests: int = 10, respect_robots_txt: bool = True,
                 follow_redirects: bool = True):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.respect_robots_txt = respect_robots_txt
        self.follow_redirects = follow_redirects

        self.logger = logging.getLogger(__name__)
        self.robots_checker = RobotsChecker(user_agent, request_timeout) if respect_robots_txt else None

        # Session management
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'robots_blocked': 0,
            'oversized_responses': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    limit_per_host=10,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def is_allowed(self, url: str) -> bool:
        """Robots permission for url; always True when robots.txt is ignored."""
        if not self.respect_robots_txt or not self.robots_checker:
            return True
        await self.start()
        allowed = await self.robots_checker.is_allowed(url, self.session)
        if not allowed:
            self.stats['robots_blocked'] += 1
        return allowed

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult object containing the response data or error information
        """
        await self.start()
        start_time = time.time()

        async with self.semaphore:
            try:
                self.stats['total_requests'] += 1

                async with self.session.get(
                    url,
                    allow_redirects=self.follow_redirects,
                    max_redirects=MAX_REDIRECTS
                ) as response:
                    fetch_time = time.time() - start_time
                    headers = dict(response.headers)
                    content_type = response.headers.get('content-type', '').lower()
                    error = None if 200 <= response.status < 300 else f"HTTP {response.status}"

                    # Only download text content
                    if not self._is_text_content(content_type):
                        self.logger.debug(f"Not downloading non-text content: {url} ({content_type})")
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            headers=headers,
                            content_type=content_type,
                            error=error,
                            fetch_time=fetch_time,
                            final_url=str(response.url)
                        )

                    content = await self._read_content_safely(response)

                    if error:
                        self.stats['failed_requests'] += 1
                    else:
                        self.stats['successful_requests'] += 1
                    if content:
                        self.stats['total_bytes_downloaded'] += len(content)

                    self.logger.debug(f"Fetched {url}: {response.status} ({len(content) if content else 0} bytes)")
                    return FetchResult(
                        url=url,
                        status_code=response.status,
                        content=content,
                        headers=headers,
                        content_type=content_type,
                        encoding=response.charset,
                        error=error,
                        fetch_time=fetch_time,
                        final_url=str(response.url)
                    )

            except asyncio.TimeoutError:
                self.stats['failed_requests'] += 1
                error_msg = "Request timeout"
                self.logger.warning(f"Timeout fetching {url}")

            except ClientError as e:
                self.stats['failed_requests'] += 1
                error_msg = f"Client error: {str(e)}"
                self.logger.warning(f"Client error fetching {url}: {e}")

            return FetchResult(
                url=url,
                status_code=0,
                error=error_msg,
                fetch_time=time.time() - start_time
            )

    def _is_text_content(self, content_type: str) -> bool:
        return any(text_type in content_type for text_type in TEXT_CONTENT_TYPES)

    async def _read_content_safely(self, response, max_size: int = MAX_CONTENT_SIZE) -> Optional[str]:
        """
        Stream the body, giving up once it exceeds max_size.

        Returns:
            Decoded text, or None for oversized bodies
        """
        declared = response.headers.get('content-length')
        if declared and declared.isdigit() and int(declared) > max_size:
            self.logger.warning(f"Content too large ({declared} bytes): {response.url}")
            self.stats['oversized_responses'] += 1
            return None

        body = bytearray()
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > max_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                self.stats['oversized_responses'] += 1
                return None

        for encoding in (response.charset, 'utf-8', 'cp1252'):
            if not encoding:
                continue
            try:
                return body.decode(encoding)
            except (UnicodeDecodeError, LookupError):
                continue
        return body.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
