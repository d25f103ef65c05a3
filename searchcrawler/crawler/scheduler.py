"""
Crawler scheduler that coordinates crawling tasks and manages the overall crawl process.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set
from dataclasses import dataclass, field

from .url_frontier import URLFrontier, URLTask, TaskStatus, InvalidTransitionError, parent_importance_from_score
from .fetcher import WebFetcher
from .parser import ContentParser, normalize_url
from .rate_limiter import DomainRateLimiter
from .render_strategy import RenderMode, RenderStrategySelector
from .renderer import PageRenderer
from ..storage.database import DatabaseManager, DatabaseError
from ..storage.state_tracker import CrawlStateTracker, StateTrackerError, create_state_tracker
from ..utils.config import Config
from ..utils.logger import CrawlerLogAdapter, get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


STATS_REPORT_INTERVAL = 10
STOP_POLL_INTERVAL = 0.5


class StartupError(Exception):
    """The crawl could not start, e.g. a store is unreachable."""
    pass


@dataclass
class CrawlSession:
    """Run state of one crawl, owned by the scheduler."""
    max_pages: int
    concurrency: int
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    is_running: bool = True
    total_processed: int = 0
    in_progress_count: int = 0
    active_workers: int = 0
    completed: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def elapsed_time(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def pages_per_second(self) -> float:
        elapsed = self.elapsed_time
        return self.total_processed / elapsed if elapsed > 0 else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_running': self.is_running,
            'total_processed': self.total_processed,
            'in_progress': self.in_progress_count,
            'active_workers': self.active_workers,
            'completed': self.completed,
            'errors': self.errors,
            'skipped': self.skipped,
            'elapsed_time': self.elapsed_time,
            'pages_per_second': self.pages_per_second
        }


@dataclass
class FetchedPage:
    """HTML obtained for a task, by plain HTTP or by the browser."""
    url: str
    final_url: str
    html: Optional[str]
    content_type: Optional[str]
    rendered: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)


class CrawlerScheduler:
    """
    Main scheduler that coordinates all crawler components.

    Runs a fixed pool of workers over either the in-memory priority frontier
    or the store-backed task tracker. Session counters are only changed in
    synchronous sections, so they stay consistent across workers sharing the
    event loop.
    """

    def __init__(self, config: Config,
                 fetcher: Optional[WebFetcher] = None,
                 renderer: Optional[PageRenderer] = None,
                 parser: Optional[ContentParser] = None,
                 database: Optional[DatabaseManager] = None,
                 state_tracker: Optional[CrawlStateTracker] = None,
                 rate_limiter: Optional[DomainRateLimiter] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.priority_mode = config.priority.enabled

        # Components
        self.fetcher = fetcher
        self.renderer = renderer
        self.parser = parser
        self.database = database
        self.state_tracker = state_tracker
        self.rate_limiter = rate_limiter or DomainRateLimiter()
        self.monitor = monitor or CrawlerMonitor()
        self.render_selector = RenderStrategySelector(
            enabled=config.render.enabled,
            auto_detect=config.render.auto_detect,
            url_patterns=config.render.url_patterns
        )
        self.frontier: Optional[URLFrontier] = None

        # Crawl state
        self.session: Optional[CrawlSession] = None
        self.visited: Set[str] = set()
        self.workers: List[asyncio.Task] = []
        self._progress = asyncio.Condition()
        self._finish_lock = asyncio.Lock()
        self._final_stats: Optional[Dict[str, Any]] = None
        self._resources_released = False

    async def initialize(self):
        """Initialize all crawler components. Store failures are fatal."""
        crawler_config = self.config.crawler

        if self.fetcher is None:
            self.fetcher = WebFetcher(
                user_agent=crawler_config.user_agent,
                request_timeout=crawler_config.request_timeout,
                max_concurrent_requests=crawler_config.concurrency,
                respect_robots_txt=crawler_config.respect_robots_txt,
                follow_redirects=crawler_config.follow_redirects
            )

        if self.parser is None:
            self.parser = ContentParser(
                allowed_domains=crawler_config.allowed_domains,
                blocked_domains=crawler_config.blocked_domains
            )

        if self.renderer is None and self.config.render.enabled:
            render_config = self.config.render
            self.renderer = PageRenderer(
                user_agent=crawler_config.user_agent,
                timeout=crawler_config.request_timeout,
                wait_for_selector=render_config.wait_for_selector,
                scroll_to_bottom=render_config.scroll_to_bottom,
                max_scroll_distance=render_config.max_scroll_distance,
                settle_time_ms=render_config.wait_time_ms,
                headless=render_config.headless
            )

        if self.database is None:
            self.database = DatabaseManager(self.config.database)

        if self.state_tracker is None and not self.priority_mode:
            self.state_tracker = create_state_tracker(self.config.database, self.config.redis)

        try:
            await self.database.initialize()
            if self.state_tracker is not None:
                await self.state_tracker.initialize()
        except (DatabaseError, StateTrackerError) as e:
            self.logger.error(f"Failed to initialize crawler scheduler: {e}")
            raise StartupError(str(e)) from e

        await self.fetcher.start()
        self._resources_released = False
        mode = 'priority' if self.priority_mode else 'store-backed'
        self.logger.info(f"Crawler scheduler initialized successfully ({mode} mode)")

    async def start_crawling(self, seed_urls: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Run a crawl until the page cap is reached, the frontier drains or
        stop_crawling() is called.

        Returns:
            Final crawl statistics
        """
        if self.session and self.session.is_running:
            self.logger.warning("Crawler is already running")
            return self.session.to_dict()

        crawler_config = self.config.crawler
        self.session = CrawlSession(
            max_pages=crawler_config.max_pages,
            concurrency=crawler_config.concurrency
        )
        self.visited = set()
        self._final_stats = None

        seeds = []
        for url in seed_urls if seed_urls is not None else crawler_config.seed_urls:
            normalized = normalize_url(url)
            if normalized:
                seeds.append(normalized)
            else:
                self.logger.warning(f"Ignoring invalid seed URL: {url}")

        await self._add_seed_urls(seeds)

        self.workers = []
        for i in range(self.session.concurrency):
            # counted at spawn so stop_crawling never sees zero before workers run
            self.session.active_workers += 1
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}")))
        self.monitor.update_active_workers(self.session.active_workers)

        self.logger.info(f"Started crawling {len(seeds)} seed URLs with {self.session.concurrency} workers")

        try:
            await asyncio.gather(*self.workers)
        finally:
            self.session.is_running = False
            self.workers = []

        return await self._finish_session()

    async def _add_seed_urls(self, seeds: List[str]):
        if self.priority_mode:
            self.frontier = URLFrontier(
                default_domain_limit=self.config.crawler.max_pages_per_domain,
                important_patterns=self.config.priority.important_patterns
            )
            self.frontier.initialize(seeds, self.config.priority.important_domains)
            self.monitor.update_queue_size(len(self.frontier))
            return

        added = 0
        try:
            for url in seeds:
                if await self.state_tracker.save_url(url, 0, None):
                    added += 1
        except StateTrackerError as e:
            self.session.is_running = False
            raise StartupError(f"Could not persist seed URLs: {e}") from e
        self.logger.info(f"Added {added} seed URLs to the task store")

    async def _worker(self, worker_id: str):
        """
        Pull and process tasks until the cap is reached, the crawl is stopped
        or no work is left anywhere.

        A worker reserves an in-flight slot before pulling, so siblings never
        see an idle crawl while a pull or fetch is underway.
        """
        logger = get_crawler_logger(__name__, worker=worker_id)
        session = self.session
        logger.debug("Worker started")

        try:
            while session.is_running and session.total_processed < session.max_pages:
                if session.total_processed + session.in_progress_count >= session.max_pages:
                    # the remaining budget is held by in-flight tasks
                    await self._wait_for_progress()
                    continue

                session.in_progress_count += 1
                task = None
                try:
                    task = await self._next_task()
                except StateTrackerError as e:
                    logger.error(f"Could not claim next task: {e}")
                finally:
                    if task is None:
                        session.in_progress_count -= 1

                if task is None:
                    if session.in_progress_count == 0:
                        break
                    await self._wait_for_progress()
                    continue

                await self._process_task(task, logger)

        finally:
            session.active_workers -= 1
            self.monitor.update_active_workers(session.active_workers)
            await self._notify_progress()
            logger.debug("Worker finished")

    async def _next_task(self) -> Optional[URLTask]:
        if self.priority_mode:
            task = self.frontier.get_next_url()
            self.monitor.update_queue_size(len(self.frontier))
            return task
        return await self.state_tracker.claim_next_pending(self.config.crawler.max_depth)

    async def _wait_for_progress(self):
        """Sleep until a sibling finishes a task, at most one backoff interval."""
        async with self._progress:
            try:
                await asyncio.wait_for(self._progress.wait(), self.config.crawler.backoff_interval)
            except asyncio.TimeoutError:
                pass

    async def _notify_progress(self):
        async with self._progress:
            self._progress.notify_all()

    async def _process_task(self, task: URLTask, logger: CrawlerLogAdapter):
        """Run one claimed task through the pipeline and settle its status."""
        session = self.session

        if task.url in self.visited:
            logger.debug(f"Already visited, skipping {task.url}")
            if task.status is TaskStatus.PROCESSING:
                await self._set_status(task, TaskStatus.COMPLETED, logger)
            session.in_progress_count -= 1
            await self._notify_progress()
            return

        self.visited.add(task.url)
        if task.status is TaskStatus.PENDING:
            task.transition_to(TaskStatus.PROCESSING)
        self.monitor.update_in_progress(session.in_progress_count)

        indexed = False
        status = TaskStatus.ERROR
        try:
            indexed = await self._run_pipeline(task, logger)
            status = TaskStatus.COMPLETED
        except Exception as e:
            await self._record_task_error(task, e, logger)
        finally:
            await self._set_status(task, status, logger)

            if status is TaskStatus.COMPLETED:
                session.completed += 1
                if indexed:
                    session.total_processed += 1
                    self.monitor.record_completed()
                else:
                    session.skipped += 1
            else:
                session.errors += 1
            session.in_progress_count -= 1
            self.monitor.update_in_progress(session.in_progress_count)
            await self._notify_progress()

        if indexed and session.total_processed % STATS_REPORT_INTERVAL == 0:
            await self._report_progress()

    async def _run_pipeline(self, task: URLTask, logger: CrawlerLogAdapter) -> bool:
        """
        Fetch, extract, persist and expand one task.

        Returns:
            True if a page was indexed, False if the task was skipped
        """
        if not await self.fetcher.is_allowed(task.url):
            logger.log_url_event(logging.INFO, task.url, "Disallowed by robots.txt")
            self.monitor.record_skipped('robots')
            return False

        await self.rate_limiter.acquire(task.domain, self.config.crawler.request_delay_ms)

        fetched = await self._fetch_page(task.url, logger)

        if not self.parser.should_crawl_content_type(fetched.content_type):
            logger.log_url_event(logging.DEBUG, task.url, "Skipping non-HTML content",
                                 content_type=fetched.content_type)
            self.monitor.record_skipped('content_type')
            return False

        if not fetched.html:
            logger.log_url_event(logging.WARNING, task.url, "Empty or oversized response body")
            self.monitor.record_skipped('empty_body')
            return False

        page = self.parser.extract_page_data(fetched.html, task.url)
        page.final_url = fetched.final_url
        page.rendered = fetched.rendered
        for key, value in fetched.metadata.items():
            page.metadata.setdefault(key, value)
        links = self.parser.extract_links(fetched.html, fetched.final_url)

        try:
            if not await self.database.save_page(page):
                logger.log_url_event(logging.WARNING, task.url, "Failed to store page")
        except DatabaseError as e:
            logger.error(f"Failed to store page {task.url}: {e}")

        if task.depth < self.config.crawler.max_depth:
            await self._enqueue_links(task, links, logger)

        logger.log_url_event(logging.INFO, task.url, "Crawled page",
                             depth=task.depth, links=len(links), rendered=fetched.rendered)
        return True

    async def _fetch_page(self, url: str, logger: CrawlerLogAdapter) -> FetchedPage:
        """Fetch url plainly or through the browser, re-rendering script-driven pages."""
        if self.render_selector.decide(url) is RenderMode.RENDERED:
            self.monitor.record_render('pattern')
            return await self._render_page(url)

        result = await self.fetcher.fetch(url)
        result.raise_for_error()
        fetched = FetchedPage(
            url=url,
            final_url=result.final_url or url,
            html=result.content,
            content_type=result.content_type
        )

        if (fetched.html and self.parser.should_crawl_content_type(fetched.content_type)
                and self.render_selector.decide(url, fetched.html) is RenderMode.RENDERED):
            logger.log_url_event(logging.INFO, url, "Re-fetching with headless browser")
            self.monitor.record_render('auto_detect')
            return await self._render_page(url)

        return fetched

    async def _render_page(self, url: str) -> FetchedPage:
        result = await self.renderer.render(url)
        return FetchedPage(
            url=url,
            final_url=result.final_url or url,
            html=result.html,
            content_type='text/html',
            rendered=True,
            metadata=result.metadata
        )

    async def _enqueue_links(self, task: URLTask, links: List[str], logger: CrawlerLogAdapter):
        """Queue unvisited links one level deeper than task."""
        depth = task.depth + 1
        added = 0

        if self.priority_mode:
            parent_importance = parent_importance_from_score(task.priority_score)
            for link in links:
                if link in self.visited:
                    continue
                if self.frontier.add_url(link, depth=depth, parent_url=task.url,
                                         parent_importance=parent_importance):
                    added += 1
            self.monitor.update_queue_size(len(self.frontier))
        else:
            for link in links:
                if link in self.visited:
                    continue
                try:
                    if await self.state_tracker.save_url(link, depth, task.url):
                        added += 1
                except StateTrackerError as e:
                    logger.error(f"Could not queue {link}: {e}")

        if added:
            logger.debug(f"Queued {added} new URLs from {task.url}")
            await self._notify_progress()

    async def _set_status(self, task: URLTask, status: TaskStatus, logger: CrawlerLogAdapter):
        try:
            if task.status is not status:
                task.transition_to(status)
            if self.state_tracker is not None and not self.priority_mode:
                await self.state_tracker.update_status(task.url, status)
        except (StateTrackerError, InvalidTransitionError) as e:
            logger.error(f"Could not mark {task.url} as {status.value}: {e}")

    async def _record_task_error(self, task: URLTask, error: Exception, logger: CrawlerLogAdapter):
        logger.log_url_event(logging.ERROR, task.url, f"Error processing page: {error}",
                             error_type=type(error).__name__)
        self.monitor.record_error(type(error).__name__)
        try:
            await self.database.log_crawl_error(task.url, error)
        except DatabaseError as e:
            logger.error(f"Could not record error for {task.url}: {e}")

    async def _report_progress(self):
        """Log a statistics snapshot."""
        try:
            stats = await self.get_crawler_stats()
        except (DatabaseError, StateTrackerError) as e:
            self.logger.warning(f"Could not collect crawl statistics: {e}")
            return

        session = self.session
        urls = stats['urls']
        self.logger.info(
            f"Crawl Progress: "
            f"Processed={session.total_processed}, "
            f"Pending={urls['pending']}, "
            f"Processing={urls['processing']}, "
            f"Completed={urls['completed']}, "
            f"Errors={urls['error']}, "
            f"Pages={stats['pages']}, "
            f"Rate={session.pages_per_second:.2f} pages/s"
        )

    async def get_crawler_stats(self) -> Dict[str, Any]:
        """Aggregate URL task counts and stored page/error counts."""
        if self.state_tracker is not None:
            urls = await self.state_tracker.get_stats()
        else:
            urls = self._session_url_stats()

        db_stats = await self.database.get_stats()
        return {
            'urls': urls,
            'pages': db_stats.get('pages', 0),
            'errors': db_stats.get('errors', 0)
        }

    def _session_url_stats(self) -> Dict[str, int]:
        session = self.session
        pending = len(self.frontier) if self.frontier else 0
        if session is None:
            return {'total': pending, 'pending': pending, 'processing': 0, 'completed': 0, 'error': 0}

        return {
            'total': pending + session.in_progress_count + session.completed + session.errors,
            'pending': pending,
            'processing': session.in_progress_count,
            'completed': session.completed,
            'error': session.errors
        }

    async def _finish_session(self) -> Dict[str, Any]:
        """Log final statistics and release resources, once per session."""
        async with self._finish_lock:
            if self._final_stats is not None:
                return self._final_stats

            session = self.session
            session.is_running = False
            session.end_time = time.time()

            final_stats = {'session': session.to_dict(), 'monitor': self.monitor.get_summary()}
            try:
                final_stats.update(await self.get_crawler_stats())
            except (DatabaseError, StateTrackerError) as e:
                self.logger.warning(f"Could not collect final statistics: {e}")

            self.logger.info("=== CRAWL COMPLETED ===")
            self.logger.info(f"Total pages processed: {session.total_processed}")
            self.logger.info(f"Completed tasks: {session.completed} (skipped: {session.skipped})")
            self.logger.info(f"Errors: {session.errors}")
            self.logger.info(f"Total time: {session.elapsed_time:.2f} seconds")
            self.logger.info(f"Average rate: {session.pages_per_second:.2f} pages/s")
            if self.frontier:
                self.logger.info(f"Frontier stats: {self.frontier.get_stats()}")
            self.logger.info(f"Fetcher stats: {self.fetcher.get_stats()}")
            if self.renderer:
                self.logger.info(f"Renderer stats: {self.renderer.get_stats()}")

            self._final_stats = final_stats
            await self._release_resources()
            return final_stats

    async def stop_crawling(self) -> Optional[Dict[str, Any]]:
        """Stop the crawling process gracefully, waiting for in-flight tasks."""
        if self.session is None:
            return None

        self.logger.info("Stopping crawler...")
        self.session.is_running = False
        await self._notify_progress()

        while self.session.active_workers > 0:
            await asyncio.sleep(STOP_POLL_INTERVAL)

        return await self._finish_session()

    async def _release_resources(self):
        """Close the browser, stores and HTTP session. Safe to call more than once."""
        if self._resources_released:
            return
        self._resources_released = True

        if self.renderer:
            await self.renderer.close()
        if self.state_tracker:
            await self.state_tracker.close()
        if self.database:
            await self.database.close()
        if self.fetcher:
            await self.fetcher.close()
        self.logger.info("Crawler resources released")

    async def close(self):
        """Close all connections and cleanup resources."""
        if self.session and self.session.is_running:
            await self.stop_crawling()
        await self._release_resources()
        self.logger.info("Crawler scheduler closed")
