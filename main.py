#!/usr/bin/env python3
"""
Main entry point for the search crawler.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from searchcrawler.api.server import create_app, run_server
from searchcrawler.crawler.scheduler import CrawlerScheduler, StartupError
from searchcrawler.storage.database import DatabaseManager, DatabaseError
from searchcrawler.storage.state_tracker import StateTrackerError, create_state_tracker
from searchcrawler.utils.config import Config, ConfigError, load_config
from searchcrawler.utils.logger import setup_logging, log_system_info
from searchcrawler.utils.monitoring import CrawlerMonitor, MetricsCollector


def parse_url_list(value: str) -> List[str]:
    return [url.strip() for url in value.split(',') if url.strip()]


def parse_boolean(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ('true', 'yes', '1'):
        return True
    if lowered in ('false', 'no', '0'):
        return False
    raise argparse.ArgumentTypeError(f"Expected true or false, got '{value}'")


def build_cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate parsed CLI flags into a config overlay. Unset flags are left out."""
    crawler = {}
    mapping = {
        'urls': 'seed_urls',
        'depth': 'max_depth',
        'pages': 'max_pages',
        'concurrency': 'concurrency',
        'delay': 'request_delay_ms',
        'respect_robots': 'respect_robots_txt',
    }
    for arg_name, config_name in mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            crawler[config_name] = value

    overrides: Dict[str, Any] = {}
    if crawler:
        overrides['crawler'] = crawler
    if getattr(args, 'priority', False):
        overrides['priority'] = {'enabled': True}
    if getattr(args, 'render', False):
        overrides['render'] = {'enabled': True}
    if getattr(args, 'port', None) is not None:
        overrides['server'] = {'port': args.port}
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Search Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py crawl --urls https://example.com --depth 2 --pages 50
  python main.py crawl --config config.yaml --priority
  python main.py serve --port 3000
  python main.py stats
        """
    )
    parser.add_argument(
        '--version',
        action='version',
        version='Search Crawler 1.0.0'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    crawl = subparsers.add_parser('crawl', help='Start crawling from seed URLs')
    crawl.add_argument('-u', '--urls', type=parse_url_list, help='Comma-separated list of seed URLs')
    crawl.add_argument('-d', '--depth', type=int, help='Maximum crawl depth')
    crawl.add_argument('-p', '--pages', type=int, help='Maximum pages to crawl')
    crawl.add_argument('-c', '--concurrency', type=int, help='Number of concurrent workers')
    crawl.add_argument('-r', '--delay', type=int, help='Delay between requests to one domain in ms')
    crawl.add_argument('--respect-robots', type=parse_boolean, help='Whether to respect robots.txt (true|false)')
    crawl.add_argument('--priority', action='store_true', help='Use the in-memory priority frontier')
    crawl.add_argument('--render', action='store_true', help='Enable headless-browser rendering')
    crawl.add_argument('--config', help='Path to a JSON or YAML configuration file')

    serve = subparsers.add_parser('serve', help='Start the search API server')
    serve.add_argument('-p', '--port', type=int, help='Port to listen on (default: 3000)')
    serve.add_argument('--config', help='Path to a JSON or YAML configuration file')

    stats = subparsers.add_parser('stats', help='Print crawler statistics as JSON')
    stats.add_argument('--config', help='Path to a JSON or YAML configuration file')

    return parser


class CrawlerApp:
    """Main application class for the search crawler."""

    def __init__(self):
        self.scheduler: Optional[CrawlerScheduler] = None
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _setup(self, config: Config):
        setup_logging(config.logging)
        self._shutdown_event = asyncio.Event()
        self.setup_signal_handlers()

    async def crawl(self, config: Config) -> int:
        """Run a crawl until it finishes or a shutdown signal arrives."""
        self._setup(config)
        log_system_info()

        self.logger.info("=== SEARCH CRAWLER STARTING ===")
        self.logger.info(f"Seed URLs: {config.crawler.seed_urls}")
        self.logger.info(f"Max depth: {config.crawler.max_depth}, max pages: {config.crawler.max_pages}")
        self.logger.info(f"Concurrency: {config.crawler.concurrency}, delay: {config.crawler.request_delay_ms}ms")
        self.logger.info(f"Priority mode: {config.priority.enabled}, rendering: {config.render.enabled}")

        metrics = MetricsCollector(
            enable_server=config.monitoring.metrics_enabled,
            prometheus_port=config.monitoring.prometheus_port
        )
        metrics.start_server()
        self.scheduler = CrawlerScheduler(config, monitor=CrawlerMonitor(metrics))

        try:
            await self.scheduler.initialize()

            crawl_task = asyncio.create_task(self.scheduler.start_crawling())
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

            done, pending = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                self.logger.info("Shutdown requested, stopping crawler...")
                await self.scheduler.stop_crawling()
                await crawl_task
            else:
                shutdown_task.cancel()
                crawl_task.result()

        except StartupError as e:
            self.logger.error(f"Crawler failed to start: {e}")
            return 1

        finally:
            await self.scheduler.close()
            self.logger.info("=== SEARCH CRAWLER FINISHED ===")

        return 0

    async def serve(self, config: Config) -> int:
        """Run the query API until a shutdown signal arrives."""
        self._setup(config)

        database = DatabaseManager(config.database)
        state_tracker = create_state_tracker(config.database, config.redis)
        try:
            await database.initialize()
            try:
                await state_tracker.initialize()
            except StateTrackerError as e:
                self.logger.warning(f"URL statistics unavailable: {e}")
                await state_tracker.close()
                state_tracker = None

            app = create_app(database, state_tracker)
            await run_server(app, config.server.host, config.server.port, self._shutdown_event)

        except DatabaseError as e:
            self.logger.error(f"Failed to start server: {e}")
            return 1

        finally:
            if state_tracker:
                await state_tracker.close()
            await database.close()

        return 0

    async def stats(self, config: Config) -> int:
        """Print aggregate crawl statistics as JSON."""
        self.scheduler = CrawlerScheduler(
            config, state_tracker=create_state_tracker(config.database, config.redis)
        )
        try:
            await self.scheduler.initialize()
            stats = await self.scheduler.get_crawler_stats()
        except StartupError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            await self.scheduler.close()

        print(json.dumps(stats, indent=2))
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(
            args.config,
            overrides=build_cli_overrides(args),
            require_seeds=args.command == 'crawl'
        )
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    app = CrawlerApp()
    commands = {
        'crawl': app.crawl,
        'serve': app.serve,
        'stats': app.stats,
    }
    try:
        return asyncio.run(commands[args.command](config))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
