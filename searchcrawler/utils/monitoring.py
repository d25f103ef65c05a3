"""
Monitoring and metrics collection for the web crawler system.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import Counter, Gauge, CollectorRegistry
from prometheus_client import start_http_server


class MetricsCollector:
    """Owns the Prometheus metrics of one crawler process."""

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()

        self.tasks_total = Counter(
            'crawler_tasks_total',
            'Crawl tasks that reached a terminal status',
            ['status'],
            registry=self.registry
        )
        self.skipped_total = Counter(
            'crawler_tasks_skipped_total',
            'Tasks completed without indexing a page',
            ['reason'],
            registry=self.registry
        )
        self.errors_total = Counter(
            'crawler_errors_total',
            'Crawl errors by exception type',
            ['error_type'],
            registry=self.registry
        )
        self.renders_total = Counter(
            'crawler_rendered_fetches_total',
            'Fetches performed through the headless browser',
            ['trigger'],
            registry=self.registry
        )
        self.queue_size = Gauge(
            'crawler_queue_size',
            'Number of URLs waiting in the frontier',
            registry=self.registry
        )
        self.in_progress = Gauge(
            'crawler_in_progress',
            'Tasks currently claimed by a worker',
            registry=self.registry
        )
        self.active_workers = Gauge(
            'crawler_active_workers',
            'Number of running crawl workers',
            registry=self.registry
        )

    def start_server(self):
        """Start the Prometheus metrics HTTP endpoint if enabled."""
        if not self.enable_server:
            return
        start_http_server(self.prometheus_port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Read a sample value from the registry (0 when absent)."""
        result = self.registry.get_sample_value(name, labels or {})
        return result or 0.0


class CrawlerMonitor:
    """High-level monitoring interface used by the scheduler."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_completed(self):
        self.metrics.tasks_total.labels(status='completed').inc()

    def record_skipped(self, reason: str):
        self.metrics.tasks_total.labels(status='completed').inc()
        self.metrics.skipped_total.labels(reason=reason).inc()

    def record_error(self, error_type: str):
        self.metrics.tasks_total.labels(status='error').inc()
        self.metrics.errors_total.labels(error_type=error_type).inc()

    def record_render(self, trigger: str):
        self.metrics.renders_total.labels(trigger=trigger).inc()

    def update_queue_size(self, size: int):
        self.metrics.queue_size.set(size)

    def update_in_progress(self, count: int):
        self.metrics.in_progress.set(count)

    def update_active_workers(self, count: int):
        self.metrics.active_workers.set(count)

    def get_summary(self) -> Dict[str, Any]:
        """Summary of counters and throughput since the monitor was created."""
        runtime = time.time() - self.start_time
        completed = self.metrics.value('crawler_tasks_total', {'status': 'completed'})
        errors = self.metrics.value('crawler_tasks_total', {'status': 'error'})

        return {
            'runtime_seconds': runtime,
            'completed': completed,
            'errors': errors,
            'rendered': sum(
                self.metrics.value('crawler_rendered_fetches_total', {'trigger': trigger})
                for trigger in ('pattern', 'auto_detect')
            ),
            'tasks_per_second': (completed + errors) / runtime if runtime > 0 else 0,
        }
