"""
Per-domain politeness delay shared by all crawl workers.
"""

import asyncio
import logging
import time
from typing import Dict, Optional
from dataclasses import dataclass


@dataclass
class DomainAccessRecord:
    """Last access instant and request count for one domain."""
    domain: str
    last_access: float = 0.0
    observed_count: int = 0


class DomainRateLimiter:
    """
    Enforces a minimum spacing between requests to the same domain.

    acquire() holds a per-domain lock across the wait and the timestamp
    update, so concurrent workers targeting one domain are spaced out
    instead of slipping through on a stale timestamp.
    """

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self.records: Dict[str, DomainAccessRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logging.getLogger(__name__)

    def _lock_for(self, domain: str) -> asyncio.Lock:
        lock = self._locks.get(domain)
        if lock is None:
            lock = self._locks[domain] = asyncio.Lock()
        return lock

    async def acquire(self, domain: str, min_delay_ms: float):
        """
        Wait until at least min_delay_ms has passed since the last access to
        domain, then record now as the new last access.
        """
        async with self._lock_for(domain):
            record = self.records.get(domain)
            if record is None:
                record = self.records[domain] = DomainAccessRecord(domain=domain)

            if record.observed_count:
                wait = min_delay_ms / 1000 - (self.clock() - record.last_access)
                if wait > 0:
                    self.logger.debug(f"Rate limiting {domain}: waiting {wait:.3f}s")
                # loop timers may fire a hair early
                while wait > 0:
                    await asyncio.sleep(wait)
                    wait = min_delay_ms / 1000 - (self.clock() - record.last_access)

            record.last_access = self.clock()
            record.observed_count += 1

    def get_record(self, domain: str) -> Optional[DomainAccessRecord]:
        return self.records.get(domain)
