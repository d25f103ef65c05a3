"""
Durable crawl-task tracking used when priority mode is disabled.

Each URL becomes one task record keyed by a hash of its normalized form.
Workers claim the oldest pending task atomically, so two workers never
process the same URL.
"""

import asyncio
import hashlib
import logging
import time
from dataclasses import replace
from typing import Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..crawler.url_frontier import URLTask, TaskStatus, InvalidTransitionError, can_transition
from ..utils.config import DatabaseConfig, RedisConfig


class StateTrackerError(Exception):
    """The task store is unreachable or holds an unknown task."""
    pass


def url_task_id(url: str) -> str:
    """Stable task key for a normalized URL."""
    return hashlib.sha256(url.encode('utf-8')).hexdigest()


class CrawlStateTracker:
    """Interface shared by the task stores."""

    async def initialize(self):
        raise NotImplementedError

    async def save_url(self, url: str, depth: int, parent_url: Optional[str] = None) -> bool:
        """Insert a pending task. Returns False if the URL is already known."""
        raise NotImplementedError

    async def claim_next_pending(self, max_depth: int) -> Optional[URLTask]:
        """Move the oldest pending task with depth <= max_depth to processing."""
        raise NotImplementedError

    async def update_status(self, url: str, status: TaskStatus):
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, int]:
        raise NotImplementedError

    async def close(self):
        pass


class MemoryStateTracker(CrawlStateTracker):
    """Process-local task store for single-run crawls and tests."""

    def __init__(self):
        self.tasks: Dict[str, URLTask] = {}
        # insertion-ordered, so iteration yields the oldest task first
        self._pending: Dict[str, None] = {}
        self._lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        self.logger.info("In-memory crawl state tracker initialized")

    async def save_url(self, url: str, depth: int, parent_url: Optional[str] = None) -> bool:
        task_id = url_task_id(url)
        async with self._lock:
            if task_id in self.tasks:
                return False
            self.tasks[task_id] = URLTask(url=url, depth=depth, parent_url=parent_url)
            self._pending[task_id] = None
            return True

    async def claim_next_pending(self, max_depth: int) -> Optional[URLTask]:
        async with self._lock:
            for task_id in self._pending:
                task = self.tasks[task_id]
                if task.depth <= max_depth:
                    del self._pending[task_id]
                    task.transition_to(TaskStatus.PROCESSING)
                    # callers move their copy forward before reporting the new status
                    return replace(task)
            return None

    async def update_status(self, url: str, status: TaskStatus):
        async with self._lock:
            task = self.tasks.get(url_task_id(url))
            if task is None:
                raise StateTrackerError(f"Unknown task: {url}")
            task.transition_to(status)
            self._pending.pop(url_task_id(url), None)

    async def get_task(self, url: str) -> Optional[URLTask]:
        return self.tasks.get(url_task_id(url))

    async def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in TaskStatus}
        for task in self.tasks.values():
            stats[task.status.value] += 1
        stats['total'] = len(self.tasks)
        return stats


class RedisStateTracker(CrawlStateTracker):
    """
    Redis-backed task store.

    Layout under key_prefix:
        task:{id}        hash with url, depth, parent_url, status and timestamps
        ids              set of every known task id
        pending          sorted set of pending ids scored by creation sequence
        depth            hash of id -> depth, read while choosing a claim
        status:{status}  set of ids per non-pending status
        seq              creation counter
    """

    def __init__(self, redis_url: str = 'redis://localhost:6379/0', key_prefix: str = 'crawler',
                 redis_client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis_client = redis_client
        self._owns_client = redis_client is None
        self.logger = logging.getLogger(__name__)

        self.ids_key = f"{key_prefix}:ids"
        self.pending_key = f"{key_prefix}:pending"
        self.depth_key = f"{key_prefix}:depth"
        self.sequence_key = f"{key_prefix}:seq"

    def _task_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:task:{task_id}"

    def _status_key(self, status: TaskStatus) -> str:
        return f"{self.key_prefix}:status:{status.value}"

    async def initialize(self):
        """Connect and verify the server is reachable."""
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await self.redis_client.ping()
        except (RedisError, OSError) as e:
            raise StateTrackerError(f"Cannot reach Redis at {self.redis_url}: {e}") from e
        self.logger.info("Redis connection established")

    async def save_url(self, url: str, depth: int, parent_url: Optional[str] = None) -> bool:
        task_id = url_task_id(url)
        task_key = self._task_key(task_id)

        async def save(pipe) -> bool:
            if await pipe.exists(task_key):
                pipe.multi()
                return False

            sequence = await pipe.incr(self.sequence_key)
            now = time.time()
            pipe.multi()
            pipe.sadd(self.ids_key, task_id)
            pipe.hset(task_key, mapping={
                'url': url,
                'depth': depth,
                'parent_url': parent_url or '',
                'status': TaskStatus.PENDING.value,
                'discovered_time': now,
                'updated_time': now
            })
            pipe.hset(self.depth_key, task_id, depth)
            pipe.zadd(self.pending_key, {task_id: sequence})
            return True

        try:
            # id marker, record and pending entry commit together; WATCH on the task key guards the insert
            return await self.redis_client.transaction(save, task_key, value_from_callable=True)

        except RedisError as e:
            raise StateTrackerError(f"Failed to save {url}: {e}") from e

    async def claim_next_pending(self, max_depth: int) -> Optional[URLTask]:
        async def claim(pipe) -> Optional[str]:
            candidates = await pipe.zrange(self.pending_key, 0, -1)
            chosen = None
            if candidates:
                depths = await pipe.hmget(self.depth_key, candidates)
                for task_id, depth in zip(candidates, depths):
                    if depth is not None and int(depth) <= max_depth:
                        chosen = task_id
                        break

            pipe.multi()
            if chosen:
                pipe.zrem(self.pending_key, chosen)
                pipe.sadd(self._status_key(TaskStatus.PROCESSING), chosen)
                pipe.hset(self._task_key(chosen), mapping={
                    'status': TaskStatus.PROCESSING.value,
                    'updated_time': time.time()
                })
            return chosen

        try:
            # WATCH on the pending set makes a concurrent claim retry instead of double-claiming
            task_id = await self.redis_client.transaction(
                claim, self.pending_key, value_from_callable=True
            )
            if task_id is None:
                return None
            return URLTask.from_dict(await self.redis_client.hgetall(self._task_key(task_id)))

        except RedisError as e:
            raise StateTrackerError(f"Failed to claim pending task: {e}") from e

    async def update_status(self, url: str, status: TaskStatus):
        task_id = url_task_id(url)
        task_key = self._task_key(task_id)

        async def update(pipe):
            current = await pipe.hget(task_key, 'status')
            if current is None:
                raise StateTrackerError(f"Unknown task: {url}")
            current = TaskStatus(current)
            if not can_transition(current, status):
                raise InvalidTransitionError(
                    f"Cannot move {url} from {current.value} to {status.value}"
                )

            pipe.multi()
            if current is TaskStatus.PENDING:
                pipe.zrem(self.pending_key, task_id)
            else:
                pipe.srem(self._status_key(current), task_id)
            pipe.sadd(self._status_key(status), task_id)
            pipe.hset(task_key, mapping={'status': status.value, 'updated_time': time.time()})

        try:
            await self.redis_client.transaction(update, task_key)
        except RedisError as e:
            raise StateTrackerError(f"Failed to update {url}: {e}") from e

    async def get_task(self, url: str) -> Optional[URLTask]:
        data = await self.redis_client.hgetall(self._task_key(url_task_id(url)))
        return URLTask.from_dict(data) if data else None

    async def get_stats(self) -> Dict[str, int]:
        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                pipe.scard(self.ids_key)
                pipe.zcard(self.pending_key)
                for status in (TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.ERROR):
                    pipe.scard(self._status_key(status))
                total, pending, processing, completed, error = await pipe.execute()
        except RedisError as e:
            raise StateTrackerError(f"Failed to read task stats: {e}") from e

        return {
            'total': total,
            'pending': pending,
            'processing': processing,
            'completed': completed,
            'error': error
        }

    async def close(self):
        if self.redis_client is not None and self._owns_client:
            await self.redis_client.aclose()
            self.redis_client = None
            self.logger.info("Redis connection closed")


def create_state_tracker(database_config: DatabaseConfig, redis_config: RedisConfig) -> CrawlStateTracker:
    """Build the task store named by database_config.state_backend."""
    backend = database_config.state_backend.lower()
    if backend == 'redis':
        return RedisStateTracker(redis_config.url, key_prefix=redis_config.key_prefix)
    if backend == 'memory':
        return MemoryStateTracker()
    raise StateTrackerError(f"Unknown state backend: {backend}")
