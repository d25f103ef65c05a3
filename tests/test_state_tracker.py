"""Tests for the in-memory and Redis crawl state trackers."""

import asyncio
import unittest
from unittest.mock import patch

import fakeredis.aioredis
from redis.asyncio.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError

from searchcrawler.crawler.url_frontier import TaskStatus, InvalidTransitionError
from searchcrawler.storage.state_tracker import (
    MemoryStateTracker, RedisStateTracker, StateTrackerError, create_state_tracker
)
from searchcrawler.utils.config import DatabaseConfig, RedisConfig


class TrackerContract:
    """Behaviour every tracker must share. Subclasses provide make_tracker()."""

    async def asyncSetUp(self):
        self.tracker = await self.make_tracker()

    async def asyncTearDown(self):
        await self.tracker.close()

    async def test_save_is_idempotent(self):
        self.assertTrue(await self.tracker.save_url("https://a.com", 0))
        self.assertFalse(await self.tracker.save_url("https://a.com", 1, "https://b.com"))
        stats = await self.tracker.get_stats()
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["pending"], 1)

    async def test_claims_oldest_first(self):
        for url in ("https://a.com/1", "https://a.com/2", "https://a.com/3"):
            await self.tracker.save_url(url, 0)

        task = await self.tracker.claim_next_pending(max_depth=3)
        self.assertEqual(task.url, "https://a.com/1")
        self.assertEqual(task.status, TaskStatus.PROCESSING)
        self.assertEqual((await self.tracker.claim_next_pending(3)).url, "https://a.com/2")

    async def test_claim_respects_max_depth(self):
        await self.tracker.save_url("https://a.com/deep", 5, "https://a.com")
        await self.tracker.save_url("https://a.com/shallow", 1, "https://a.com")

        task = await self.tracker.claim_next_pending(max_depth=2)
        self.assertEqual(task.url, "https://a.com/shallow")
        self.assertEqual(task.depth, 1)
        self.assertEqual(task.parent_url, "https://a.com")
        self.assertIsNone(await self.tracker.claim_next_pending(max_depth=2))

    async def test_claim_on_empty_store(self):
        self.assertIsNone(await self.tracker.claim_next_pending(3))

    async def test_concurrent_claims_are_unique(self):
        """Two workers never claim the same task."""
        urls = [f"https://a.com/{i}" for i in range(10)]
        for url in urls:
            await self.tracker.save_url(url, 0)

        claimed = await asyncio.gather(*(self.tracker.claim_next_pending(3) for _ in range(15)))
        claimed_urls = [task.url for task in claimed if task is not None]
        self.assertEqual(sorted(claimed_urls), sorted(urls))
        self.assertEqual(len(set(claimed_urls)), len(claimed_urls))

    async def test_status_moves_forward_only(self):
        await self.tracker.save_url("https://a.com", 0)
        await self.tracker.claim_next_pending(3)
        await self.tracker.update_status("https://a.com", TaskStatus.COMPLETED)

        with self.assertRaises(InvalidTransitionError):
            await self.tracker.update_status("https://a.com", TaskStatus.PROCESSING)

        task = await self.tracker.get_task("https://a.com")
        self.assertEqual(task.status, TaskStatus.COMPLETED)

    async def test_completed_task_is_not_reclaimed(self):
        await self.tracker.save_url("https://a.com", 0)
        await self.tracker.claim_next_pending(3)
        await self.tracker.update_status("https://a.com", TaskStatus.ERROR)
        self.assertFalse(await self.tracker.save_url("https://a.com", 0))
        self.assertIsNone(await self.tracker.claim_next_pending(3))

    async def test_claimed_task_can_be_advanced_then_reported(self):
        """Workers move their claimed task forward locally, then report the same status."""
        await self.tracker.save_url("https://a.com", 0)
        task = await self.tracker.claim_next_pending(3)
        task.transition_to(TaskStatus.COMPLETED)

        await self.tracker.update_status("https://a.com", TaskStatus.COMPLETED)

        stored = await self.tracker.get_task("https://a.com")
        self.assertEqual(stored.status, TaskStatus.COMPLETED)

    async def test_unknown_task(self):
        with self.assertRaises(StateTrackerError):
            await self.tracker.update_status("https://nowhere.com", TaskStatus.COMPLETED)

    async def test_stats_by_status(self):
        for url in ("https://a.com/1", "https://a.com/2", "https://a.com/3", "https://a.com/4"):
            await self.tracker.save_url(url, 0)
        await self.tracker.claim_next_pending(3)
        await self.tracker.claim_next_pending(3)
        await self.tracker.claim_next_pending(3)
        await self.tracker.update_status("https://a.com/1", TaskStatus.COMPLETED)
        await self.tracker.update_status("https://a.com/2", TaskStatus.ERROR)

        stats = await self.tracker.get_stats()
        self.assertEqual(stats, {
            "total": 4,
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "error": 1
        })


class TestMemoryStateTracker(TrackerContract, unittest.IsolatedAsyncioTestCase):

    async def make_tracker(self):
        tracker = MemoryStateTracker()
        await tracker.initialize()
        return tracker


class TestRedisStateTracker(TrackerContract, unittest.IsolatedAsyncioTestCase):

    async def make_tracker(self):
        self.redis_client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        tracker = RedisStateTracker(key_prefix="test", redis_client=self.redis_client)
        await tracker.initialize()
        return tracker

    async def asyncTearDown(self):
        await super().asyncTearDown()
        await self.redis_client.aclose()

    async def test_keys_use_prefix(self):
        await self.tracker.save_url("https://a.com", 0)
        keys = await self.redis_client.keys("*")
        self.assertTrue(keys)
        self.assertTrue(all(key.startswith("test:") for key in keys))

    async def test_failed_save_can_be_retried(self):
        """A connection drop while saving leaves no half-written task behind."""
        original_execute = Pipeline.execute
        failures = []

        async def drop_first_execute(pipe, *args, **kwargs):
            if not failures:
                failures.append(pipe)
                raise RedisConnectionError("Connection reset by peer")
            return await original_execute(pipe, *args, **kwargs)

        with patch.object(Pipeline, "execute", drop_first_execute):
            with self.assertRaises(StateTrackerError):
                await self.tracker.save_url("https://a.com", 0)
            self.assertEqual((await self.tracker.get_stats())["total"], 0)
            self.assertIsNone(await self.tracker.get_task("https://a.com"))

            self.assertTrue(await self.tracker.save_url("https://a.com", 0))

        stats = await self.tracker.get_stats()
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual((await self.tracker.claim_next_pending(3)).url, "https://a.com")

    async def test_unreachable_server(self):
        tracker = RedisStateTracker("redis://127.0.0.1:1/0")
        with self.assertRaises(StateTrackerError):
            await tracker.initialize()
        await tracker.close()


class TestCreateStateTracker(unittest.TestCase):

    def make_configs(self, backend):
        database = DatabaseConfig(type="file", state_backend=backend, file={}, cassandra={})
        return database, RedisConfig(url="redis://localhost:6379/0", key_prefix="crawler")

    def test_backends(self):
        self.assertIsInstance(create_state_tracker(*self.make_configs("memory")), MemoryStateTracker)
        self.assertIsInstance(create_state_tracker(*self.make_configs("redis")), RedisStateTracker)

    def test_unknown_backend(self):
        with self.assertRaises(StateTrackerError):
            create_state_tracker(*self.make_configs("sqlite"))


if __name__ == "__main__":
    unittest.main()
