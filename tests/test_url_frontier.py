"""Tests for URL priority scoring and the in-memory frontier."""

import unittest

from searchcrawler.crawler.url_frontier import (
    URLFrontier, URLTask, TaskStatus, InvalidTransitionError,
    calculate_url_priority, parent_importance_from_score
)
from searchcrawler.utils.config import default_config_data


class TestCalculateUrlPriority(unittest.TestCase):
    """Verify the additive scoring rules."""

    def test_index_page_example(self):
        """One path segment plus the home-page bonus gives 90."""
        self.assertEqual(calculate_url_priority("https://a.com/index.html", depth=0), 90)

    def test_depth_adds_ten_per_level(self):
        base = calculate_url_priority("https://a.com/page", depth=0)
        self.assertEqual(calculate_url_priority("https://a.com/page", depth=2), base + 20)

    def test_importance_inputs_lower_the_score(self):
        score = calculate_url_priority(
            "https://a.com/page", depth=0,
            parent_importance=2, url_importance=1, domain_importance=1
        )
        # 100 + 5 (segment) - 20 - 30 - 10
        self.assertEqual(score, 45)

    def test_path_shape_adjustments(self):
        self.assertEqual(calculate_url_priority("https://a.com/about"), 95)
        self.assertEqual(calculate_url_priority("https://a.com/blog/post"), 105)
        self.assertEqual(calculate_url_priority("https://a.com/tag/python"), 130)
        self.assertEqual(calculate_url_priority("https://a.com/archive/page/2"), 150)
        self.assertEqual(calculate_url_priority("https://a.com/logo.png"), 155)
        self.assertEqual(calculate_url_priority("https://a.com/sitemap.xml"), 55)

    def test_paginated_query_is_penalized(self):
        self.assertEqual(calculate_url_priority("https://a.com/list?page=2"), 120)

    def test_scoring_is_deterministic(self):
        """Identical inputs always yield the same score."""
        args = ("https://a.com/blog/post-1", 2, 3.5, 1, 2)
        self.assertEqual(calculate_url_priority(*args), calculate_url_priority(*args))


class TestParentImportance(unittest.TestCase):

    def test_normalizes_parent_score(self):
        self.assertEqual(parent_importance_from_score(100), 5)
        self.assertEqual(parent_importance_from_score(0), 10)

    def test_low_priority_parent_goes_negative(self):
        """Parents scored above 200 hand down negative importance."""
        self.assertEqual(parent_importance_from_score(300), -5)

    def test_missing_parent_score(self):
        self.assertEqual(parent_importance_from_score(None), 0)


class TestURLFrontier(unittest.TestCase):
    """Verify dedup, quotas and dequeue order."""

    def test_duplicate_add_is_rejected(self):
        frontier = URLFrontier()
        self.assertTrue(frontier.add_url("https://a.com/x"))
        self.assertFalse(frontier.add_url("https://a.com/x"))
        self.assertEqual(len(frontier), 1)

    def test_visited_url_is_rejected(self):
        frontier = URLFrontier()
        frontier.add_url("https://a.com/x")
        frontier.get_next_url()
        self.assertFalse(frontier.add_url("https://a.com/x"))
        self.assertTrue(frontier.is_empty())

    def test_domain_quota(self):
        """With a limit of 2 the third non-seed URL of a domain is refused."""
        frontier = URLFrontier(default_domain_limit=2)
        self.assertTrue(frontier.add_url("https://a.com/1"))
        self.assertTrue(frontier.add_url("https://a.com/2"))
        self.assertFalse(frontier.add_url("https://a.com/3"))
        self.assertTrue(frontier.add_url("https://b.com/1"))
        self.assertEqual(len([url for _, url in frontier.queued_entries() if 'a.com' in url]), 2)

    def test_quota_counts_visited_urls(self):
        frontier = URLFrontier()
        frontier.set_domain_limit("a.com", 1)
        frontier.add_url("https://a.com/1")
        frontier.get_next_url()
        self.assertFalse(frontier.add_url("https://a.com/2"))

    def test_seeds_bypass_quota(self):
        frontier = URLFrontier(default_domain_limit=1)
        frontier.add_url("https://a.com/1")
        self.assertTrue(frontier.add_url("https://a.com/seed", is_seed=True))

    def test_seeds_are_dequeued_first(self):
        """Seeds score 0 and come out before any derived URL."""
        frontier = URLFrontier()
        frontier.add_url("https://a.com/about", depth=1)
        frontier.add_url("https://a.com/sitemap.xml", depth=1)
        frontier.initialize(["https://b.com", "https://c.com"])
        frontier.add_url("https://a.com/index.html", depth=1)

        first = frontier.get_next_url()
        second = frontier.get_next_url()
        self.assertEqual({first.url, second.url}, {"https://b.com", "https://c.com"})
        self.assertEqual(first.priority_score, 0)
        self.assertEqual(second.priority_score, 0)
        self.assertNotEqual(frontier.get_next_url().priority_score, 0)

    def test_negative_derived_scores_wait_for_queued_seeds(self):
        """Important links found on the first seed still queue behind the other seeds."""
        patterns = default_config_data({})["priority"]["important_patterns"]
        frontier = URLFrontier(important_patterns=patterns)
        frontier.initialize(["https://a.com", "https://b.com", "https://c.com"])

        seed = frontier.get_next_url()
        self.assertEqual(seed.url, "https://a.com")
        parent_importance = parent_importance_from_score(seed.priority_score)
        frontier.add_url("https://a.com/about", depth=1, parent_url=seed.url,
                         parent_importance=parent_importance)
        frontier.add_url("https://a.com/x/sitemap.xml", depth=1, parent_url=seed.url,
                         parent_importance=parent_importance)

        scores = dict((url, score) for score, url in frontier.queued_entries())
        self.assertLess(scores["https://a.com/x/sitemap.xml"], 0)
        self.assertLess(scores["https://a.com/about"], 0)

        order = [frontier.get_next_url().url for _ in range(4)]
        self.assertEqual(order, [
            "https://b.com",
            "https://c.com",
            "https://a.com/x/sitemap.xml",
            "https://a.com/about",
        ])

    def test_lowest_score_first(self):
        frontier = URLFrontier()
        frontier.add_url("https://a.com/tag/x")
        frontier.add_url("https://a.com/sitemap.xml")
        frontier.add_url("https://a.com/about")
        order = [frontier.get_next_url().url for _ in range(3)]
        self.assertEqual(order, [
            "https://a.com/sitemap.xml",
            "https://a.com/about",
            "https://a.com/tag/x",
        ])

    def test_equal_scores_keep_insertion_order(self):
        frontier = URLFrontier()
        urls = ["https://a.com/x", "https://b.com/y", "https://c.com/z"]
        for url in urls:
            frontier.add_url(url)
        self.assertEqual([frontier.get_next_url().url for _ in urls], urls)

    def test_empty_frontier_returns_none(self):
        self.assertIsNone(URLFrontier().get_next_url())

    def test_task_carries_metadata(self):
        frontier = URLFrontier()
        frontier.add_url("https://a.com/child", depth=2, parent_url="https://a.com")
        task = frontier.get_next_url()
        self.assertEqual(task.depth, 2)
        self.assertEqual(task.parent_url, "https://a.com")
        self.assertEqual(task.status, TaskStatus.PENDING)
        self.assertEqual(task.domain, "a.com")

    def test_importance_settings_affect_later_adds(self):
        frontier = URLFrontier()
        frontier.set_domain_importance("a.com", 1)
        frontier.set_url_importance("https://b.com/page", 2)
        frontier.add_url("https://a.com/page")
        frontier.add_url("https://b.com/page")
        frontier.add_url("https://c.com/page")
        scores = dict((url, score) for score, url in frontier.queued_entries())
        self.assertEqual(scores["https://a.com/page"], 85)
        self.assertEqual(scores["https://b.com/page"], 45)
        self.assertEqual(scores["https://c.com/page"], 105)

    def test_important_patterns_apply_without_explicit_importance(self):
        frontier = URLFrontier(important_patterns=[{'pattern': '/blog', 'importance': 1}])
        frontier.add_url("https://a.com/blog/post")
        frontier.set_url_importance("https://b.com/blog/post", 0)
        frontier.add_url("https://b.com/blog/post")
        scores = dict((url, score) for score, url in frontier.queued_entries())
        self.assertEqual(scores["https://a.com/blog/post"], 75)
        self.assertEqual(scores["https://b.com/blog/post"], 105)

    def test_initialize_registers_important_domains(self):
        frontier = URLFrontier()
        added = frontier.initialize(["https://a.com"], [{'domain': 'b.com', 'importance': 3}])
        self.assertEqual(added, 1)
        self.assertEqual(frontier.domain_importance["b.com"], 3)

    def test_stats(self):
        frontier = URLFrontier()
        frontier.add_url("https://a.com/1")
        frontier.add_url("https://b.com/1")
        frontier.get_next_url()
        self.assertEqual(frontier.get_stats(), {
            'queue_size': 1,
            'visited_count': 1,
            'domains_visited': 1
        })


class TestTaskStateMachine(unittest.TestCase):
    """Status only ever moves forward."""

    def test_forward_transitions(self):
        task = URLTask(url="https://a.com", depth=0)
        task.transition_to(TaskStatus.PROCESSING)
        task.transition_to(TaskStatus.COMPLETED)
        self.assertTrue(task.status.is_terminal)

    def test_terminal_task_cannot_return_to_processing(self):
        for terminal in (TaskStatus.COMPLETED, TaskStatus.ERROR):
            task = URLTask(url="https://a.com", depth=0)
            task.transition_to(TaskStatus.PROCESSING)
            task.transition_to(terminal)
            with self.assertRaises(InvalidTransitionError):
                task.transition_to(TaskStatus.PROCESSING)
            self.assertEqual(task.status, terminal)

    def test_pending_cannot_skip_processing(self):
        task = URLTask(url="https://a.com", depth=0)
        with self.assertRaises(InvalidTransitionError):
            task.transition_to(TaskStatus.COMPLETED)

    def test_dict_round_trip_preserves_status(self):
        task = URLTask(url="https://a.com/x", depth=1, parent_url="https://a.com")
        task.transition_to(TaskStatus.PROCESSING)
        restored = URLTask.from_dict(task.to_dict())
        self.assertEqual(restored.status, TaskStatus.PROCESSING)
        self.assertEqual(restored.parent_url, "https://a.com")


if __name__ == "__main__":
    unittest.main()
