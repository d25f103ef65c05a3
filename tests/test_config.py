"""Tests for configuration defaults, merging and validation."""

import json
import os
import tempfile
import unittest

from searchcrawler.utils.config import (
    ConfigError, ConfigManager, build_config, default_config_data, load_config, merge_config_data
)


class TestDefaults(unittest.TestCase):
    """Verify built-in defaults and environment overrides."""

    def test_defaults_without_environment(self):
        config = build_config(default_config_data({}))
        self.assertEqual(config.crawler.max_pages, 100)
        self.assertEqual(config.crawler.max_depth, 3)
        self.assertEqual(config.crawler.request_delay_ms, 1000)
        self.assertEqual(config.crawler.concurrency, 5)
        self.assertTrue(config.crawler.respect_robots_txt)
        self.assertFalse(config.render.enabled)
        self.assertFalse(config.priority.enabled)
        self.assertEqual(config.database.type, "file")
        self.assertEqual(config.server.port, 3000)

    def test_environment_overrides(self):
        env = {
            "MAX_PAGES": "20",
            "MAX_DEPTH": "1",
            "REQUEST_DELAY": "250",
            "CONCURRENCY": "2",
            "USER_AGENT": "EnvBot",
            "RESPECT_ROBOTS": "false",
            "ENABLE_RENDERING": "true",
            "RENDER_AUTO_DETECT": "true",
            "ENABLE_PRIORITY": "true",
            "REDIS_URL": "redis://cache:6379/2",
            "STATE_BACKEND": "memory",
        }
        config = build_config(default_config_data(env))
        self.assertEqual(config.crawler.max_pages, 20)
        self.assertEqual(config.crawler.max_depth, 1)
        self.assertEqual(config.crawler.request_delay_ms, 250)
        self.assertEqual(config.crawler.concurrency, 2)
        self.assertEqual(config.crawler.user_agent, "EnvBot")
        self.assertFalse(config.crawler.respect_robots_txt)
        self.assertTrue(config.render.enabled)
        self.assertTrue(config.render.auto_detect)
        self.assertTrue(config.priority.enabled)
        self.assertEqual(config.redis.url, "redis://cache:6379/2")
        self.assertEqual(config.database.state_backend, "memory")

    def test_rendering_needs_literal_true(self):
        config = build_config(default_config_data({"ENABLE_RENDERING": "no"}))
        self.assertFalse(config.render.enabled)

    def test_non_numeric_environment_value(self):
        with self.assertRaises(ConfigError) as raised:
            default_config_data({"MAX_PAGES": "abc"})
        self.assertIn("MAX_PAGES", str(raised.exception))

        with self.assertRaises(ConfigError):
            default_config_data({"REQUEST_DELAY": "fast"})


class TestMerge(unittest.TestCase):
    """merge_config_data is pure and recursive."""

    def test_nested_merge(self):
        base = {"crawler": {"max_pages": 10, "max_depth": 2}, "server": {"port": 3000}}
        merged = merge_config_data(base, {"crawler": {"max_pages": 50}})
        self.assertEqual(merged, {"crawler": {"max_pages": 50, "max_depth": 2}, "server": {"port": 3000}})

    def test_does_not_mutate_inputs(self):
        base = {"crawler": {"seed_urls": ["https://a.com"]}}
        overlay = {"crawler": {"seed_urls": ["https://b.com"]}}
        merged = merge_config_data(base, overlay)
        merged["crawler"]["seed_urls"].append("https://c.com")
        self.assertEqual(base["crawler"]["seed_urls"], ["https://a.com"])
        self.assertEqual(overlay["crawler"]["seed_urls"], ["https://b.com"])

    def test_lists_are_replaced(self):
        merged = merge_config_data({"a": [1, 2]}, {"a": [3]})
        self.assertEqual(merged, {"a": [3]})

    def test_none_overlay(self):
        self.assertEqual(merge_config_data({"a": 1}, None), {"a": 1})


class TestConfigManager(unittest.TestCase):
    """Precedence is defaults < file < CLI flags."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def write(self, name: str, content: str) -> str:
        path = os.path.join(self.tmpdir.name, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path

    def test_precedence(self):
        path = self.write("config.json", json.dumps({
            "seed_urls": ["https://file.example"],
            "crawler": {"max_pages": 40, "max_depth": 4}
        }))
        config = load_config(
            path,
            overrides={"crawler": {"max_pages": 7}},
            env={"MAX_PAGES": "500", "CONCURRENCY": "3"}
        )
        self.assertEqual(config.crawler.max_pages, 7)
        self.assertEqual(config.crawler.max_depth, 4)
        self.assertEqual(config.crawler.concurrency, 3)
        self.assertEqual(config.crawler.seed_urls, ["https://file.example"])

    def test_yaml_file(self):
        path = self.write("config.yaml", "crawler:\n  seed_urls:\n    - https://a.com\n  max_depth: 0\n")
        config = ConfigManager(path, env={}).load_config(require_seeds=True)
        self.assertEqual(config.crawler.seed_urls, ["https://a.com"])
        self.assertEqual(config.crawler.max_depth, 0)

    def test_missing_file(self):
        with self.assertRaises(ConfigError):
            load_config(os.path.join(self.tmpdir.name, "absent.json"), env={})

    def test_unparseable_file(self):
        path = self.write("broken.yaml", "crawler: [unclosed")
        with self.assertRaises(ConfigError):
            load_config(path, env={})

    def test_unknown_key(self):
        path = self.write("config.json", json.dumps({"crawler": {"not_a_setting": 1}}))
        with self.assertRaises(ConfigError):
            load_config(path, env={})

    def test_config_property_requires_load(self):
        with self.assertRaises(ConfigError):
            ConfigManager(env={}).config


class TestValidation(unittest.TestCase):

    def test_seed_urls_required_for_crawling(self):
        with self.assertRaises(ConfigError):
            load_config(env={}, require_seeds=True)
        self.assertEqual(load_config(env={}).crawler.seed_urls, [])

    def test_invalid_values(self):
        for overrides in (
            {"crawler": {"max_depth": -1}},
            {"crawler": {"max_pages": 0}},
            {"crawler": {"concurrency": 0}},
            {"crawler": {"request_delay_ms": -5}},
            {"database": {"type": "mongodb"}},
            {"database": {"state_backend": "sqlite"}},
        ):
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigError):
                    load_config(overrides=overrides, env={})


if __name__ == "__main__":
    unittest.main()
