"""Tests for the headless renderer, with the browser replaced by mocks."""

import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from playwright.async_api import Error as PlaywrightError

from searchcrawler.crawler.renderer import PageRenderer, RenderError, RenderResult


def make_page(final_url="https://a.com/final"):
    page = MagicMock()
    page.url = final_url
    page.goto = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.close = AsyncMock()
    page.content = AsyncMock(return_value="<html><body>rendered</body></html>")
    # first call scrolls, second reads metadata
    page.evaluate = AsyncMock(side_effect=[None, {"description": "Rendered page"}])
    return page


def make_playwright(*pages):
    browser = MagicMock()
    browser.new_page = AsyncMock(side_effect=list(pages))
    browser.close = AsyncMock()

    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()

    manager = MagicMock()
    manager.start = AsyncMock(return_value=playwright)
    return manager, playwright, browser


class TestPageRenderer(unittest.IsolatedAsyncioTestCase):
    """Verify page lifecycle and shared browser handling."""

    async def test_render_returns_html_and_metadata(self):
        page = make_page()
        manager, playwright, browser = make_playwright(page)

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot", settle_time_ms=5)
            result = await renderer.render("https://a.com/start")
            await renderer.close()

        self.assertIsInstance(result, RenderResult)
        self.assertEqual(result.final_url, "https://a.com/final")
        self.assertIn("rendered", result.html)
        self.assertEqual(result.metadata, {"description": "Rendered page"})
        page.goto.assert_awaited_once()
        page.wait_for_selector.assert_awaited_once()
        page.wait_for_timeout.assert_awaited_once_with(5)
        page.close.assert_awaited_once()

    async def test_browser_is_launched_once(self):
        manager, playwright, browser = make_playwright(make_page(), make_page())

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot", settle_time_ms=0)
            await renderer.render("https://a.com/1")
            await renderer.render("https://a.com/2")
            await renderer.close()

        playwright.chromium.launch.assert_awaited_once()
        self.assertEqual(browser.new_page.await_count, 2)
        self.assertEqual(renderer.get_stats()["pages_rendered"], 2)

    async def test_page_is_closed_when_navigation_fails(self):
        page = make_page()
        page.goto.side_effect = PlaywrightError("Timeout 10000ms exceeded")
        manager, playwright, browser = make_playwright(page)

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot")
            with self.assertRaises(RenderError):
                await renderer.render("https://a.com/slow")
            await renderer.close()

        page.close.assert_awaited_once()
        self.assertEqual(renderer.get_stats()["render_errors"], 1)

    async def test_scroll_can_be_disabled(self):
        page = make_page()
        page.evaluate = AsyncMock(return_value={})
        manager, _, _ = make_playwright(page)

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot", scroll_to_bottom=False, settle_time_ms=0)
            await renderer.render("https://a.com")
            await renderer.close()

        page.evaluate.assert_awaited_once()

    async def test_close_releases_browser_exactly_once(self):
        manager, playwright, browser = make_playwright(make_page())

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot", settle_time_ms=0)
            await renderer.render("https://a.com")
            await renderer.close()
            await renderer.close()

        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    async def test_close_without_launch(self):
        manager, playwright, browser = make_playwright()

        with patch("searchcrawler.crawler.renderer.async_playwright", return_value=manager):
            renderer = PageRenderer(user_agent="TestBot")
            await renderer.close()

        manager.start.assert_not_awaited()
        browser.close.assert_not_awaited()

    async def test_render_after_close_fails(self):
        renderer = PageRenderer(user_agent="TestBot")
        await renderer.close()
        with self.assertRaises(RenderError):
            await renderer.render("https://a.com")


if __name__ == "__main__":
    unittest.main()
