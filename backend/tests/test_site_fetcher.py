import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from facesearch.services.site_fetcher import (
    DynamicFetcher,
    SiteFetcher,
    StaticFetcher,
    extract_candidates,
)
from facesearch.services.site_registry import DEFAULT_SELECTORS, DEFAULT_SITES, SiteConfig, load_site_registry
from facesearch.utils.concurrency import RateLimiter
from tests.mocks import FakePageFetcher, listing_html, no_sleep

SITE_1, SITE_2, SITE_3 = DEFAULT_SITES

PAGE = listing_html([
    ("First clip", "/thumbs/1.jpg", "/watch/1"),
    ("Second clip", "https://cdn.example.org/2.jpg", "https://example.com/video/2"),
])


def _fetcher(dynamic, static, sites=DEFAULT_SITES, **kwargs) -> SiteFetcher:
    return SiteFetcher(
        sites=sites,
        dynamic=dynamic,
        static=static,
        rate_limiter=RateLimiter(max_per_second=100, max_concurrent=3),
        sleep=no_sleep,
        **kwargs,
    )


class TestExtractCandidates:
    """Tests for extract_candidates() HTML parsing."""

    def test_extracts_and_resolves_urls(self):
        candidates = extract_candidates(PAGE, SITE_1)

        assert [c.id for c in candidates] == ["site-1-1", "site-1-2"]
        first = candidates[0]
        assert first.title == "First clip"
        assert first.thumbnail_url == "https://example.com/thumbs/1.jpg"
        assert first.video_url == "https://example.com/watch/1"
        assert first.source_site == "Site 1"

    def test_missing_title_falls_back(self):
        candidates = extract_candidates(listing_html([(None, "/t.jpg", "/watch/9")]), SITE_2)
        assert candidates[0].title == "Video 1"

    def test_lazy_loaded_thumbnail(self):
        html = '<div class="video-item"><h3>Lazy</h3><img data-src="/lazy.jpg"><a href="/watch/3">x</a></div>'
        candidates = extract_candidates(html, SITE_1)
        assert candidates[0].thumbnail_url == "https://example.com/lazy.jpg"

    def test_entries_without_link_or_thumbnail_are_dropped(self):
        html = listing_html([
            ("No thumb", None, "/watch/1"),
            ("No link", "/t2.jpg", None),
            ("Bad link", "/t3.jpg", "javascript:watch()"),
            ("Good", "/t4.jpg", "/watch/4"),
        ])

        candidates = extract_candidates(html, SITE_1)

        # Ids keep the position on the page
        assert [c.id for c in candidates] == ["site-1-4"]

    def test_max_videos_per_site(self):
        html = listing_html([(f"Clip {i}", f"/t{i}.jpg", f"/watch/{i}") for i in range(15)])

        assert len(extract_candidates(html, SITE_1)) == 10

    def test_empty_page(self):
        assert extract_candidates("<html><body><p>Nothing here</p></body></html>", SITE_1) == []


class TestSiteRegistry:
    """Tests for load_site_registry()."""

    def test_defaults_without_file(self):
        assert load_site_registry("") == DEFAULT_SITES
        assert [s.url for s in DEFAULT_SITES] == [
            "https://example.com/site1",
            "https://example.com/site2",
            "https://example.com/site3",
        ]

    def test_reads_json_registry(self, tmp_path):
        path = tmp_path / "sites.json"
        path.write_text(json.dumps([
            {"url": "https://videos.example.net", "name": "Example Net", "maxVideos": 5,
             "selectors": {"videoContainer": ".tile"}},
        ]))

        (site,) = load_site_registry(str(path))

        assert site.slug == "example-net"
        assert site.max_videos == 5
        assert site.selectors.video_container == ".tile"
        assert site.selectors.title == DEFAULT_SELECTORS.title

    @pytest.mark.parametrize("content", ["[]", "{}", '[{"name": "x"}]', '[{"url": "ftp://x", "name": "x"}]', "not json"])
    def test_invalid_registry(self, tmp_path, content):
        path = tmp_path / "sites.json"
        path.write_text(content)

        with pytest.raises(ValueError):
            load_site_registry(str(path))


class TestSiteFetcher:
    """Tests for SiteFetcher strategy fallback, retries and fan-out."""

    def test_dynamic_strategy_used_first(self):
        dynamic = FakePageFetcher("dynamic", pages={s.name: PAGE for s in DEFAULT_SITES})
        static = FakePageFetcher("static", pages={s.name: PAGE for s in DEFAULT_SITES})

        result = asyncio.run(_fetcher(dynamic, static).fetch_all_sites())

        assert len(result.candidates) == 6
        assert result.errors == []
        assert static.calls == []

    def test_static_fallback(self):
        dynamic = FakePageFetcher("dynamic")
        static = FakePageFetcher("static", pages={SITE_1.name: PAGE})

        candidates = asyncio.run(_fetcher(dynamic, static, sites=[SITE_1]).fetch_site(SITE_1))

        assert len(candidates) == 2
        assert dynamic.calls == ["Site 1"]
        assert static.calls == ["Site 1"]

    def test_fallback_request_takes_its_own_limiter_slot(self):
        """With one request per second, the static fallback waits out the dynamic request."""
        now = [0.0]
        waits = []

        async def advance(seconds):
            waits.append(seconds)
            now[0] += seconds

        limiter = RateLimiter(max_per_second=1, clock=lambda: now[0], sleep=advance)
        fetcher = SiteFetcher(
            sites=[SITE_1],
            dynamic=FakePageFetcher("dynamic"),
            static=FakePageFetcher("static", pages={SITE_1.name: PAGE}),
            rate_limiter=limiter,
            sleep=no_sleep,
        )

        candidates = asyncio.run(fetcher.fetch_site(SITE_1))

        assert len(candidates) == 2
        assert waits == [1.0]

    def test_three_attempts_then_error(self):
        dynamic = FakePageFetcher("dynamic")
        static = FakePageFetcher("static")

        result = asyncio.run(_fetcher(dynamic, static, sites=[SITE_1]).fetch_all_sites())

        assert result.candidates == []
        assert result.processed_sites == ["Site 1"]
        assert result.errors == ["Both dynamic and static fetch failed for Site 1"]
        assert len(dynamic.calls) == 3
        assert len(static.calls) == 3

    def test_backoff_is_linear(self):
        delays = []

        async def record(seconds):
            delays.append(seconds)

        fetcher = SiteFetcher(
            sites=[SITE_1],
            dynamic=FakePageFetcher("dynamic"),
            static=FakePageFetcher("static"),
            rate_limiter=RateLimiter(max_per_second=100),
            sleep=record,
        )
        asyncio.run(fetcher.fetch_all_sites())

        assert delays == [1.0, 2.0]

    def test_one_failing_site_does_not_cancel_others(self):
        """Site 2 is down: sites 1 and 3 still contribute their candidates."""
        pages = {SITE_1.name: PAGE, SITE_3.name: PAGE}
        dynamic = FakePageFetcher("dynamic", pages=pages)
        static = FakePageFetcher("static", pages=pages)

        result = asyncio.run(_fetcher(dynamic, static).fetch_all_sites())

        assert result.processed_sites == ["Site 1", "Site 2", "Site 3"]
        assert {c.source_site for c in result.candidates} == {"Site 1", "Site 3"}
        assert result.errors == ["Both dynamic and static fetch failed for Site 2"]

    def test_slow_strategy_times_out(self):
        class HangingFetcher(FakePageFetcher):
            async def fetch_html(self, site):
                await asyncio.sleep(5)

        static = FakePageFetcher("static", pages={SITE_1.name: PAGE})
        fetcher = _fetcher(HangingFetcher("dynamic"), static, sites=[SITE_1], site_timeout=0.05)

        candidates = asyncio.run(fetcher.fetch_site(SITE_1))

        assert len(candidates) == 2

    def test_close_closes_both_strategies(self):
        dynamic = FakePageFetcher("dynamic")
        static = FakePageFetcher("static")

        asyncio.run(_fetcher(dynamic, static).close())

        assert dynamic.closed and static.closed


class TestStaticFetcher:
    """Tests for StaticFetcher over an httpx mock transport."""

    def test_returns_page_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == SITE_1.url
            return httpx.Response(200, text=PAGE)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await StaticFetcher(client=client).fetch_html(SITE_1)

        assert asyncio.run(scenario()) == PAGE

    def test_http_error_raises(self):
        async def scenario():
            transport = httpx.MockTransport(lambda request: httpx.Response(503))
            async with httpx.AsyncClient(transport=transport) as client:
                await StaticFetcher(client=client).fetch_html(SITE_1)

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(scenario())


class TestDynamicFetcher:
    """Tests for DynamicFetcher with a mocked Playwright."""

    def _mock_playwright(self, html: str):
        page = MagicMock()
        page.goto = AsyncMock()
        page.content = AsyncMock(return_value=html)

        context = MagicMock()
        context.new_page = AsyncMock(return_value=page)
        context.close = AsyncMock()

        browser = MagicMock()
        browser.new_context = AsyncMock(return_value=context)
        browser.close = AsyncMock()

        playwright = MagicMock()
        playwright.chromium.launch = AsyncMock(return_value=browser)
        playwright.stop = AsyncMock()

        starter = MagicMock()
        starter.start = AsyncMock(return_value=playwright)
        return starter, playwright, browser, context, page

    def test_renders_with_browser_and_reuses_it(self):
        starter, playwright, browser, context, page = self._mock_playwright(PAGE)

        async def scenario():
            fetcher = DynamicFetcher(timeout=7)
            first = await fetcher.fetch_html(SITE_1)
            await fetcher.fetch_html(SITE_2)
            await fetcher.close()
            return first

        with patch("facesearch.services.site_fetcher.async_playwright", return_value=starter):
            html = asyncio.run(scenario())

        assert html == PAGE
        playwright.chromium.launch.assert_awaited_once_with(headless=True)
        page.goto.assert_any_await(SITE_1.url, wait_until="networkidle", timeout=7000)
        assert context.close.await_count == 2
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()

    def test_failed_launch_stops_playwright(self):
        starter, playwright, _, _, _ = self._mock_playwright(PAGE)
        playwright.chromium.launch.side_effect = RuntimeError("no chromium")

        with patch("facesearch.services.site_fetcher.async_playwright", return_value=starter):
            with pytest.raises(RuntimeError):
                asyncio.run(DynamicFetcher().fetch_html(SITE_1))

        playwright.stop.assert_awaited_once()
