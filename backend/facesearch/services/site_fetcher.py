import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import httpx
from bs4 import BeautifulSoup
from playwright.async_api import async_playwright
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from facesearch.core.config import settings
from facesearch.core.logging import get_logger
from facesearch.schemas.search_schema import VideoCandidate
from facesearch.services.site_registry import SiteConfig, load_site_registry
from facesearch.utils.concurrency import RateLimiter, gather_settled
from facesearch.utils.validation import resolve_url

logger = get_logger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 1.0

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class SiteFetchError(Exception):
    """Both fetch strategies failed for a site."""


@dataclass
class FetchResult:
    candidates: List[VideoCandidate] = field(default_factory=list)
    processed_sites: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def extract_candidates(html: str, site: SiteConfig) -> List[VideoCandidate]:
    """
    Pulls up to `site.max_videos` listings out of a page with the site's
    CSS selectors. Entries without a usable thumbnail or video link are
    dropped; a missing title falls back to "Video <n>".
    """
    soup = BeautifulSoup(html, "html.parser")
    containers = soup.select(site.selectors.video_container)[:site.max_videos]

    candidates = []
    for index, container in enumerate(containers):
        title_el = container.select_one(site.selectors.title)
        title = title_el.get_text(strip=True) if title_el else ""

        thumb_el = container.select_one(site.selectors.thumbnail)
        thumb_src = None
        if thumb_el is not None:
            thumb_src = thumb_el.get("src") or thumb_el.get("data-src")

        link_el = container.select_one(site.selectors.video_url)
        href = link_el.get("href") if link_el is not None else None

        thumbnail_url = resolve_url(thumb_src, site.url)
        video_url = resolve_url(href, site.url)

        if not thumbnail_url or not video_url:
            continue

        candidates.append(VideoCandidate(
            id=f"{site.slug}-{index + 1}",
            title=title or f"Video {index + 1}",
            thumbnail_url=thumbnail_url,
            video_url=video_url,
            source_site=site.name,
        ))

    return candidates


class PageFetcher:
    """Common capability of the static and dynamic strategies."""

    name = "base"

    async def fetch_html(self, site: SiteConfig) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class StaticFetcher(PageFetcher):
    """
    Plain HTTP GET of the site page. JavaScript rendered listings are
    invisible to this strategy.
    """

    name = "static"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._timeout = timeout or settings.SITE_FETCH_TIMEOUT
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml"},
            )
        return self._client

    async def fetch_html(self, site: SiteConfig) -> str:
        response = await self._get_client().get(site.url)
        response.raise_for_status()
        return response.text

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class DynamicFetcher(PageFetcher):
    """
    Headless Chromium with JavaScript enabled. The browser is launched on
    first use and shared by all sites; a failed launch only fails the
    site that triggered it and is retried by the next one.
    """

    name = "dynamic"

    def __init__(self, timeout: Optional[float] = None):
        self._timeout = timeout or settings.SITE_FETCH_TIMEOUT
        self._playwright = None
        self._browser = None
        self._launch_lock: Optional[asyncio.Lock] = None

    async def _get_browser(self):
        if self._launch_lock is None:
            self._launch_lock = asyncio.Lock()

        async with self._launch_lock:
            if self._browser is None:
                playwright = await async_playwright().start()
                try:
                    self._browser = await playwright.chromium.launch(headless=True)
                except Exception:
                    await playwright.stop()
                    raise
                self._playwright = playwright
                logger.info("Headless browser launched")

        return self._browser

    async def fetch_html(self, site: SiteConfig) -> str:
        browser = await self._get_browser()
        context = await browser.new_context(user_agent=USER_AGENT, java_script_enabled=True)
        try:
            page = await context.new_page()
            await page.goto(site.url, wait_until="networkidle", timeout=self._timeout * 1000)
            return await page.content()
        finally:
            await context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class SiteFetcher:
    """
    Turns the site registry into video candidates.

    Every site runs concurrently; one failing site never cancels the
    others. Each site gets up to three attempts with linear backoff, and
    every attempt first tries the dynamic strategy, then the static one.
    """

    def __init__(
        self,
        sites: Optional[Sequence[SiteConfig]] = None,
        dynamic: Optional[PageFetcher] = None,
        static: Optional[PageFetcher] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_attempts: int = MAX_ATTEMPTS,
        backoff: float = BACKOFF_SECONDS,
        site_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.sites = tuple(sites) if sites is not None else load_site_registry()
        self.dynamic = dynamic or DynamicFetcher()
        self.static = static or StaticFetcher()
        self.rate_limiter = rate_limiter or RateLimiter(max_per_second=2, max_concurrent=3)
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.site_timeout = site_timeout or settings.SITE_FETCH_TIMEOUT
        self._sleep = sleep

    async def _fetch_once(self, site: SiteConfig) -> List[VideoCandidate]:
        for fetcher in (self.dynamic, self.static):
            try:
                # Every request counts against the limiter, fallbacks included
                async with self.rate_limiter.slot():
                    html = await asyncio.wait_for(fetcher.fetch_html(site), timeout=self.site_timeout)
                candidates = extract_candidates(html, site)
                logger.info(f"{site.name}: {len(candidates)} candidate(s) via {fetcher.name} fetch")
                return candidates
            except Exception as e:
                logger.warning(f"{fetcher.name.capitalize()} fetch failed for {site.name}: {e!r}")

        raise SiteFetchError(f"Both dynamic and static fetch failed for {site.name}")

    async def fetch_site(self, site: SiteConfig) -> List[VideoCandidate]:
        """
        Fetches one site with retries.

        Raises:
            SiteFetchError: After the last attempt failed.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            retry=retry_if_exception_type(Exception),
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(f"Retrying {site.name} (attempt {attempt.retry_state.attempt_number})")
                candidates = await self._fetch_once(site)

        return candidates

    async def fetch_all_sites(self) -> FetchResult:
        """
        Fetches every registered site. Never raises for site failures:
        they end up in `errors` and the site contributes no candidates.
        """
        outcomes = await gather_settled(self.fetch_site(site) for site in self.sites)

        result = FetchResult()
        for site, outcome in zip(self.sites, outcomes):
            result.processed_sites.append(site.name)

            if isinstance(outcome, asyncio.CancelledError):
                raise outcome

            if isinstance(outcome, BaseException):
                logger.error(f"Site {site.name} failed: {outcome}")
                if isinstance(outcome, SiteFetchError):
                    result.errors.append(str(outcome))
                else:
                    result.errors.append(f"Failed to fetch {site.name}")
                continue

            result.candidates.extend(outcome)

        logger.info(
            f"Fetched {len(result.candidates)} candidate(s) from "
            f"{len(result.processed_sites)} site(s), {len(result.errors)} error(s)"
        )
        return result

    async def close(self) -> None:
        for fetcher in (self.dynamic, self.static):
            try:
                await fetcher.close()
            except Exception as e:
                logger.warning(f"Error closing {fetcher.name} fetcher: {e}")
