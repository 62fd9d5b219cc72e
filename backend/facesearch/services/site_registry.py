import json
from dataclasses import dataclass
from typing import List, Optional, Tuple

from facesearch.core.config import settings
from facesearch.core.logging import get_logger

logger = get_logger(__name__)

MAX_VIDEOS_PER_SITE = 10


@dataclass(frozen=True)
class SiteSelectors:
    """CSS selectors used to pull video listings out of a site page."""
    video_container: str
    title: str
    thumbnail: str
    video_url: str


@dataclass(frozen=True)
class SiteConfig:
    url: str
    name: str
    selectors: SiteSelectors
    max_videos: int = MAX_VIDEOS_PER_SITE

    @property
    def slug(self) -> str:
        """Prefix of candidate ids, e.g. 'Site 1' -> 'site-1'."""
        return "-".join(self.name.lower().split())


DEFAULT_SELECTORS = SiteSelectors(
    video_container=".video-item, .video-card, article",
    title="h2, h3, .title, .video-title",
    thumbnail="img, .thumbnail img, .video-thumbnail",
    video_url='a[href*="watch"], a[href*="video"], .video-link',
)

# Placeholder origins. Real sites need their own selector tuning.
DEFAULT_SITES: Tuple[SiteConfig, ...] = (
    SiteConfig(url="https://example.com/site1", name="Site 1", selectors=DEFAULT_SELECTORS),
    SiteConfig(url="https://example.com/site2", name="Site 2", selectors=DEFAULT_SELECTORS),
    SiteConfig(url="https://example.com/site3", name="Site 3", selectors=DEFAULT_SELECTORS),
)


def _parse_site(entry: dict) -> SiteConfig:
    selectors = entry.get("selectors") or {}
    return SiteConfig(
        url=entry["url"],
        name=entry["name"],
        max_videos=int(entry.get("maxVideos", MAX_VIDEOS_PER_SITE)),
        selectors=SiteSelectors(
            video_container=selectors.get("videoContainer", DEFAULT_SELECTORS.video_container),
            title=selectors.get("title", DEFAULT_SELECTORS.title),
            thumbnail=selectors.get("thumbnail", DEFAULT_SELECTORS.thumbnail),
            video_url=selectors.get("videoUrl", DEFAULT_SELECTORS.video_url),
        ),
    )


def load_site_registry(path: Optional[str] = None) -> Tuple[SiteConfig, ...]:
    """
    Reads the site registry once at start-up.

    The optional JSON file holds a list of
    {"url", "name", "maxVideos", "selectors": {"videoContainer", "title", "thumbnail", "videoUrl"}}.
    Without a file the three default sites are used.

    Raises:
        ValueError: If the file exists but is not a valid registry.
    """
    registry_path = path if path is not None else settings.SITE_REGISTRY_PATH

    if not registry_path:
        return DEFAULT_SITES

    with open(registry_path, "r", encoding="utf-8") as f:
        raw = json.load(f)

    if not isinstance(raw, list) or not raw:
        raise ValueError(f"Site registry {registry_path} must be a non-empty JSON array")

    try:
        sites: List[SiteConfig] = [_parse_site(entry) for entry in raw]
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Invalid site registry entry in {registry_path}: {e}") from e

    for site in sites:
        if not site.url.startswith(("http://", "https://")):
            raise ValueError(f"Site {site.name!r} has a non-http URL")

    logger.info(f"Loaded {len(sites)} site(s) from {registry_path}")
    return tuple(sites)
