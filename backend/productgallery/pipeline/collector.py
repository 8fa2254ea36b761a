import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from productgallery.core.events import EventEmitter

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 45

# Below this many media-search hits the AI title search kicks in
MIN_MEDIA_RESULTS = 2

MediaSearchFn = Callable[[str], Awaitable[List[str]]]
AiTitleSearchFn = Callable[[str], Awaitable[Dict[str, Any]]]


def is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _valid(urls: Optional[Iterable[Any]]) -> List[str]:
    return [u.strip() for u in (urls or []) if is_http_url(u)]


class CandidateCollector:
    """
    Merges candidate image URLs, in order:
      1) title media search
      2) images already known from a barcode lookup
      3) AI title search, only when (1) found fewer than 2 URLs
    Exact-URL dedupe, capped at `max_candidates`.
    """

    def __init__(
        self,
        media_search: MediaSearchFn,
        ai_title_search: AiTitleSearchFn,
        *,
        max_candidates: int = MAX_CANDIDATES,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self.media_search = media_search
        self.ai_title_search = ai_title_search
        self.max_candidates = max_candidates
        self.events = events or EventEmitter()

    async def _media(self, title: str) -> List[str]:
        try:
            return _valid(await self.media_search(title))
        except Exception as e:
            logger.warning("media search failed for %r: %s", title, e)
            self.events.emit("collector.source_failed", source="media", error=str(e))
            return []

    async def _ai(self, title: str) -> List[str]:
        try:
            found = await self.ai_title_search(title)
        except Exception as e:
            logger.warning("AI title search failed for %r: %s", title, e)
            self.events.emit("collector.source_failed", source="ai", error=str(e))
            return []
        return _valid((found or {}).get("images"))

    async def collect(self, title: str, known_images: Optional[Iterable[str]] = None) -> List[str]:
        media = await self._media(title)
        merged = media + _valid(known_images)

        if len(media) < MIN_MEDIA_RESULTS:
            merged += await self._ai(title)

        urls = list(dict.fromkeys(merged))[: self.max_candidates]
        self.events.emit("collector.done", count=len(urls), media=len(media))
        return urls
