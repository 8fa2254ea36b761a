"""
One product search: barcode lookup → candidate collection → batched
verification → gallery assembly, or a manual-upload fallback.

States:
    IDLE → FAST_LOOKUP → DEEP_SEARCH → VERIFYING → ASSEMBLING → DONE
                                                              ↘ MANUAL_FALLBACK
    ERROR from anywhere.

Every state change after an await first checks the cancellation token and
becomes a no-op once the session was cancelled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from productgallery.core import gemini, media
from productgallery.core.cache import TTLCache, build_cache
from productgallery.core.config import settings
from productgallery.core.events import EventEmitter, EventRecorder, PipelineEvent
from productgallery.core.identifiers import digits_only, is_valid_ean13
from productgallery.core.imaging import fetch_image
from productgallery.core.lookup import LookupFn, lookup_free, lookup_identifier, search_title_for
from productgallery.pipeline.assembler import AssemblyError, CleanFn, GalleryAssembler, GenerateFn
from productgallery.pipeline.collector import AiTitleSearchFn, CandidateCollector, MediaSearchFn
from productgallery.pipeline.fallback import FallbackController
from productgallery.pipeline.models import CancellationToken, GalleryItem, PipelineConfig, SessionState
from productgallery.pipeline.scheduler import BatchScheduler, FetchFn
from productgallery.pipeline.verification import VerificationGate, VerifyFn
from productgallery.schemas.lookup import LookupResult

logger = logging.getLogger(__name__)

_shared_cache: Optional[TTLCache] = None


def shared_cache() -> TTLCache:
    """Process-wide lookup cache; entries outlive sessions."""
    global _shared_cache
    if _shared_cache is None:
        _shared_cache = build_cache(settings.CACHE_PATH, settings.LOOKUP_CACHE_TTL_DAYS)
    return _shared_cache


@dataclass
class Collaborators:
    lookup: LookupFn = lookup_free
    media_search: MediaSearchFn = media.search_media
    ai_title_search: AiTitleSearchFn = gemini.search_product_by_title
    fetch: FetchFn = fetch_image
    verify: VerifyFn = gemini.verify_product_image
    clean: CleanFn = gemini.clean_product_photo
    generate: GenerateFn = gemini.generate_product_views


class GallerySessionError(Exception):
    """Fatal session error; `message` is safe to show to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass
class GalleryResult:
    state: SessionState
    title: Optional[str] = None
    lookup: Optional[LookupResult] = None
    gallery: List[GalleryItem] = field(default_factory=list)
    manual_upload_required: bool = False
    candidate_urls: List[str] = field(default_factory=list)
    verification_calls: int = 0
    events: List[PipelineEvent] = field(default_factory=list)


class SearchSession:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        collaborators: Optional[Collaborators] = None,
        *,
        cache: Optional[TTLCache] = None,
        events: Optional[EventEmitter] = None,
        token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or PipelineConfig.from_settings()
        self.collab = collaborators or Collaborators()
        self.cache = cache if cache is not None else shared_cache()
        self.events = events or EventEmitter()
        self.token = token or CancellationToken()
        self.fallback = FallbackController(self.events)
        self._sleep = sleep
        self._recorder = EventRecorder(self.events)
        self._state = SessionState.IDLE
        self._result = GalleryResult(state=SessionState.IDLE)

    @property
    def state(self) -> SessionState:
        return self._state

    def cancel(self) -> None:
        self.token.cancel()
        self.events.emit("session.cancelled", state=self._state.value)

    def _transition(self, new_state: SessionState, **payload: Any) -> bool:
        if self.token.cancelled:
            return False
        logger.info("session %s -> %s", self._state.value, new_state.value)
        self._state = new_state
        self._result.state = new_state
        self.events.emit("session.state", state=new_state.value, **payload)
        return True

    def _snapshot(self) -> GalleryResult:
        self._result.manual_upload_required = self.fallback.manual_upload_required
        self._result.events = list(self._recorder.events)
        return self._result

    def _manual_fallback(self, reason: str) -> GalleryResult:
        self.fallback.resolve(True, reason=reason)
        self._transition(SessionState.MANUAL_FALLBACK, reason=reason)
        return self._snapshot()

    def _fail(self, message: str) -> GallerySessionError:
        # ERROR is terminal even for a cancelled session
        self._state = SessionState.ERROR
        self._result.state = SessionState.ERROR
        self.events.emit("session.state", state=SessionState.ERROR.value, message=message)
        return GallerySessionError(message)

    async def run(self, title: Optional[str] = None, identifier: Optional[str] = None) -> GalleryResult:
        if self._state is not SessionState.IDLE:
            raise RuntimeError("a search session can only run once")

        try:
            return await self._run(title, identifier)
        except GallerySessionError:
            raise
        except Exception as e:
            logger.exception("search session failed")
            raise self._fail("Something went wrong while searching for product photos.") from e

    async def _run(self, title: Optional[str], identifier: Optional[str]) -> GalleryResult:
        code = digits_only(identifier)
        if len(code) == 13 and not is_valid_ean13(code):
            raise self._fail("Invalid EAN-13 (checksum mismatch).")

        lookup: Optional[LookupResult] = None
        if code:
            self._transition(SessionState.FAST_LOOKUP, identifier=code)
            lookup = await lookup_identifier(
                code,
                self.cache,
                lookup=self.collab.lookup,
                timeout=self.config.lookup_timeout_seconds,
                ttl_ms=self.config.lookup_cache_ttl_ms,
            )
            if self.token.cancelled:
                return self._snapshot()
            self._result.lookup = lookup
            self.events.emit("lookup.done", identifier=code, found=lookup is not None)

        search_title = (title or "").strip() or search_title_for(lookup)
        self._result.title = search_title
        if not search_title:
            return self._manual_fallback("no_title")

        if not self._transition(SessionState.DEEP_SEARCH, title=search_title):
            return self._snapshot()
        collector = CandidateCollector(
            self.collab.media_search,
            self.collab.ai_title_search,
            max_candidates=self.config.max_candidates,
            events=self.events,
        )
        urls = await collector.collect(search_title, lookup.images if lookup else None)
        if self.token.cancelled:
            return self._snapshot()
        self._result.candidate_urls = urls
        if not urls:
            return self._manual_fallback("no_candidates")

        self._transition(SessionState.VERIFYING, candidates=len(urls))
        gate = VerificationGate(
            self.collab.verify,
            max_checks=self.config.max_verification_checks,
            max_admitted=self.config.max_verified_admitted,
            events=self.events,
        )
        scheduler = BatchScheduler(
            self.collab.fetch,
            gate,
            config=self.config,
            events=self.events,
            token=self.token,
            sleep=self._sleep,
        )
        scheduled = await scheduler.run(urls, search_title)
        if self.token.cancelled:
            return self._snapshot()
        self._result.verification_calls = scheduled.verification_calls
        if scheduled.empty:
            return self._manual_fallback("no_verified_images")

        self._transition(SessionState.ASSEMBLING, accepted=len(scheduled.accepted))
        assembler = GalleryAssembler(
            self.collab.clean,
            self.collab.generate,
            gallery_size=self.config.gallery_size,
            events=self.events,
            token=self.token,
        )
        try:
            gallery = await assembler.assemble(scheduled.accepted, search_title)
        except AssemblyError as e:
            logger.warning("gallery assembly failed: %s", e)
            raise self._fail("Could not prepare the main product photo. Try again or upload a photo.") from e
        if self.token.cancelled:
            return self._snapshot()

        self._result.gallery = gallery
        self.fallback.resolve(False)
        self._transition(SessionState.DONE, items=len(gallery))
        return self._snapshot()


def summarize(result: GalleryResult) -> Dict[str, Any]:
    return {
        "state": result.state.value,
        "items": len(result.gallery),
        "synthetic": sum(1 for g in result.gallery if g.is_synthetic),
        "manual_upload_required": result.manual_upload_required,
        "verification_calls": result.verification_calls,
    }
