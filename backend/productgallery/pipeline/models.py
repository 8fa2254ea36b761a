from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from productgallery.core.config import Settings, settings as default_settings


@dataclass(frozen=True)
class PipelineConfig:
    """
    Tuning knobs of one search session. The defaults are empirical
    rate-limit values, not correctness requirements.
    """

    batch_size: int = 3
    batch_pacing_seconds: float = 0.5
    max_verification_checks: int = 20
    max_verified_admitted: int = 5
    target_accepted: int = 4
    max_candidates: int = 45
    min_image_side: int = 200
    gallery_size: int = 4
    lookup_timeout_seconds: float = 4.0
    lookup_cache_ttl_ms: int = 30 * 24 * 60 * 60 * 1000

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "PipelineConfig":
        s = s or default_settings
        return cls(
            batch_size=s.GALLERY_BATCH_SIZE,
            batch_pacing_seconds=s.GALLERY_BATCH_PACING_SECONDS,
            max_verification_checks=s.VERIFY_MAX_CHECKS,
            max_verified_admitted=s.VERIFY_MAX_ADMITTED,
            target_accepted=s.GALLERY_TARGET_ACCEPTED,
            max_candidates=s.GALLERY_MAX_CANDIDATES,
            min_image_side=s.GALLERY_MIN_IMAGE_SIDE,
            gallery_size=s.GALLERY_SIZE,
            lookup_timeout_seconds=s.LOOKUP_TIMEOUT_SECONDS,
            lookup_cache_ttl_ms=s.LOOKUP_CACHE_TTL_DAYS * 24 * 60 * 60 * 1000,
        )


class SessionState(str, Enum):
    IDLE = "idle"
    FAST_LOOKUP = "fast_lookup"
    DEEP_SEARCH = "deep_search"
    VERIFYING = "verifying"
    ASSEMBLING = "assembling"
    DONE = "done"
    MANUAL_FALLBACK = "manual_fallback"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DONE, SessionState.MANUAL_FALLBACK, SessionState.ERROR)


@dataclass
class ImageCandidate:
    """
    One candidate URL on its way through the scheduler.
    Fields past `index` are filled in by the pipeline stages.
    """

    url: str
    index: int
    data: Optional[bytes] = None
    width: int = 0
    height: int = 0
    signature: Optional[str] = None
    verified: bool = False

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass
class GalleryItem:
    name: str
    data: Optional[bytes] = None
    source_url: Optional[str] = None
    is_synthetic: bool = False


class CancellationToken:
    """
    Cooperative cancellation: in-flight calls keep running, but their results
    are discarded once `cancel()` was called.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled
