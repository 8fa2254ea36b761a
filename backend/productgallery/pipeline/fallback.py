from typing import Optional

from productgallery.core.events import EventEmitter


class FallbackController:
    """
    Manual-upload signal for one search attempt. Resolved exactly once:
    True when no candidate URL was found or none survived verification.
    """

    def __init__(self, events: Optional[EventEmitter] = None) -> None:
        self.events = events or EventEmitter()
        self._signal: Optional[bool] = None

    @property
    def resolved(self) -> bool:
        return self._signal is not None

    @property
    def manual_upload_required(self) -> bool:
        return bool(self._signal)

    def resolve(self, manual_upload_required: bool, reason: str = "") -> None:
        if self._signal is not None:
            raise RuntimeError("fallback signal already resolved for this search")
        self._signal = manual_upload_required
        self.events.emit("fallback.signal", manual_upload_required=manual_upload_required, reason=reason)
