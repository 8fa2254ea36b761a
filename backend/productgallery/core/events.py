"""
Pipeline events.

Publish-subscribe sink injected into the gallery pipeline so callers (HTTP
routes, tests) can observe "candidate dropped, reason=dimension" style
events without scraping log output.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

WILDCARD = "*"


class PipelineEvent:
    """One thing that happened during a search session."""

    def __init__(self, event_type: str, payload: Dict[str, Any] | None = None) -> None:
        self.event_type = event_type
        self.timestamp = datetime.now(timezone.utc)
        self.payload = payload or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }

    def __repr__(self) -> str:
        return f"PipelineEvent(event_type={self.event_type}, payload={self.payload})"


EventCallback = Callable[[PipelineEvent], None]


class EventEmitter:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[EventCallback]] = {}

    def subscribe(self, event_type: str, callback: EventCallback) -> None:
        """Subscribe to an event type, or "*" for everything."""
        callbacks = self._subscribers.setdefault(event_type, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def unsubscribe(self, event_type: str, callback: EventCallback) -> None:
        callbacks = self._subscribers.get(event_type)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event_type: str, **payload: Any) -> PipelineEvent:
        event = PipelineEvent(event_type, payload)
        logger.debug("%s %s", event_type, payload)

        targets = list(self._subscribers.get(event_type, []))
        if event_type != WILDCARD:
            targets.extend(self._subscribers.get(WILDCARD, []))

        for callback in targets:
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not break the pipeline
                logger.exception("event subscriber failed for %s", event_type)
        return event


class EventRecorder:
    """Collects every event; handy for responses and tests."""

    def __init__(self, emitter: EventEmitter | None = None) -> None:
        self.events: List[PipelineEvent] = []
        if emitter is not None:
            emitter.subscribe(WILDCARD, self)

    def __call__(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[PipelineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def dropped_reasons(self) -> List[str]:
        return [e.payload.get("reason", "") for e in self.of_type("candidate.dropped")]
