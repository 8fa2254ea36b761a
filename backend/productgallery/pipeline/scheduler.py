"""
Batch scheduler: drives fetch → signature dedupe → dimension filter →
verification over the candidate URLs.

URLs are processed in fixed-size groups. The chains of one group run
concurrently and are joined before the next group starts, with a pause in
between so remote hosts are not hammered. Scheduling stops once enough
candidates were accepted; a group in flight always finishes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from productgallery.core.events import EventEmitter
from productgallery.pipeline.dedupe import SignatureDeduper, image_signature
from productgallery.pipeline.dimensions import is_large_enough, read_dimensions
from productgallery.pipeline.models import CancellationToken, ImageCandidate, PipelineConfig
from productgallery.pipeline.verification import Verdict, VerificationGate

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], Awaitable[bytes]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ScheduleResult:
    accepted: List[ImageCandidate] = field(default_factory=list)
    unverified: List[ImageCandidate] = field(default_factory=list)
    batches_run: int = 0
    verification_calls: int = 0

    @property
    def empty(self) -> bool:
        return not self.accepted


class BatchScheduler:
    def __init__(
        self,
        fetch: FetchFn,
        gate: VerificationGate,
        *,
        config: Optional[PipelineConfig] = None,
        events: Optional[EventEmitter] = None,
        token: Optional[CancellationToken] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.fetch = fetch
        self.gate = gate
        self.config = config or PipelineConfig()
        self.events = events or EventEmitter()
        self.token = token or CancellationToken()
        self.sleep = sleep
        self.deduper = SignatureDeduper()

    def _drop(self, candidate: ImageCandidate, reason: str, **extra) -> None:
        logger.debug("dropped %s: %s", candidate.url, reason)
        self.events.emit("candidate.dropped", url=candidate.url, index=candidate.index, reason=reason, **extra)

    async def _process(self, candidate: ImageCandidate, title: str, result: ScheduleResult) -> None:
        try:
            data = await self.fetch(candidate.url)
        except Exception as e:
            if not self.token.cancelled:
                self._drop(candidate, "fetch", error=str(e))
            return
        if self.token.cancelled:
            return

        candidate.data = data
        candidate.signature = image_signature(data)
        if self.deduper.is_duplicate(candidate.signature):
            self._drop(candidate, "duplicate", signature=candidate.signature)
            return

        dims = read_dimensions(data)
        if dims is None:
            self._drop(candidate, "decode")
            return
        candidate.width, candidate.height = dims
        if not is_large_enough(candidate.width, candidate.height, self.config.min_image_side):
            self._drop(candidate, "dimension", width=candidate.width, height=candidate.height)
            return

        verdict = await self.gate.check(candidate, title)
        if self.token.cancelled:
            return

        if verdict is Verdict.REJECTED:
            self._drop(candidate, "verification")
        elif verdict is Verdict.NO_BUDGET:
            result.unverified.append(candidate)
            self.events.emit("candidate.unverified", url=candidate.url, index=candidate.index)
        else:
            candidate.verified = True
            result.accepted.append(candidate)
            self.events.emit(
                "candidate.accepted",
                url=candidate.url,
                index=candidate.index,
                width=candidate.width,
                height=candidate.height,
            )

    async def run(self, urls: Sequence[str], title: str) -> ScheduleResult:
        result = ScheduleResult()
        candidates = [ImageCandidate(url=u, index=i) for i, u in enumerate(urls)]
        size = max(1, self.config.batch_size)

        for start in range(0, len(candidates), size):
            if self.token.cancelled:
                break
            if len(result.accepted) >= self.config.target_accepted:
                break
            if start > 0 and self.config.batch_pacing_seconds > 0:
                await self.sleep(self.config.batch_pacing_seconds)
                if self.token.cancelled:
                    break

            group = candidates[start:start + size]
            self.events.emit("batch.started", batch=result.batches_run, urls=[c.url for c in group])
            await asyncio.gather(*(self._process(c, title, result) for c in group))
            if self.token.cancelled:
                break
            result.batches_run += 1

        result.verification_calls = self.gate.checks_used
        if result.empty and not self.token.cancelled:
            self.events.emit("scheduler.no_verified_images", candidates=len(candidates))
        return result
