import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from productgallery.core.events import EventEmitter
from productgallery.pipeline.models import ImageCandidate

logger = logging.getLogger(__name__)

VerifyFn = Callable[[bytes, str, str], Awaitable[bool]]


class Verdict(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    NO_BUDGET = "no_budget"


class VerificationGate:
    """
    Wraps the visual verification oracle with a per-session budget:
      - at most `max_checks` oracle calls
      - at most `max_admitted` verified candidates
    Once either is spent every further candidate gets NO_BUDGET: it is not
    verified and never gallery-eligible, but the search carries on.
    """

    def __init__(
        self,
        verify: VerifyFn,
        *,
        max_checks: int = 20,
        max_admitted: int = 5,
        events: Optional[EventEmitter] = None,
    ) -> None:
        self.verify = verify
        self.max_checks = max_checks
        self.max_admitted = max_admitted
        self.events = events or EventEmitter()
        self.checks_used = 0
        self.admitted = 0
        self._exhausted_reported = False

    @property
    def has_capacity(self) -> bool:
        return self.checks_used < self.max_checks and self.admitted < self.max_admitted

    def _no_budget(self) -> Verdict:
        if not self._exhausted_reported:
            self._exhausted_reported = True
            self.events.emit(
                "verification.budget_exhausted",
                checks_used=self.checks_used,
                admitted=self.admitted,
            )
        return Verdict.NO_BUDGET

    async def check(self, candidate: ImageCandidate, expected_title: str) -> Verdict:
        if candidate.data is None:
            raise ValueError("candidate must be fetched before verification")
        if not self.has_capacity:
            return self._no_budget()

        # Claim the slot before suspending so concurrent chains see it
        self.checks_used += 1
        try:
            ok = await self.verify(candidate.data, expected_title, candidate.url)
        except Exception as e:
            logger.info("verification error for %s: %s", candidate.url, e)
            self.events.emit("verification.error", url=candidate.url, error=str(e))
            return Verdict.REJECTED

        if not ok:
            return Verdict.REJECTED
        if self.admitted >= self.max_admitted:
            # Another chain of the same batch took the last admission
            return self._no_budget()

        self.admitted += 1
        return Verdict.VERIFIED
