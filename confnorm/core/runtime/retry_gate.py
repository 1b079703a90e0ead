from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from confnorm.core.errors import UploadNotFoundError

log = logging.getLogger("confnorm.storage")

# (last attempt number, delay seconds) steps; attempts past the last step reuse it.
DEFAULT_DELAY_STEPS: Tuple[Tuple[int, float], ...] = ((3, 0.1), (7, 0.25), (10, 0.5))


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded polling for a file another process may still be writing."""

    max_attempts: int = 10
    delay_steps: Tuple[Tuple[int, float], ...] = DEFAULT_DELAY_STEPS

    def delay_for(self, attempt: int) -> float:
        for last, delay in self.delay_steps:
            if attempt <= last:
                return delay
        return self.delay_steps[-1][1] if self.delay_steps else 0.0

    def max_total_delay(self) -> float:
        """Upper bound on time spent sleeping by one `resolve` call."""

        return sum(self.delay_for(a) for a in range(1, self.max_attempts + 1))


class GateState(str, Enum):
    POLLING = "polling"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class GateOutcome:
    path: str
    state: GateState
    attempts: int
    waited_seconds: float
    used_alternate: bool


class RetryGate:
    """State machine that waits for an upload to become visible.

    POLLING: check primary; on absence sleep `delay_for(attempt)` and re-check,
    up to `max_attempts` times. Then the alternate location is checked once.
    RESOLVED on the first hit; EXHAUSTED raises UploadNotFoundError.

    Existence checks and sleep are injectable so tests run without wall-clock waits.
    The gate holds no per-call state; one instance serves concurrent conversions
    and each call reports its final state on the returned GateOutcome.

    Time:  O(max_attempts) checks
    Space: O(1)
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        exists: Callable[[str], bool] = os.path.isfile,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._policy = policy or RetryPolicy()
        self._exists = exists
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def resolve(self, primary: str, alternate: Optional[str] = None, *, token: Optional[str] = None) -> GateOutcome:
        waited = 0.0
        attempts = 0

        if self._exists(primary):
            return self._resolved(primary, attempts, waited, False)

        while attempts < self._policy.max_attempts:
            attempts += 1
            delay = self._policy.delay_for(attempts)
            self._sleep(delay)
            waited += delay
            if self._exists(primary):
                return self._resolved(primary, attempts, waited, False)

        if alternate and self._exists(alternate):
            return self._resolved(alternate, attempts, waited, True)

        candidates: List[str] = [primary] + ([alternate] if alternate else [])
        log.warning(
            "upload_not_found",
            extra={
                "state": GateState.EXHAUSTED.value,
                "attempts": attempts,
                "waited_seconds": round(waited, 3),
                "candidates": len(candidates),
            },
        )
        raise UploadNotFoundError(
            token or os.path.basename(primary),
            candidates=candidates,
            attempts=attempts,
            waited_seconds=waited,
        )

    def _resolved(self, path: str, attempts: int, waited: float, used_alternate: bool) -> GateOutcome:
        if attempts or used_alternate:
            log.info(
                "upload_resolved_after_retry",
                extra={"attempts": attempts, "waited_seconds": round(waited, 3), "used_alternate": used_alternate},
            )
        return GateOutcome(
            path=path,
            state=GateState.RESOLVED,
            attempts=attempts,
            waited_seconds=waited,
            used_alternate=used_alternate,
        )
