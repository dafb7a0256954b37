from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .bootstrap_detection import BootstrapInterrupted, DeadlineExpired, safe_error_text
from .models import PhaseOutcome

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 0.05

Clock = Callable[[], float]


@dataclass(frozen=True)
class Deadline:
    """Absolute end of a multi-phase operation.

    Computed once when the operation starts; every phase asks for what is left
    instead of starting its own timer, so the whole sequence stays inside the
    caller's budget.
    """

    expires_at: float
    clock: Clock = field(default=time.monotonic, compare=False, repr=False)

    @classmethod
    def after(cls, seconds: float, clock: Clock = time.monotonic) -> "Deadline":
        return cls(expires_at=clock() + seconds, clock=clock)

    @property
    def expired(self) -> bool:
        return self.clock() >= self.expires_at

    def remaining(self, what: str = "the operation") -> float:
        left = self.expires_at - self.clock()
        if left <= 0:
            raise DeadlineExpired(f"The operation timed out waiting for {what}")
        return left


def new_deadline(total_timeout: float, clock: Clock = time.monotonic) -> Deadline:
    return Deadline.after(total_timeout, clock=clock)


def wait_for(
    predicate: Callable[[], bool],
    *,
    timeout: float,
    poll_interval: float,
    description: str,
    cancel: Optional[threading.Event] = None,
    clock: Clock = time.monotonic,
) -> PhaseOutcome:
    """Poll ``predicate`` until it returns True, ``timeout`` passes or ``cancel`` is set.

    The first evaluation is immediate. Waits between evaluations never run past
    the timeout, so the latch overshoots by at most one predicate call.
    """
    interval = max(poll_interval, MIN_POLL_INTERVAL)
    waiter = cancel if cancel is not None else threading.Event()
    end = clock() + timeout

    while True:
        if waiter.is_set():
            return PhaseOutcome.interrupted(f"interrupted while waiting for {description}")
        try:
            if predicate():
                return PhaseOutcome.done()
        except BootstrapInterrupted as exc:
            return PhaseOutcome.interrupted(str(exc) or f"interrupted while waiting for {description}")
        except Exception as exc:
            logger.debug("condition for %s raised", description, exc_info=True)
            return PhaseOutcome.failed(
                f"failed while waiting for {description}: {safe_error_text(exc)}",
                exc,
            )

        left = end - clock()
        if left <= 0:
            return PhaseOutcome.timed_out(
                f"The operation timed out after {timeout:.1f}s waiting for {description}"
            )
        if waiter.wait(min(interval, left)):
            return PhaseOutcome.interrupted(f"interrupted while waiting for {description}")


def pause(seconds: float, cancel: Optional[threading.Event] = None) -> bool:
    """Sleep for ``seconds``; return False when cancelled first."""
    if seconds <= 0:
        return not (cancel is not None and cancel.is_set())
    if cancel is None:
        time.sleep(seconds)
        return True
    return not cancel.wait(seconds)
