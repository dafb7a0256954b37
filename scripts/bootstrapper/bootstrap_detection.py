from __future__ import annotations

import errno
from typing import Optional

from .models import OutcomeKind, PhaseOutcome


class BootstrapError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""

    kind = OutcomeKind.FAILED


class AlreadyRunningError(BootstrapError):
    kind = OutcomeKind.ALREADY_RUNNING


class AgentNotFoundError(BootstrapError):
    kind = OutcomeKind.NOT_FOUND


class BootstrapTimeoutError(BootstrapError):
    kind = OutcomeKind.TIMED_OUT


class DeadlineExpired(BootstrapTimeoutError):
    """Raised when a phase starts after the shared deadline has passed."""


class GuardViolationError(BootstrapError):
    kind = OutcomeKind.GUARD_VIOLATION


class WorkloadsDeployedError(GuardViolationError):
    kind = OutcomeKind.WORKLOADS_DEPLOYED


class TransportFailure(BootstrapError):
    kind = OutcomeKind.FAILED


class LaunchFailure(BootstrapError):
    kind = OutcomeKind.LAUNCH_FAILED


class BootstrapInterrupted(BootstrapError):
    kind = OutcomeKind.INTERRUPTED


class ServiceAlreadyDeployed(Exception):
    """Raised by a service installer when the service is already deployed."""


_ERRORS_BY_KIND: dict[OutcomeKind, type[BootstrapError]] = {
    OutcomeKind.ALREADY_RUNNING: AlreadyRunningError,
    OutcomeKind.NOT_FOUND: AgentNotFoundError,
    OutcomeKind.TIMED_OUT: BootstrapTimeoutError,
    OutcomeKind.GUARD_VIOLATION: GuardViolationError,
    OutcomeKind.WORKLOADS_DEPLOYED: WorkloadsDeployedError,
    OutcomeKind.FAILED: TransportFailure,
    OutcomeKind.LAUNCH_FAILED: LaunchFailure,
    OutcomeKind.INTERRUPTED: BootstrapInterrupted,
}

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_TIMED_OUT = 3
EXIT_GUARD_VIOLATION = 4
EXIT_RUNNING_STATE = 5
EXIT_INTERRUPTED = 130

_EXIT_CODES: dict[OutcomeKind, int] = {
    OutcomeKind.DONE: EXIT_OK,
    OutcomeKind.TIMED_OUT: EXIT_TIMED_OUT,
    OutcomeKind.GUARD_VIOLATION: EXIT_GUARD_VIOLATION,
    OutcomeKind.WORKLOADS_DEPLOYED: EXIT_GUARD_VIOLATION,
    OutcomeKind.ALREADY_RUNNING: EXIT_RUNNING_STATE,
    OutcomeKind.NOT_FOUND: EXIT_RUNNING_STATE,
    OutcomeKind.FAILED: EXIT_FAILURE,
    OutcomeKind.LAUNCH_FAILED: EXIT_FAILURE,
    OutcomeKind.INTERRUPTED: EXIT_INTERRUPTED,
}

# Outcomes that are returned to the caller instead of raised.
BUSINESS_OUTCOMES = frozenset(
    {
        OutcomeKind.DONE,
        OutcomeKind.ALREADY_RUNNING,
        OutcomeKind.NOT_FOUND,
        OutcomeKind.GUARD_VIOLATION,
        OutcomeKind.WORKLOADS_DEPLOYED,
        OutcomeKind.TIMED_OUT,
        OutcomeKind.INTERRUPTED,
    }
)


def outcome_error(outcome: PhaseOutcome) -> Optional[BootstrapError]:
    if outcome.ok:
        return None
    if isinstance(outcome.cause, BootstrapError) and outcome.cause.kind is outcome.kind:
        return outcome.cause
    error = _ERRORS_BY_KIND[outcome.kind](outcome.reason or outcome.kind.value)
    if outcome.cause is not None:
        error.__cause__ = outcome.cause
    return error


def outcome_from_error(exc: BaseException, reason: Optional[str] = None) -> PhaseOutcome:
    if isinstance(exc, BootstrapError):
        return PhaseOutcome(exc.kind, reason or str(exc), exc)
    return PhaseOutcome.failed(reason or safe_error_text(exc), exc)


def exit_code_for(outcome: PhaseOutcome) -> int:
    return _EXIT_CODES.get(outcome.kind, EXIT_FAILURE)


def safe_error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


_CONNECT_OR_CLOSE_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.ENOTCONN,
    errno.ESHUTDOWN,
}

_CONNECT_OR_CLOSE_MARKERS = (
    "connection refused",
    "connection reset",
    "connection closed",
    "broken pipe",
    "no such object",
    "object not found",
    "not connected",
)


def is_connect_or_close_error(exc: BaseException) -> bool:
    """True when ``exc`` means the remote end went away rather than misbehaved.

    A target that is shutting down answers with refused or reset connections,
    or reports that the exported object no longer exists.
    """
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (ConnectionError, EOFError)):
            return True
        if isinstance(current, OSError) and current.errno in _CONNECT_OR_CLOSE_ERRNOS:
            return True
        lower = str(current).lower()
        if any(marker in lower for marker in _CONNECT_OR_CLOSE_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False
