from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

LOCALCLOUD_LOOKUP_GROUP = "localcloud"
MANAGEMENT_ZONE = "management"
MANAGEMENT_APPLICATION = "management"
DEFAULT_LOOKUP_PORT = 4174
DEFAULT_LOCALCLOUD_LOOKUP_PORT = 4168


class RoleKind(str, Enum):
    LOOKUP = "lookup"
    MANAGER = "manager"
    ELASTIC_MANAGER = "elastic_manager"
    WORKLOAD = "workload"


class OutcomeKind(str, Enum):
    DONE = "done"
    TIMED_OUT = "timed_out"
    GUARD_VIOLATION = "guard_violation"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"
    NOT_FOUND = "not_found"
    LAUNCH_FAILED = "launch_failed"
    INTERRUPTED = "interrupted"
    WORKLOADS_DEPLOYED = "workloads_deployed"


class StartState(str, Enum):
    IDLE = "idle"
    CHECKING_EXISTING = "checking_existing"
    LAUNCHING = "launching"
    AWAITING_AGENT = "awaiting_agent"
    AWAITING_CORE_ROLES = "awaiting_core_roles"
    INSTALLING_DEPENDENTS = "installing_dependents"
    AWAITING_DEPENDENTS = "awaiting_dependents"
    COMPLETE = "complete"
    FAILED = "failed"


class TeardownState(str, Enum):
    IDLE = "idle"
    UNINSTALLING_WORKLOADS = "uninstalling_workloads"
    DISCONNECTING = "disconnecting"
    LOCATING_AGENT = "locating_agent"
    GUARDING = "guarding"
    SHUTTING_DOWN = "shutting_down"
    AWAITING_GONE = "awaiting_gone"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class PhaseOutcome:
    kind: OutcomeKind
    reason: str = ""
    cause: Optional[BaseException] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.DONE

    @classmethod
    def done(cls) -> "PhaseOutcome":
        return cls(OutcomeKind.DONE)

    @classmethod
    def timed_out(cls, reason: str) -> "PhaseOutcome":
        return cls(OutcomeKind.TIMED_OUT, reason)

    @classmethod
    def guard_violation(cls, reason: str) -> "PhaseOutcome":
        return cls(OutcomeKind.GUARD_VIOLATION, reason)

    @classmethod
    def failed(cls, reason: str, cause: Optional[BaseException] = None) -> "PhaseOutcome":
        return cls(OutcomeKind.FAILED, reason, cause)

    @classmethod
    def interrupted(cls, reason: str = "operation interrupted") -> "PhaseOutcome":
        return cls(OutcomeKind.INTERRUPTED, reason)


@dataclass(frozen=True)
class LookupFilter:
    groups: Optional[str] = None
    locators: Optional[str] = None
    nic_address: Optional[str] = None


@dataclass(frozen=True)
class BootstrapRequest:
    timeout_seconds: float
    lookup: LookupFilter = LookupFilter()
    zone: Optional[str] = None
    single_box: bool = False
    poll_interval: float = 5.0
    verbose: bool = False
    management_space: bool = True
    web_services: bool = True
    wait_for_web_ui: bool = False
    highly_available_space: bool = True
    auto_shutdown: bool = False
    lookup_port: Optional[int] = None
    cloud_contents: Optional[str] = None
    launch_settle_seconds: float = 2.0
    existing_agent_timeout: float = 10.0


@dataclass(frozen=True)
class TeardownRequest:
    timeout_seconds: float
    lookup: LookupFilter = LookupFilter()
    single_box: bool = False
    allow_management: bool = False
    allow_workloads: bool = False
    force: bool = False
    poll_interval: float = 5.0
    verbose: bool = False
    lookup_port: Optional[int] = None
    locate_timeout: float = 10.0
    grace_seconds: float = 10.0


@dataclass(frozen=True)
class AgentHandle:
    uid: str
    host_address: str
    groups: Optional[str] = None
    # Client-side agent object; only ever handed back to the discovery client.
    ref: Any = field(default=None, compare=False, hash=False, repr=False)


@dataclass(frozen=True)
class RoleInstance:
    kind: RoleKind
    name: str
    agent_uid: Optional[str]


@dataclass
class OrchestrationResult:
    operation: str
    outcome: PhaseOutcome = field(default_factory=PhaseOutcome.done)
    transitions: list[tuple[str, PhaseOutcome]] = field(default_factory=list)
    agent: Optional[AgentHandle] = None
    elapsed_seconds: float = 0.0

    @property
    def states(self) -> list[str]:
        return [state for state, _ in self.transitions]

    def raise_for_outcome(self) -> None:
        from .bootstrap_detection import outcome_error

        error = outcome_error(self.outcome)
        if error is not None:
            raise error


EventListener = Callable[[Optional[str]], None]


class AgentControl(Protocol):
    def shutdown(self) -> None: ...

    def ping(self) -> None: ...


class DiscoveryClient(Protocol):
    groups: Sequence[str]
    locators: Sequence[str]

    def list_agents(self) -> Iterable[Any]: ...

    def list_roles_of(self, kind: RoleKind) -> Iterable[RoleInstance]: ...

    def groups_of(self, agent: Any) -> Optional[str]: ...

    def locale_of(self, agent: Any) -> str: ...

    def control_of(self, agent: Any) -> AgentControl: ...

    def close(self) -> None: ...


ClientFactory = Callable[[LookupFilter], DiscoveryClient]


class AdminFacade(Protocol):
    def is_connected(self) -> bool: ...

    def list_applications(self) -> list[str]: ...

    def uninstall_application(self, name: str) -> None: ...

    def disconnect(self) -> None: ...


class RunningProcess(Protocol):
    pid: int

    def poll(self) -> Optional[int]: ...


class ProcessLauncher(Protocol):
    def launch(
        self,
        command: Sequence[str],
        environment: dict[str, str],
        working_directory: Path,
    ) -> RunningProcess: ...
