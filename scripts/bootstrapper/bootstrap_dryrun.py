"""In-process grid used by ``--dry-run`` and by the tests.

The launcher registers an agent plus the roles it was asked to allocate, so
the full start and teardown sequences run without a real grid or any child
process.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from .bootstrap_detection import ServiceAlreadyDeployed, outcome_error
from .bootstrap_latch import Deadline, wait_for
from .bootstrap_launch import LOOKUP_PORT_OPTION
from .bootstrap_services import ServiceSpec
from .models import (
    MANAGEMENT_APPLICATION,
    AgentHandle,
    LookupFilter,
    RoleInstance,
    RoleKind,
)

DEFAULT_GROUP = "localgrid"

ROLE_KEYS = {
    "lookup": (RoleKind.LOOKUP,),
    "manager": (RoleKind.MANAGER,),
    "manager_lookup": (RoleKind.MANAGER, RoleKind.LOOKUP),
    "elastic_manager": (RoleKind.ELASTIC_MANAGER,),
}


@dataclass
class GridAgent:
    uid: str
    host_address: str
    groups: Optional[str]
    zone: Optional[str] = None
    lookup_port: Optional[int] = None
    pings_left: int = 0
    stopping: bool = False


@dataclass
class DryRunProcess:
    pid: int
    returncode: Optional[int] = None

    def poll(self) -> Optional[int]:
        return self.returncode


@dataclass
class InMemoryGrid:
    """Agents, roles and applications of a pretend grid.

    ``calls`` records collaborator calls in order, e.g. ``client.close`` and
    ``agent.shutdown``, so callers can assert on sequencing.
    """

    install_delay: float = 0.0
    pings_until_gone: int = 0
    launch_returncode: Optional[int] = None
    launch_registers_agent: bool = True
    admin_connected: bool = True
    clock: Callable[[], float] = time.monotonic
    agents: dict[str, GridAgent] = field(default_factory=dict)
    roles: list[RoleInstance] = field(default_factory=list)
    applications: list[str] = field(default_factory=list)
    installed: dict[str, ServiceSpec] = field(default_factory=dict)
    configuration: dict[str, Optional[str]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    launches: list[tuple[list[str], dict[str, str]]] = field(default_factory=list)
    _ready_at: dict[str, float] = field(default_factory=dict, repr=False)
    _uids: itertools.count = field(default_factory=lambda: itertools.count(1), repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # -- seeding ---------------------------------------------------------------

    def add_agent(
        self,
        host_address: str = "127.0.0.1",
        groups: Optional[str] = DEFAULT_GROUP,
        *,
        uid: Optional[str] = None,
        zone: Optional[str] = None,
        lookup_port: Optional[int] = None,
    ) -> GridAgent:
        with self._lock:
            agent_uid = uid or f"agent-{next(self._uids)}"
            agent = GridAgent(
                uid=agent_uid,
                host_address=host_address,
                groups=groups,
                zone=zone,
                lookup_port=lookup_port,
                pings_left=self.pings_until_gone,
            )
            self.agents[agent_uid] = agent
        return agent

    def add_role(self, kind: RoleKind, agent_uid: Optional[str], name: Optional[str] = None) -> RoleInstance:
        instance = RoleInstance(kind=kind, name=name or kind.value, agent_uid=agent_uid)
        with self._lock:
            self.roles.append(instance)
        return instance

    def add_application(self, name: str, agent_uid: Optional[str] = None) -> None:
        with self._lock:
            if name not in self.applications:
                self.applications.append(name)
        if agent_uid is not None and name != MANAGEMENT_APPLICATION:
            self.add_role(RoleKind.WORKLOAD, agent_uid, name)

    def remove_agent(self, uid: str) -> None:
        with self._lock:
            self.agents.pop(uid, None)
            self.roles = [role for role in self.roles if role.agent_uid != uid]

    def remove_application(self, name: str) -> None:
        with self._lock:
            self.applications = [app for app in self.applications if app != name]
            self.roles = [
                role
                for role in self.roles
                if not (role.kind is RoleKind.WORKLOAD and role.name == name)
            ]

    def port_is_free(self, port: int) -> bool:
        return all(agent.lookup_port != port for agent in self.agents.values())

    # -- collaborators ---------------------------------------------------------

    def client_factory(self, lookup: LookupFilter) -> "InMemoryDiscoveryClient":
        self.calls.append("client.open")
        return InMemoryDiscoveryClient(self, lookup)

    def launcher(self) -> "InMemoryLauncher":
        return InMemoryLauncher(self)

    def admin(self) -> "InMemoryAdmin":
        return InMemoryAdmin(self)

    def installer_factory(
        self,
        spec: ServiceSpec,
        agent: AgentHandle,
        publish: Callable[[Optional[str]], None],
    ) -> "InMemoryInstaller":
        return InMemoryInstaller(self, spec, agent, publish)


class InMemoryDiscoveryClient:
    def __init__(self, grid: InMemoryGrid, lookup: LookupFilter) -> None:
        self.grid = grid
        self.groups = lookup.groups.split(",") if lookup.groups else [DEFAULT_GROUP]
        self.locators = lookup.locators.split(",") if lookup.locators else []
        self.closed = False

    def _ensure_open(self) -> None:
        if self.closed:
            raise ConnectionError("discovery client is closed")

    def list_agents(self) -> list[GridAgent]:
        self._ensure_open()
        return [agent for agent in self.grid.agents.values() if not agent.stopping]

    def list_roles_of(self, kind: RoleKind) -> list[RoleInstance]:
        self._ensure_open()
        return [role for role in self.grid.roles if role.kind is kind]

    def groups_of(self, agent: GridAgent) -> Optional[str]:
        return agent.groups

    def locale_of(self, agent: GridAgent) -> str:
        return agent.host_address

    def control_of(self, agent: GridAgent) -> "InMemoryAgentControl":
        self._ensure_open()
        return InMemoryAgentControl(self.grid, agent.uid)

    def close(self) -> None:
        self.closed = True
        self.grid.calls.append("client.close")


class InMemoryAgentControl:
    def __init__(self, grid: InMemoryGrid, uid: str) -> None:
        self.grid = grid
        self.uid = uid

    def _agent(self) -> GridAgent:
        agent = self.grid.agents.get(self.uid)
        if agent is None:
            raise ConnectionRefusedError(f"Connection refused: agent {self.uid}")
        return agent

    def shutdown(self) -> None:
        self.grid.calls.append("agent.shutdown")
        agent = self._agent()
        agent.stopping = True
        if agent.pings_left <= 0:
            self.grid.remove_agent(self.uid)

    def ping(self) -> None:
        agent = self._agent()
        if agent.stopping:
            agent.pings_left -= 1
            if agent.pings_left <= 0:
                self.grid.remove_agent(self.uid)


class InMemoryLauncher:
    def __init__(self, grid: InMemoryGrid) -> None:
        self.grid = grid
        self._pids = itertools.count(4000)

    def launch(
        self,
        command: Sequence[str],
        environment: dict[str, str],
        working_directory: Path,
    ) -> DryRunProcess:
        self.grid.launches.append((list(command), dict(environment)))
        self.grid.calls.append("launcher.launch")
        process = DryRunProcess(pid=next(self._pids), returncode=self.grid.launch_returncode)
        if process.returncode not in (None, 0) or not self.grid.launch_registers_agent:
            return process

        agent = self.grid.add_agent(
            host_address=environment.get("NIC_ADDR", "127.0.0.1"),
            groups=environment.get("LOOKUP_GROUPS", DEFAULT_GROUP),
            zone=_option_value(environment.get("AGENT_OPTIONS", ""), "--zones"),
            lookup_port=_lookup_port(environment),
        )
        for key, count in _allocations(command):
            name = key.split(".", 1)[-1]
            for kind in ROLE_KEYS.get(name, ()):
                for _ in range(count):
                    self.grid.add_role(kind, agent.uid)
        return process


def _allocations(command: Sequence[str]) -> list[tuple[str, int]]:
    allocations: list[tuple[str, int]] = []
    tokens = list(command)
    for token, value in zip(tokens, tokens[1:]):
        if token.startswith("agent.") and value.isdigit():
            allocations.append((token[len("agent."):], int(value)))
    return allocations


def _option_value(options: str, name: str) -> Optional[str]:
    for option in options.split():
        if option.startswith(f"{name}="):
            return option.split("=", 1)[1]
    return None


def _lookup_port(environment: dict[str, str]) -> Optional[int]:
    value = _option_value(environment.get("LOOKUP_OPTIONS", ""), LOOKUP_PORT_OPTION)
    return int(value) if value and value.isdigit() else None


class InMemoryAdmin:
    def __init__(self, grid: InMemoryGrid) -> None:
        self.grid = grid

    def is_connected(self) -> bool:
        return self.grid.admin_connected

    def list_applications(self) -> list[str]:
        if not self.grid.admin_connected:
            raise ConnectionError("not connected to the management layer")
        return list(self.grid.applications)

    def uninstall_application(self, name: str) -> None:
        self.grid.calls.append(f"admin.uninstall:{name}")
        self.grid.remove_application(name)

    def disconnect(self) -> None:
        self.grid.calls.append("admin.disconnect")


class InMemoryStore:
    def __init__(self, grid: InMemoryGrid, name: str) -> None:
        self.grid = grid
        self.name = name

    def write_configuration(self, payload: Optional[str]) -> None:
        self.grid.configuration[self.name] = payload

    def close(self) -> None:
        self.grid.calls.append(f"store.close:{self.name}")


class InMemoryInstaller:
    def __init__(
        self,
        grid: InMemoryGrid,
        spec: ServiceSpec,
        agent: AgentHandle,
        publish: Callable[[Optional[str]], None],
    ) -> None:
        self.grid = grid
        self.spec = spec
        self.agent = agent
        self.publish = publish

    def install(self) -> None:
        name = self.spec.name
        self.grid.calls.append(f"installer.install:{name}")
        if name in self.grid.installed:
            raise ServiceAlreadyDeployed(f"Service {name} already deployed")
        self.grid.installed[name] = self.spec
        self.grid._ready_at[name] = self.grid.clock() + self.grid.install_delay
        self.grid.add_application(MANAGEMENT_APPLICATION)

    def wait_for_installation(self, deadline: Deadline) -> None:
        name = self.spec.name
        description = f"service {name} to become available"

        def ready() -> bool:
            if self.grid.clock() >= self.grid._ready_at.get(name, 0.0):
                return True
            self.publish(None)
            return False

        outcome = wait_for(
            ready,
            timeout=deadline.remaining(description),
            poll_interval=0.05,
            description=description,
            clock=self.grid.clock,
        )
        error = outcome_error(outcome)
        if error is not None:
            raise error

    def location(self) -> Optional[str]:
        if self.spec.port is None:
            return None
        return f"{self.spec.name} available at: http://{self.agent.host_address}:{self.spec.port}"

    def open_store(self) -> InMemoryStore:
        return InMemoryStore(self.grid, self.spec.name)
