"""Bring a local grid agent and its management layer up, or take it down.

Start:    checking existing -> launching -> awaiting agent -> awaiting core roles
          -> installing dependents -> awaiting dependents -> complete
Teardown: (uninstalling workloads) -> disconnecting -> locating agent -> guarding
          -> shutting down -> awaiting gone -> complete

Every operation takes an immutable request, computes one deadline up front and
hands the remaining budget to each phase in turn. The first phase that does not
finish ends the operation; nothing already started is rolled back.
"""

from __future__ import annotations

import dataclasses
import logging
import socket
import threading
import time
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from .bootstrap_config import AgentSettings, ServiceSettings
from .bootstrap_detection import (
    BUSINESS_OUTCOMES,
    AgentNotFoundError,
    DeadlineExpired,
    ServiceAlreadyDeployed,
    outcome_error,
    outcome_from_error,
)
from .bootstrap_discovery import (
    ClientLease,
    derive_lookup_filter,
    find_agent,
    format_locators,
    localcloud_lookup,
    observe_agents,
    with_nic_address,
)
from .bootstrap_events import DEFAULT_NOISE_LOGGERS, EventPublisher, suppress_connection_noise
from .bootstrap_latch import Deadline, wait_for
from .bootstrap_launch import (
    AGENT_ONLY_ROLES,
    CLOUD_MANAGEMENT_ROLES,
    LOCALCLOUD_MANAGEMENT_ROLES,
    RoleAllocation,
    build_launch_plan,
    launch_agent,
    required_roles,
)
from .bootstrap_services import InstallerFactory, ServiceInstaller, plan_dependent_services
from .bootstrap_teardown import TeardownSequence
from .models import (
    DEFAULT_LOCALCLOUD_LOOKUP_PORT,
    DEFAULT_LOOKUP_PORT,
    MANAGEMENT_ZONE,
    AdminFacade,
    AgentHandle,
    BootstrapRequest,
    ClientFactory,
    EventListener,
    LookupFilter,
    OrchestrationResult,
    OutcomeKind,
    PhaseOutcome,
    ProcessLauncher,
    RoleKind,
    StartState,
)

logger = logging.getLogger(__name__)

ROLE_LABELS = {
    RoleKind.LOOKUP: "Lookup Service",
    RoleKind.MANAGER: "Grid Service Manager",
    RoleKind.ELASTIC_MANAGER: "Elastic Service Manager",
}


def is_port_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


class BootstrapOrchestrator(TeardownSequence):
    """Drives the start and teardown sequences against injected collaborators.

    Holds no per-operation settings: address filters, groups, timeouts and
    verbosity arrive with each request.
    """

    def __init__(
        self,
        *,
        client_factory: ClientFactory,
        launcher: ProcessLauncher,
        agent_settings: AgentSettings,
        service_settings: ServiceSettings,
        installer_factory: Optional[InstallerFactory] = None,
        admin: Optional[AdminFacade] = None,
        port_is_free: Callable[[int], bool] = is_port_free,
        noise_loggers: Sequence[str] = DEFAULT_NOISE_LOGGERS,
        cancel: Optional[threading.Event] = None,
        listeners: Iterable[EventListener] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_factory = client_factory
        self.launcher = launcher
        self.agent_settings = agent_settings
        self.service_settings = service_settings
        self.installer_factory = installer_factory
        self.admin = admin
        self.port_is_free = port_is_free
        self.noise_loggers = tuple(noise_loggers)
        self.cancel = cancel
        self.clock = clock
        self.events = EventPublisher(listeners)

    def add_listener(self, listener: EventListener) -> None:
        self.events.add_listener(listener)

    def publish(self, message: Optional[str]) -> None:
        self.events.publish(message)

    # -- start -----------------------------------------------------------------

    def start_local_cloud(self, request: BootstrapRequest) -> OrchestrationResult:
        if request.zone:
            raise ValueError("Local-cloud does not use zones")
        port = request.lookup_port or DEFAULT_LOCALCLOUD_LOOKUP_PORT
        lookup = localcloud_lookup(with_nic_address(request.lookup), port)
        resolved = dataclasses.replace(request, single_box=True, lookup=lookup, lookup_port=port)
        return self._start(resolved, LOCALCLOUD_MANAGEMENT_ROLES, "start-localcloud", dependents=True)

    def start_management(self, request: BootstrapRequest) -> OrchestrationResult:
        resolved = dataclasses.replace(
            request,
            zone=MANAGEMENT_ZONE,
            single_box=False,
            lookup=with_nic_address(request.lookup),
            lookup_port=request.lookup_port or DEFAULT_LOOKUP_PORT,
        )
        return self._start(resolved, CLOUD_MANAGEMENT_ROLES, "start-management", dependents=True)

    def start_agent(self, request: BootstrapRequest) -> OrchestrationResult:
        if not request.zone:
            raise ValueError("Agent must be started with a zone")
        resolved = dataclasses.replace(
            request,
            single_box=False,
            lookup=with_nic_address(request.lookup),
            lookup_port=request.lookup_port or DEFAULT_LOOKUP_PORT,
        )
        return self._start(resolved, AGENT_ONLY_ROLES, "start-agent", dependents=False)

    def _start(
        self,
        request: BootstrapRequest,
        allocations: Sequence[RoleAllocation],
        operation: str,
        *,
        dependents: bool,
    ) -> OrchestrationResult:
        started = self.clock()
        deadline = Deadline.after(request.timeout_seconds, clock=self.clock)
        result = OrchestrationResult(operation=operation)
        if request.verbose:
            self.publish(f"NIC Address={request.lookup.nic_address}")
        try:
            self._run_start(request, allocations, result, deadline, dependents=dependents)
        except Exception as exc:
            result.outcome = outcome_from_error(exc)
        return self._finish(result, started, StartState)

    def _run_start(
        self,
        request: BootstrapRequest,
        allocations: Sequence[RoleAllocation],
        result: OrchestrationResult,
        deadline: Deadline,
        *,
        dependents: bool,
    ) -> None:
        with suppress_connection_noise(self.noise_loggers):
            lease = ClientLease.open(self.client_factory, request.lookup)
        with lease:
            lookup = derive_lookup_filter(request.lookup, lease)
            self._announce_lookup(lookup, request.verbose)

            with suppress_connection_noise(self.noise_loggers):
                self.publish("Checking for an agent already running on the local machine")
                outcome = self._check_existing(lease, request, lookup, deadline)
                if not self._record(result, StartState.CHECKING_EXISTING, outcome):
                    return

                self.publish("Starting agent and management processes")
                plan = build_launch_plan(
                    dataclasses.replace(request, lookup=lookup),
                    allocations,
                    self.agent_settings,
                )
                outcome = launch_agent(
                    plan,
                    self.launcher,
                    settle_seconds=request.launch_settle_seconds,
                    verbose=request.verbose,
                    cancel=self.cancel,
                    publish=self.publish,
                )
                if not self._record(result, StartState.LAUNCHING, outcome):
                    return

                self.publish("Waiting for the agent on the local machine to start")
                agent, outcome = self._await_agent(
                    lease,
                    lookup,
                    request,
                    deadline=deadline,
                    description="the agent on the local machine to start",
                )
                if not self._record(result, StartState.AWAITING_AGENT, outcome):
                    return
                if agent is None:
                    raise AgentNotFoundError("Agent reported started but was not located")
                result.agent = agent

            required = required_roles(allocations)
            if required:
                self.publish("Waiting for management processes to start")
                outcome = self._await_core_roles(lease, agent, required, request, deadline)
                if not self._record(result, StartState.AWAITING_CORE_ROLES, outcome):
                    return

            if dependents:
                with suppress_connection_noise(self.noise_loggers):
                    waiting, outcome = self._install_dependents(agent, request)
                    if not self._record(result, StartState.INSTALLING_DEPENDENTS, outcome):
                        return
                    outcome = self._await_dependents(waiting, request, deadline)
                    if not self._record(result, StartState.AWAITING_DEPENDENTS, outcome):
                        return

        self.publish("Management processes started" if dependents else "Agent started")

    def _announce_lookup(self, lookup: LookupFilter, verbose: bool) -> None:
        if not verbose:
            return
        if lookup.locators:
            logger.debug("Lookup Locators=%s", lookup.locators)
            self.publish(f"Lookup Locators={format_locators(lookup.locators.split(','))}")
        if lookup.groups:
            logger.debug("Lookup Groups=%s", lookup.groups)
            self.publish(f"Lookup Groups={lookup.groups}")

    def _check_existing(
        self,
        lease: ClientLease,
        request: BootstrapRequest,
        lookup: LookupFilter,
        deadline: Deadline,
    ) -> PhaseOutcome:
        port = request.lookup_port or DEFAULT_LOOKUP_PORT
        if request.single_box:
            # A free lookup port means no local cloud is up; skip the discovery wait.
            if self.port_is_free(port):
                return PhaseOutcome.done()
            return PhaseOutcome(
                OutcomeKind.ALREADY_RUNNING,
                f"Agent already running on local machine (lookup port {port} is in use).",
            )

        try:
            budget = min(request.existing_agent_timeout, deadline.remaining("an existing agent"))
        except DeadlineExpired as exc:
            return PhaseOutcome.timed_out(str(exc))
        agent, outcome = self._wait_for_agent(
            lease,
            lookup,
            request.verbose,
            request.poll_interval,
            timeout=budget,
            description="an existing agent running on the local machine",
        )
        if outcome.ok:
            return PhaseOutcome(
                OutcomeKind.ALREADY_RUNNING,
                f"Agent already running on local machine ({agent.uid if agent else 'unknown'}). "
                "Use shutdown-agent first.",
            )
        if outcome.kind is OutcomeKind.TIMED_OUT:
            return PhaseOutcome.done()
        return outcome

    def _await_agent(
        self,
        lease: ClientLease,
        lookup: LookupFilter,
        request: BootstrapRequest,
        *,
        deadline: Deadline,
        description: str,
    ) -> tuple[Optional[AgentHandle], PhaseOutcome]:
        try:
            budget = deadline.remaining(description)
        except DeadlineExpired as exc:
            return None, PhaseOutcome.timed_out(str(exc))
        return self._wait_for_agent(
            lease,
            lookup,
            request.verbose,
            request.poll_interval,
            timeout=budget,
            description=description,
        )

    def _wait_for_agent(
        self,
        lease: ClientLease,
        lookup: LookupFilter,
        verbose: bool,
        poll_interval: float,
        *,
        timeout: float,
        description: str,
    ) -> tuple[Optional[AgentHandle], PhaseOutcome]:
        found: list[AgentHandle] = []
        report = self.publish if verbose else None

        def agent_visible() -> bool:
            agent = find_agent(observe_agents(lease), lookup, report=report)
            if agent is not None:
                found.append(agent)
                return True
            logger.debug("Waiting for %s", description)
            self.publish(None)
            return False

        outcome = wait_for(
            agent_visible,
            timeout=timeout,
            poll_interval=poll_interval,
            description=description,
            cancel=self.cancel,
            clock=self.clock,
        )
        return (found[0] if found else None), outcome

    def _await_core_roles(
        self,
        lease: ClientLease,
        agent: AgentHandle,
        required: list[tuple[RoleKind, bool]],
        request: BootstrapRequest,
        deadline: Deadline,
    ) -> PhaseOutcome:
        description = "management processes to start"
        try:
            budget = deadline.remaining(description)
        except DeadlineExpired as exc:
            return PhaseOutcome.timed_out(str(exc))
        verbose = request.verbose

        def roles_ready() -> bool:
            ready = True
            for kind, hosted_here in required:
                label = ROLE_LABELS[kind]
                instances = list(lease.list_roles_of(kind))
                if hosted_here:
                    # A role owned by some other agent does not count.
                    present = any(instance.agent_uid == agent.uid for instance in instances)
                else:
                    present = bool(instances)
                if verbose:
                    for instance in instances:
                        message = (
                            f"Detected {label} management process started by agent "
                            f"{instance.agent_uid}"
                        )
                        if instance.agent_uid != agent.uid:
                            message += f" expected agent {agent.uid}"
                        logger.debug(message)
                        self.publish(message)
                if not present:
                    ready = False
                    if verbose:
                        self.publish(f"Waiting for {label}")
            if not ready:
                self.publish(None)
            return ready

        return wait_for(
            roles_ready,
            timeout=budget,
            poll_interval=request.poll_interval,
            description=description,
            cancel=self.cancel,
            clock=self.clock,
        )

    def _install_dependents(
        self,
        agent: AgentHandle,
        request: BootstrapRequest,
    ) -> tuple[list[ServiceInstaller], PhaseOutcome]:
        services = plan_dependent_services(request, self.service_settings)
        if not services:
            return [], PhaseOutcome.done()
        if self.installer_factory is None:
            return [], PhaseOutcome.failed(
                "No service installer configured for: " + ", ".join(s.name for s in services)
            )

        self.publish("Installing management services")
        waiting: list[ServiceInstaller] = []
        for spec in services:
            installer = self.installer_factory(spec, agent, self.publish)
            try:
                installer.install()
            except ServiceAlreadyDeployed:
                logger.debug("Service %s already installed", spec.name)
                if request.verbose:
                    self.publish(f"Service {spec.name} already installed")
                if spec.carries_state:
                    # Its configuration was written by whoever deployed it.
                    continue
            if spec.wait:
                waiting.append(installer)
            else:
                location = installer.location()
                if location:
                    self.publish(location)
        return waiting, PhaseOutcome.done()

    def _await_dependents(
        self,
        waiting: list[ServiceInstaller],
        request: BootstrapRequest,
        deadline: Deadline,
    ) -> PhaseOutcome:
        if not waiting:
            return PhaseOutcome.done()
        self.publish("Waiting for management services to become available")
        for installer in waiting:
            name = installer.spec.name
            try:
                deadline.remaining(f"service {name}")
                installer.wait_for_installation(deadline)
            except Exception as exc:
                return outcome_from_error(exc)
            if installer.spec.carries_state:
                logger.debug("Writing cloud configuration to %s.", name)
                if request.verbose:
                    self.publish(f"Writing cloud configuration to {name}.")
                store = installer.open_store()
                try:
                    store.write_configuration(request.cloud_contents)
                finally:
                    # A dangling proxy would show up as discovery noise on teardown.
                    store.close()
        return PhaseOutcome.done()

    # -- bookkeeping -----------------------------------------------------------

    def _record(self, result: OrchestrationResult, state: Enum, outcome: PhaseOutcome) -> bool:
        result.transitions.append((state.value, outcome))
        if not outcome.ok:
            result.outcome = outcome
        return outcome.ok

    def _finish(
        self, result: OrchestrationResult, started: float, states: type[Enum]
    ) -> OrchestrationResult:
        """Close the transition record with ``states.COMPLETE`` or ``states.FAILED``."""
        result.elapsed_seconds = self.clock() - started
        outcome = result.outcome
        if outcome.ok:
            result.transitions.append((states.COMPLETE.value, outcome))
            logger.info("%s completed in %.1fs", result.operation, result.elapsed_seconds)
            return result

        result.transitions.append((states.FAILED.value, outcome))
        if outcome.kind in BUSINESS_OUTCOMES:
            logger.info("%s ended with %s: %s", result.operation, outcome.kind.value, outcome.reason)
            return result

        error = outcome_error(outcome)
        if error is None:
            return result
        logger.error(
            "%s failed: %s",
            result.operation,
            outcome.reason,
            exc_info=outcome.cause if outcome.cause is not None else False,
        )
        error.result = result
        raise error
