from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Callable, Optional

from .bootstrap_detection import (
    AgentNotFoundError,
    DeadlineExpired,
    is_connect_or_close_error,
    outcome_from_error,
    safe_error_text,
)
from .bootstrap_discovery import (
    ClientLease,
    derive_lookup_filter,
    localcloud_lookup,
    with_nic_address,
)
from .bootstrap_events import suppress_connection_noise
from .bootstrap_guard import check_shutdown_guard
from .bootstrap_latch import Deadline, pause, wait_for
from .models import (
    DEFAULT_LOCALCLOUD_LOOKUP_PORT,
    DEFAULT_LOOKUP_PORT,
    MANAGEMENT_APPLICATION,
    AdminFacade,
    AgentControl,
    OrchestrationResult,
    OutcomeKind,
    PhaseOutcome,
    TeardownRequest,
    TeardownState,
)

logger = logging.getLogger(__name__)

AGENT_NOT_FOUND_MESSAGE = "Agent not running on local machine"

Publish = Callable[[Optional[str]], None]


def uninstall_workloads(
    admin: Optional[AdminFacade],
    *,
    force: bool,
    verbose: bool,
    deadline: Deadline,
    poll_interval: float,
    cancel: Optional[threading.Event] = None,
    publish: Publish = lambda _message: None,
) -> PhaseOutcome:
    """Remove every application except the management one.

    Without ``force`` any deployed application aborts the teardown before
    anything is touched.
    """
    try:
        if admin is None or not admin.is_connected():
            raise ConnectionError("Failed to connect to the management layer")
        applications = [name for name in admin.list_applications() if name != MANAGEMENT_APPLICATION]
    except Exception as exc:
        if not force:
            return PhaseOutcome.failed(
                f"Failed to list deployed applications: {safe_error_text(exc)}", exc
            )
        logger.warning("Skipping application uninstall: %s", safe_error_text(exc))
        return PhaseOutcome.done()

    if not applications:
        return PhaseOutcome.done()
    if not force:
        return PhaseOutcome(
            OutcomeKind.WORKLOADS_DEPLOYED,
            "Applications are still deployed: "
            + ", ".join(sorted(applications))
            + ". Uninstall them or use -force flag.",
        )

    for name in applications:
        if verbose:
            publish(f"Uninstalling application {name}")
        try:
            admin.uninstall_application(name)
        except Exception as exc:
            logger.warning("Failed to uninstall %s: %s", name, safe_error_text(exc))

    description = "applications to be removed"
    try:
        budget = deadline.remaining(description)
    except DeadlineExpired as exc:
        return PhaseOutcome.timed_out(str(exc))

    def drained() -> bool:
        remaining = [name for name in admin.list_applications() if name != MANAGEMENT_APPLICATION]
        if remaining:
            publish(None)
            return False
        return True

    outcome = wait_for(
        drained,
        timeout=budget,
        poll_interval=poll_interval,
        description=description,
        cancel=cancel,
        clock=deadline.clock,
    )
    if outcome.ok:
        publish("All applications removed")
    return outcome


def send_shutdown(control: AgentControl) -> PhaseOutcome:
    """Ask the agent to shut down.

    The agent may drop the connection while answering; that counts as success.
    """
    try:
        control.shutdown()
    except Exception as exc:
        if is_connect_or_close_error(exc):
            logger.debug("Agent closed the connection during shutdown: %s", safe_error_text(exc))
            return PhaseOutcome.done()
        return PhaseOutcome.failed(f"Failed to shutdown agent: {safe_error_text(exc)}", exc)
    return PhaseOutcome.done()


def await_agent_gone(
    control: AgentControl,
    *,
    deadline: Deadline,
    poll_interval: float,
    cancel: Optional[threading.Event] = None,
    publish: Publish = lambda _message: None,
) -> PhaseOutcome:
    description = "agent to shutdown"
    try:
        budget = deadline.remaining(description)
    except DeadlineExpired as exc:
        return PhaseOutcome.timed_out(str(exc))

    def gone() -> bool:
        try:
            control.ping()
        except Exception as exc:
            if is_connect_or_close_error(exc):
                return True
            raise
        publish(None)
        return False

    return wait_for(
        gone,
        timeout=budget,
        poll_interval=poll_interval,
        description=description,
        cancel=cancel,
        clock=deadline.clock,
    )


class TeardownSequence:
    """Teardown half of the orchestrator.

    Relies on the host class for ``publish``, ``_record``, ``_finish``,
    ``_announce_lookup``, ``_wait_for_agent`` and the injected collaborators.
    """

    def shutdown_agent(self, request: TeardownRequest) -> OrchestrationResult:
        return self._teardown(
            self._resolve_teardown(request),
            "shutdown-agent",
            allow_management=request.allow_management,
            allow_workloads=request.allow_workloads or request.force,
            uninstall=False,
        )

    def shutdown_management(self, request: TeardownRequest) -> OrchestrationResult:
        return self._teardown(
            self._resolve_teardown(request),
            "shutdown-management",
            allow_management=True,
            allow_workloads=True,
            uninstall=False,
        )

    def teardown_local_cloud(self, request: TeardownRequest) -> OrchestrationResult:
        resolved = self._resolve_teardown(dataclasses.replace(request, single_box=True))
        return self._teardown(
            resolved,
            "teardown-localcloud",
            allow_management=True,
            allow_workloads=True,
            uninstall=True,
        )

    def _resolve_teardown(self, request: TeardownRequest) -> TeardownRequest:
        lookup = with_nic_address(request.lookup)
        if request.single_box:
            port = request.lookup_port or DEFAULT_LOCALCLOUD_LOOKUP_PORT
            lookup = localcloud_lookup(lookup, port)
        else:
            port = request.lookup_port or DEFAULT_LOOKUP_PORT
        return dataclasses.replace(request, lookup=lookup, lookup_port=port)

    def _teardown(
        self,
        request: TeardownRequest,
        operation: str,
        *,
        allow_management: bool,
        allow_workloads: bool,
        uninstall: bool,
    ) -> OrchestrationResult:
        started = self.clock()
        deadline = Deadline.after(request.timeout_seconds, clock=self.clock)
        result = OrchestrationResult(operation=operation)
        if request.verbose:
            self.publish(f"NIC Address={request.lookup.nic_address}")
        try:
            self._run_teardown(
                request,
                result,
                deadline,
                allow_management=allow_management,
                allow_workloads=allow_workloads,
                uninstall=uninstall,
            )
        except Exception as exc:
            result.outcome = outcome_from_error(exc)
        return self._finish(result, started, TeardownState)

    def _run_teardown(
        self,
        request: TeardownRequest,
        result: OrchestrationResult,
        deadline: Deadline,
        *,
        allow_management: bool,
        allow_workloads: bool,
        uninstall: bool,
    ) -> None:
        if uninstall:
            self.publish("Uninstalling applications")
            outcome = uninstall_workloads(
                self.admin,
                force=request.force,
                verbose=request.verbose,
                deadline=deadline,
                poll_interval=request.poll_interval,
                cancel=self.cancel,
                publish=self.publish,
            )
            if not self._record(result, TeardownState.UNINSTALLING_WORKLOADS, outcome):
                return

        # Transport warnings stay muted until the grace period after shutdown is over.
        with suppress_connection_noise(self.noise_loggers):
            outcome = self._disconnect_admin()
            if not self._record(result, TeardownState.DISCONNECTING, outcome):
                return
            lease = ClientLease.open(self.client_factory, request.lookup)
            try:
                self._shutdown_through(
                    lease,
                    request,
                    result,
                    deadline,
                    allow_management=allow_management,
                    allow_workloads=allow_workloads,
                )
            finally:
                lease.close()
                if result.agent is not None and not pause(request.grace_seconds, self.cancel):
                    logger.debug("Shutdown grace period interrupted")

    def _disconnect_admin(self) -> PhaseOutcome:
        if self.admin is None:
            return PhaseOutcome.done()
        try:
            self.admin.disconnect()
        except Exception as exc:
            if not is_connect_or_close_error(exc):
                return PhaseOutcome.failed(
                    f"Failed to disconnect from the management layer: {safe_error_text(exc)}", exc
                )
            logger.debug("Management connection already closed: %s", safe_error_text(exc))
        return PhaseOutcome.done()

    def _shutdown_through(
        self,
        lease: ClientLease,
        request: TeardownRequest,
        result: OrchestrationResult,
        deadline: Deadline,
        *,
        allow_management: bool,
        allow_workloads: bool,
    ) -> None:
        lookup = derive_lookup_filter(request.lookup, lease)
        self._announce_lookup(lookup, request.verbose)

        self.publish("Locating the agent on the local machine")
        agent, outcome = self._wait_for_agent(
            lease,
            lookup,
            request.verbose,
            request.poll_interval,
            timeout=request.locate_timeout,
            description="the agent on the local machine",
        )
        if outcome.kind is OutcomeKind.TIMED_OUT:
            outcome = PhaseOutcome(OutcomeKind.NOT_FOUND, AGENT_NOT_FOUND_MESSAGE)
        if not self._record(result, TeardownState.LOCATING_AGENT, outcome):
            return
        if agent is None:
            raise AgentNotFoundError(AGENT_NOT_FOUND_MESSAGE)
        result.agent = agent

        outcome = check_shutdown_guard(
            lease,
            agent,
            allow_workloads=allow_workloads,
            allow_management=allow_management,
        )
        if not self._record(result, TeardownState.GUARDING, outcome):
            return

        control = lease.control_of(agent.ref)
        # The lease goes first so the shutdown does not surface as client-side errors.
        lease.close()
        self.publish("Shutting down agent")
        outcome = send_shutdown(control)
        if not self._record(result, TeardownState.SHUTTING_DOWN, outcome):
            return

        self.publish("Waiting for agent to shutdown")
        outcome = await_agent_gone(
            control,
            deadline=deadline,
            poll_interval=request.poll_interval,
            cancel=self.cancel,
            publish=self.publish,
        )
        if not self._record(result, TeardownState.AWAITING_GONE, outcome):
            return
        self.publish("Agent shutdown completed")
