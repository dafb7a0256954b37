from __future__ import annotations

import dataclasses
import threading
import time
import unittest
from unittest import mock

from scripts.bootstrapper.bootstrap_config import agent_settings, default_config, service_settings
from scripts.bootstrapper.bootstrap_detection import LaunchFailure, TransportFailure
from scripts.bootstrapper.bootstrap_dryrun import InMemoryGrid
from scripts.bootstrapper.bootstrap_orchestrator import BootstrapOrchestrator
from scripts.bootstrapper.bootstrap_services import MANAGEMENT_SPACE_NAME, ServiceSpec
from scripts.bootstrapper.models import BootstrapRequest, LookupFilter, OutcomeKind, PhaseOutcome, StartState

LOCAL = LookupFilter(nic_address="127.0.0.1")
ORCHESTRATOR_LOGGER = "scripts.bootstrapper.bootstrap_orchestrator"


class RecordingListener:
    def __init__(self) -> None:
        self.messages: list[object] = []

    def __call__(self, message: object) -> None:
        self.messages.append(message)

    @property
    def texts(self) -> list[str]:
        return [m for m in self.messages if isinstance(m, str)]


class ForeignRolesLauncher:
    """Launches through the grid, then hands every role to some other agent."""

    def __init__(self, grid: InMemoryGrid) -> None:
        self.grid = grid
        self.inner = grid.launcher()

    def launch(self, command, environment, working_directory):
        proc = self.inner.launch(command, environment, working_directory)
        self.grid.roles = [dataclasses.replace(role, agent_uid="agent-elsewhere") for role in self.grid.roles]
        return proc


def make_orchestrator(grid: InMemoryGrid, **overrides) -> tuple[BootstrapOrchestrator, RecordingListener]:
    cfg = default_config()
    listener = RecordingListener()
    options = dict(
        client_factory=grid.client_factory,
        launcher=grid.launcher(),
        agent_settings=agent_settings(cfg),
        service_settings=service_settings(cfg),
        installer_factory=grid.installer_factory,
        admin=grid.admin(),
        port_is_free=grid.port_is_free,
        listeners=[listener],
    )
    options.update(overrides)
    return BootstrapOrchestrator(**options), listener


def request(**overrides) -> BootstrapRequest:
    options = dict(
        timeout_seconds=5.0,
        lookup=LOCAL,
        poll_interval=0.05,
        launch_settle_seconds=0,
        existing_agent_timeout=0.2,
    )
    options.update(overrides)
    return BootstrapRequest(**options)


class StartLocalCloudTests(unittest.TestCase):
    def test_end_to_end_on_an_empty_host(self) -> None:
        grid = InMemoryGrid()
        orchestrator, listener = make_orchestrator(grid)

        result = orchestrator.start_local_cloud(request(cloud_contents="cloud-config"))

        self.assertTrue(result.outcome.ok, msg=result.outcome.reason)
        self.assertEqual(
            result.states,
            [
                "checking_existing",
                "launching",
                "awaiting_agent",
                "awaiting_core_roles",
                "installing_dependents",
                "awaiting_dependents",
                "complete",
            ],
        )
        self.assertIsNotNone(result.agent)
        self.assertEqual(set(grid.installed), {"management_space", "webui", "rest"})
        self.assertEqual(grid.configuration[MANAGEMENT_SPACE_NAME], "cloud-config")
        self.assertIn(f"store.close:{MANAGEMENT_SPACE_NAME}", grid.calls)
        self.assertGreaterEqual(len(set(listener.texts)), 4)
        self.assertTrue(any("webui available at" in text for text in listener.texts))

        _command, environment = grid.launches[0]
        self.assertEqual(environment["LOOKUP_GROUPS"], "localcloud")
        self.assertEqual(environment["LOOKUP_LOCATORS"], "127.0.0.1:4168")
        self.assertIn("--lookup-unicast-port=4168", environment["LOOKUP_OPTIONS"])

    def test_client_is_closed_after_start(self) -> None:
        grid = InMemoryGrid()
        orchestrator, _listener = make_orchestrator(grid)
        orchestrator.start_local_cloud(request())
        self.assertEqual(grid.calls.count("client.open"), 1)
        self.assertEqual(grid.calls.count("client.close"), 1)

    def test_already_running_returns_fast_without_launch(self) -> None:
        grid = InMemoryGrid()
        grid.add_agent("127.0.0.1", "localcloud", lookup_port=4168)
        orchestrator, _listener = make_orchestrator(grid)

        started = time.monotonic()
        result = orchestrator.start_local_cloud(request(timeout_seconds=60))

        self.assertLess(time.monotonic() - started, 1.0)
        self.assertEqual(result.outcome.kind, OutcomeKind.ALREADY_RUNNING)
        self.assertEqual(grid.launches, [])
        self.assertEqual(result.states, ["checking_existing", "failed"])

    def test_zone_is_rejected(self) -> None:
        orchestrator, _listener = make_orchestrator(InMemoryGrid())
        with self.assertRaises(ValueError):
            orchestrator.start_local_cloud(request(zone="z1"))

    def test_agent_that_never_appears_times_out(self) -> None:
        grid = InMemoryGrid(launch_registers_agent=False)
        orchestrator, _listener = make_orchestrator(grid)

        started = time.monotonic()
        result = orchestrator.start_local_cloud(request(timeout_seconds=0.3))

        self.assertLess(time.monotonic() - started, 0.3 + 0.5)
        self.assertEqual(result.outcome.kind, OutcomeKind.TIMED_OUT)
        self.assertIn("agent on the local machine", result.outcome.reason)
        self.assertEqual(result.states[-2:], ["awaiting_agent", "failed"])

    def test_launch_failure_is_raised(self) -> None:
        grid = InMemoryGrid(launch_returncode=1)
        orchestrator, _listener = make_orchestrator(grid)

        with self.assertLogs(ORCHESTRATOR_LOGGER, level="ERROR"):
            with self.assertRaises(LaunchFailure) as ctx:
                orchestrator.start_local_cloud(request())
        self.assertEqual(ctx.exception.result.outcome.kind, OutcomeKind.LAUNCH_FAILED)
        self.assertEqual(grid.calls.count("client.close"), 1)

    def test_roles_owned_by_another_agent_do_not_count(self) -> None:
        grid = InMemoryGrid()
        orchestrator, listener = make_orchestrator(grid, launcher=ForeignRolesLauncher(grid))

        result = orchestrator.start_local_cloud(request(timeout_seconds=0.4, verbose=True))

        self.assertEqual(result.outcome.kind, OutcomeKind.TIMED_OUT)
        self.assertIn("management processes", result.outcome.reason)
        self.assertTrue(any("expected agent" in text for text in listener.texts))

    def test_already_deployed_space_is_not_reconfigured(self) -> None:
        grid = InMemoryGrid()
        grid.installed[MANAGEMENT_SPACE_NAME] = ServiceSpec(name=MANAGEMENT_SPACE_NAME, memory_mb=64)
        orchestrator, listener = make_orchestrator(grid)

        result = orchestrator.start_local_cloud(request(verbose=True, cloud_contents="new"))

        self.assertTrue(result.outcome.ok, msg=result.outcome.reason)
        self.assertNotIn(MANAGEMENT_SPACE_NAME, grid.configuration)
        self.assertIn(f"Service {MANAGEMENT_SPACE_NAME} already installed", listener.texts)

    def test_missing_installer_factory_fails(self) -> None:
        grid = InMemoryGrid()
        orchestrator, _listener = make_orchestrator(grid, installer_factory=None)
        with self.assertLogs(ORCHESTRATOR_LOGGER, level="ERROR"):
            with self.assertRaises(TransportFailure):
                orchestrator.start_local_cloud(request())

    def test_dependents_share_the_deadline(self) -> None:
        grid = InMemoryGrid(install_delay=5.0)
        orchestrator, _listener = make_orchestrator(grid)

        started = time.monotonic()
        result = orchestrator.start_local_cloud(request(timeout_seconds=0.5))

        self.assertLess(time.monotonic() - started, 0.5 + 0.5)
        self.assertEqual(result.outcome.kind, OutcomeKind.TIMED_OUT)
        self.assertEqual(result.states[-2:], ["awaiting_dependents", "failed"])

    def test_awaited_agent_without_handle_is_not_found(self) -> None:
        grid = InMemoryGrid()
        orchestrator, _listener = make_orchestrator(grid)

        with mock.patch.object(orchestrator, "_await_agent", return_value=(None, PhaseOutcome.done())):
            result = orchestrator.start_local_cloud(request())

        self.assertEqual(result.outcome.kind, OutcomeKind.NOT_FOUND)
        self.assertEqual(result.states[-1], StartState.FAILED.value)
        self.assertNotIn("awaiting_core_roles", result.states)


class StartManagementTests(unittest.TestCase):
    def test_cloud_layout_on_an_empty_host(self) -> None:
        grid = InMemoryGrid()
        orchestrator, _listener = make_orchestrator(grid)

        result = orchestrator.start_management(request(web_services=False))

        self.assertTrue(result.outcome.ok, msg=result.outcome.reason)
        _command, environment = grid.launches[0]
        self.assertIn("--zones=management", environment["AGENT_OPTIONS"])
        self.assertIn("--lookup-unicast-port=4174", environment["LOOKUP_OPTIONS"])
        self.assertEqual(set(grid.installed), {MANAGEMENT_SPACE_NAME})

    def test_existing_agent_found_by_discovery(self) -> None:
        grid = InMemoryGrid()
        existing = grid.add_agent("127.0.0.1")
        orchestrator, _listener = make_orchestrator(grid)

        result = orchestrator.start_management(request(existing_agent_timeout=5.0))

        self.assertEqual(result.outcome.kind, OutcomeKind.ALREADY_RUNNING)
        self.assertIn(existing.uid, result.outcome.reason)
        self.assertEqual(grid.launches, [])

    def test_cancel_interrupts(self) -> None:
        cancel = threading.Event()
        cancel.set()
        orchestrator, _listener = make_orchestrator(InMemoryGrid(), cancel=cancel)
        result = orchestrator.start_management(request())
        self.assertEqual(result.outcome.kind, OutcomeKind.INTERRUPTED)


class StartAgentTests(unittest.TestCase):
    def test_agent_only_runs_the_first_phases(self) -> None:
        grid = InMemoryGrid()
        orchestrator, _listener = make_orchestrator(grid)

        result = orchestrator.start_agent(request(zone="z1"))

        self.assertTrue(result.outcome.ok, msg=result.outcome.reason)
        self.assertEqual(result.states, ["checking_existing", "launching", "awaiting_agent", "complete"])
        self.assertEqual(grid.installed, {})
        self.assertEqual(grid.roles, [])

    def test_zone_is_required(self) -> None:
        orchestrator, _listener = make_orchestrator(InMemoryGrid())
        with self.assertRaises(ValueError):
            orchestrator.start_agent(request())


if __name__ == "__main__":
    unittest.main()
