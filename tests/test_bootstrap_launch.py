from __future__ import annotations

import os
import pathlib
import threading
import unittest
from unittest import mock

from scripts.bootstrapper.bootstrap_config import agent_settings, default_config
from scripts.bootstrapper.bootstrap_launch import (
    AGENT_ONLY_ROLES,
    CLOUD_MANAGEMENT_ROLES,
    DISABLE_MULTICAST_OPTION,
    LOCALCLOUD_MANAGEMENT_ROLES,
    LaunchPlan,
    SubprocessLauncher,
    build_launch_plan,
    launch_agent,
    required_roles,
    role_arguments,
    write_launch_script,
)
from scripts.bootstrapper.models import BootstrapRequest, LookupFilter, OutcomeKind, RoleKind


class LaunchPlanTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = agent_settings(default_config())

    def test_localcloud_command_and_environment(self) -> None:
        request = BootstrapRequest(
            timeout_seconds=60,
            lookup=LookupFilter(groups="localcloud", locators="10.0.0.5:4168", nic_address="10.0.0.5"),
            single_box=True,
            lookup_port=4168,
        )
        plan = build_launch_plan(request, LOCALCLOUD_MANAGEMENT_ROLES, self.settings, windows=False)

        self.assertEqual(plan.command[0], str(self.settings.bin_directory / "agent.sh"))
        self.assertEqual(plan.command[-2:], [">/dev/null", "2>&1"])
        args = plan.command[1:-2]
        self.assertIn("agent.manager_lookup", args)
        self.assertEqual(args[args.index("agent.manager_lookup") + 1], "1")
        self.assertEqual(args[args.index("agent.elastic_manager") + 1], "1")
        self.assertEqual(plan.environment["LOOKUP_GROUPS"], "localcloud")
        self.assertEqual(plan.environment["LOOKUP_LOCATORS"], "10.0.0.5:4168")
        self.assertEqual(plan.environment["NIC_ADDR"], "10.0.0.5")
        self.assertIn("--lookup-unicast-port=4168", plan.environment["LOOKUP_OPTIONS"])
        self.assertIn(DISABLE_MULTICAST_OPTION, plan.environment["AGENT_OPTIONS"])
        self.assertIn(DISABLE_MULTICAST_OPTION, plan.environment["CONTAINER_OPTIONS"])
        self.assertEqual(plan.working_directory, self.settings.bin_directory)

    def test_zone_auto_shutdown_and_default_port(self) -> None:
        request = BootstrapRequest(timeout_seconds=60, zone="management", auto_shutdown=True)
        plan = build_launch_plan(request, CLOUD_MANAGEMENT_ROLES, self.settings, windows=False)
        agent_options = plan.environment["AGENT_OPTIONS"]
        self.assertIn("--zones=management", agent_options)
        self.assertIn("--auto-shutdown-enabled=true", agent_options)
        self.assertIn("--max-memory=128m", agent_options)
        self.assertIn("--lookup-unicast-port=4174", plan.environment["MANAGER_OPTIONS"])
        self.assertNotIn("LOOKUP_LOCATORS", plan.environment)
        self.assertNotIn(DISABLE_MULTICAST_OPTION, agent_options)

    def test_windows_command(self) -> None:
        request = BootstrapRequest(timeout_seconds=60)
        plan = build_launch_plan(request, AGENT_ONLY_ROLES, self.settings, windows=True)
        self.assertEqual(plan.command[:2], ["cmd.exe", "/c"])
        self.assertTrue(plan.command[2].endswith("agent.bat"))
        self.assertEqual(plan.command[-2:], [">nul", "2>&1"])

    def test_role_arguments_pairs(self) -> None:
        self.assertEqual(
            role_arguments(AGENT_ONLY_ROLES)[:4],
            ["agent.global.lookup", "0", "agent.container", "0"],
        )


class RequiredRolesTests(unittest.TestCase):
    def test_localcloud_roles_are_all_local(self) -> None:
        self.assertEqual(
            required_roles(LOCALCLOUD_MANAGEMENT_ROLES),
            [
                (RoleKind.LOOKUP, True),
                (RoleKind.MANAGER, True),
                (RoleKind.ELASTIC_MANAGER, True),
            ],
        )

    def test_cloud_elastic_manager_is_global(self) -> None:
        self.assertEqual(
            required_roles(CLOUD_MANAGEMENT_ROLES),
            [
                (RoleKind.LOOKUP, True),
                (RoleKind.MANAGER, True),
                (RoleKind.ELASTIC_MANAGER, False),
            ],
        )

    def test_agent_only_requires_nothing(self) -> None:
        self.assertEqual(required_roles(AGENT_ONLY_ROLES), [])


class LaunchScriptTests(unittest.TestCase):
    def test_linux_script_quotes_arguments_but_not_redirections(self) -> None:
        path = write_launch_script(["/opt/grid/bin/agent.sh", "agent.lookup", "1", ">/dev/null", "2>&1"], windows=False)
        self.addCleanup(path.unlink)
        text = path.read_text(encoding="utf-8")
        self.assertTrue(text.startswith("#!/bin/bash\n"))
        self.assertIn("/opt/grid/bin/agent.sh agent.lookup 1 >/dev/null 2>&1", text)
        self.assertTrue(os.access(path, os.X_OK))

    @mock.patch("scripts.bootstrapper.bootstrap_launch.is_windows", return_value=False)
    @mock.patch("scripts.bootstrapper.bootstrap_launch.subprocess.Popen")
    @mock.patch("scripts.bootstrapper.bootstrap_launch.atexit.register")
    def test_launcher_removes_script_at_exit(self, register, popen, _is_windows) -> None:
        SubprocessLauncher().launch(["/opt/grid/bin/agent.sh"], {"NIC_ADDR": "127.0.0.1"}, pathlib.Path("/tmp"))

        script = pathlib.Path(popen.call_args.args[0][0])
        self.addCleanup(script.unlink, missing_ok=True)
        self.assertTrue(script.exists())
        self.assertTrue(popen.call_args.kwargs["start_new_session"])

        register.assert_called_once()
        callback, *args = register.call_args.args
        callback(*args)
        self.assertFalse(script.exists())
        callback(*args)


class FakeProcess:
    def __init__(self, returncode):
        self.pid = 4242
        self.returncode = returncode

    def poll(self):
        return self.returncode


class LaunchAgentTests(unittest.TestCase):
    def setUp(self) -> None:
        self.plan = LaunchPlan(
            command=["/opt/grid/bin/agent.sh", "agent.lookup", "1"],
            environment={"NIC_ADDR": "10.0.0.5"},
            working_directory=pathlib.Path("/opt/grid/bin"),
        )

    def test_running_process_is_success(self) -> None:
        launcher = mock.Mock()
        launcher.launch.return_value = FakeProcess(None)
        published: list[object] = []
        outcome = launch_agent(self.plan, launcher, settle_seconds=0, verbose=True, publish=published.append)
        self.assertTrue(outcome.ok)
        launcher.launch.assert_called_once_with(
            self.plan.command, self.plan.environment, self.plan.working_directory
        )
        self.assertTrue(published[0].startswith("Starting agent:\n/opt/grid/bin/agent.sh"))

    def test_clean_exit_is_success(self) -> None:
        launcher = mock.Mock()
        launcher.launch.return_value = FakeProcess(0)
        self.assertTrue(launch_agent(self.plan, launcher, settle_seconds=0, verbose=False).ok)

    def test_early_nonzero_exit_is_launch_failure(self) -> None:
        launcher = mock.Mock()
        launcher.launch.return_value = FakeProcess(1)
        outcome = launch_agent(self.plan, launcher, settle_seconds=0, verbose=True)
        self.assertEqual(outcome.kind, OutcomeKind.LAUNCH_FAILED)
        self.assertIn("another agent is not already running", outcome.reason)
        self.assertIn("agent.sh agent.lookup 1", outcome.reason)

    def test_spawn_error_is_launch_failure(self) -> None:
        launcher = mock.Mock()
        launcher.launch.side_effect = FileNotFoundError("agent.sh")
        outcome = launch_agent(self.plan, launcher, settle_seconds=0, verbose=False)
        self.assertEqual(outcome.kind, OutcomeKind.LAUNCH_FAILED)
        self.assertIsInstance(outcome.cause, FileNotFoundError)

    def test_cancel_during_settle(self) -> None:
        launcher = mock.Mock()
        launcher.launch.return_value = FakeProcess(None)
        cancel = threading.Event()
        cancel.set()
        outcome = launch_agent(self.plan, launcher, settle_seconds=5, verbose=False, cancel=cancel)
        self.assertEqual(outcome.kind, OutcomeKind.INTERRUPTED)


if __name__ == "__main__":
    unittest.main()
