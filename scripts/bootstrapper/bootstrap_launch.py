from __future__ import annotations

import atexit
import os
import shlex
import stat
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from .bootstrap_config import AgentSettings
from .bootstrap_detection import safe_error_text
from .bootstrap_latch import pause
from .models import (
    DEFAULT_LOOKUP_PORT,
    BootstrapRequest,
    OutcomeKind,
    PhaseOutcome,
    ProcessLauncher,
    RoleKind,
)

LOOKUP_PORT_OPTION = "--lookup-unicast-port"
AUTO_SHUTDOWN_OPTION = "--auto-shutdown-enabled=true"
DISABLE_MULTICAST_OPTION = "--multicast-enabled=false"

LINUX_SCRIPT_PREFIX = "#!/bin/bash\n"
# The agent script spawns a daemon; nobody reads its output, so discard it.
LINUX_ARGUMENTS_POSTFIX = (">/dev/null", "2>&1")
WINDOWS_ARGUMENTS_POSTFIX = (">nul", "2>&1")


@dataclass(frozen=True)
class RoleAllocation:
    key: str
    count: int
    role: Optional[RoleKind] = None
    global_scope: bool = False


# One lookup, one manager and one elastic manager, all colocated on this agent.
LOCALCLOUD_MANAGEMENT_ROLES = (
    RoleAllocation("global.lookup", 0, RoleKind.LOOKUP, global_scope=True),
    RoleAllocation("lookup", 0, RoleKind.LOOKUP),
    RoleAllocation("container", 0),
    RoleAllocation("global.manager", 0, RoleKind.MANAGER, global_scope=True),
    RoleAllocation("manager_lookup", 1, RoleKind.MANAGER),
    RoleAllocation("global.elastic_manager", 0, RoleKind.ELASTIC_MANAGER, global_scope=True),
    RoleAllocation("elastic_manager", 1, RoleKind.ELASTIC_MANAGER),
)

# Cloud management machine: local lookup and manager, one elastic manager per grid.
CLOUD_MANAGEMENT_ROLES = (
    RoleAllocation("global.lookup", 0, RoleKind.LOOKUP, global_scope=True),
    RoleAllocation("lookup", 1, RoleKind.LOOKUP),
    RoleAllocation("container", 0),
    RoleAllocation("global.manager", 0, RoleKind.MANAGER, global_scope=True),
    RoleAllocation("manager", 1, RoleKind.MANAGER),
    RoleAllocation("global.elastic_manager", 1, RoleKind.ELASTIC_MANAGER, global_scope=True),
)

AGENT_ONLY_ROLES = (
    RoleAllocation("global.lookup", 0, RoleKind.LOOKUP, global_scope=True),
    RoleAllocation("container", 0),
    RoleAllocation("global.manager", 0, RoleKind.MANAGER, global_scope=True),
    RoleAllocation("global.elastic_manager", 0, RoleKind.ELASTIC_MANAGER, global_scope=True),
)


def role_arguments(allocations: Sequence[RoleAllocation]) -> list[str]:
    args: list[str] = []
    for allocation in allocations:
        args.extend([f"agent.{allocation.key}", str(allocation.count)])
    return args


def required_roles(allocations: Sequence[RoleAllocation]) -> list[tuple[RoleKind, bool]]:
    """Roles the new agent must bring up, as ``(kind, must_be_hosted_locally)``.

    The manager-with-lookup allocation also satisfies the lookup requirement.
    """
    required: dict[RoleKind, bool] = {}
    for allocation in allocations:
        if allocation.count <= 0 or allocation.role is None:
            continue
        local = not allocation.global_scope
        required[allocation.role] = required.get(allocation.role, False) or local
        if allocation.key == "manager_lookup":
            required[RoleKind.LOOKUP] = required.get(RoleKind.LOOKUP, False) or local
    order = (RoleKind.LOOKUP, RoleKind.MANAGER, RoleKind.ELASTIC_MANAGER)
    return [(kind, required[kind]) for kind in order if kind in required]


@dataclass(frozen=True)
class LaunchPlan:
    command: list[str]
    environment: dict[str, str]
    working_directory: Path

    @property
    def command_line(self) -> str:
        return " ".join(self.command)


def is_windows() -> bool:
    return os.name == "nt"


def build_launch_plan(
    request: BootstrapRequest,
    allocations: Sequence[RoleAllocation],
    settings: AgentSettings,
    *,
    windows: Optional[bool] = None,
) -> LaunchPlan:
    windows = is_windows() if windows is None else windows
    directory = settings.bin_directory
    if windows:
        command = ["cmd.exe", "/c", str(directory / settings.windows_script)]
        postfix = WINDOWS_ARGUMENTS_POSTFIX
    else:
        command = [str(directory / settings.script)]
        postfix = LINUX_ARGUMENTS_POSTFIX
    command.extend(role_arguments(allocations))
    command.extend(postfix)

    lookup_port = f"{LOOKUP_PORT_OPTION}={request.lookup_port or DEFAULT_LOOKUP_PORT}"
    agent_options = [f"--max-memory={settings.agent_memory_mb}m"]
    lookup_options = [f"--max-memory={settings.lookup_memory_mb}m", lookup_port]
    manager_options = [f"--max-memory={settings.manager_memory_mb}m", lookup_port]
    elastic_options = [f"--max-memory={settings.elastic_manager_memory_mb}m"]
    container_options: list[str] = []
    if request.auto_shutdown:
        agent_options.append(AUTO_SHUTDOWN_OPTION)

    environment: dict[str, str] = {}
    lookup = request.lookup
    if lookup.groups is not None:
        environment["LOOKUP_GROUPS"] = lookup.groups
    if lookup.locators is not None:
        environment["LOOKUP_LOCATORS"] = lookup.locators
        # Explicit locators replace multicast discovery for every role.
        for options in (agent_options, lookup_options, manager_options, elastic_options, container_options):
            options.append(DISABLE_MULTICAST_OPTION)
    if lookup.nic_address is not None:
        environment["NIC_ADDR"] = lookup.nic_address
    if request.zone is not None:
        agent_options.append(f"--zones={request.zone}")

    environment["AGENT_OPTIONS"] = " ".join(agent_options)
    environment["LOOKUP_OPTIONS"] = " ".join(lookup_options)
    environment["MANAGER_OPTIONS"] = " ".join(manager_options)
    environment["ELASTIC_MANAGER_OPTIONS"] = " ".join(elastic_options)
    environment["CONTAINER_OPTIONS"] = " ".join(container_options)

    return LaunchPlan(command=command, environment=environment, working_directory=directory)


def write_launch_script(command: Sequence[str], *, windows: Optional[bool] = None) -> Path:
    windows = is_windows() if windows is None else windows
    suffix = ".bat" if windows else ".sh"
    fd, raw_path = tempfile.mkstemp(prefix="run-agent", suffix=suffix)
    path = Path(raw_path)
    with os.fdopen(fd, "w", encoding="utf-8") as stream:
        if windows:
            stream.write(" ".join(command))
        else:
            stream.write(LINUX_SCRIPT_PREFIX)
            # Redirections stay unquoted so the shell applies them.
            stream.write(
                " ".join(
                    token if token in LINUX_ARGUMENTS_POSTFIX else shlex.quote(token)
                    for token in command
                )
            )
        stream.write("\n")
    if not windows:
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return path


def discard_launch_script(path: Path) -> None:
    path.unlink(missing_ok=True)


class SubprocessLauncher:
    """Starts the agent through a wrapper script in its own session.

    The new session keeps the agent alive after this process exits.
    """

    def launch(
        self,
        command: Sequence[str],
        environment: dict[str, str],
        working_directory: Path,
    ) -> subprocess.Popen[bytes]:
        script = write_launch_script(command)
        # The detached agent may outlive us, so the script is only removed at exit.
        atexit.register(discard_launch_script, script)
        env = dict(os.environ)
        env.update(environment)
        kwargs: dict[str, object] = {}
        if is_windows():
            kwargs["creationflags"] = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(
                subprocess, "CREATE_NEW_PROCESS_GROUP", 0
            )
        else:
            kwargs["start_new_session"] = True
        return subprocess.Popen(
            [str(script)],
            cwd=working_directory,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **kwargs,  # type: ignore[arg-type]
        )


def launch_agent(
    plan: LaunchPlan,
    launcher: ProcessLauncher,
    *,
    settle_seconds: float,
    verbose: bool,
    cancel: Optional[threading.Event] = None,
    publish: Callable[[Optional[str]], None] = lambda _message: None,
) -> PhaseOutcome:
    """Start the agent and make sure it survives the settle period.

    A script with errors exits within the settle period; anything still
    running or exited cleanly by then is assumed to be starting the daemon.
    """
    if verbose:
        publish(f"Starting agent:\n{plan.command_line}")
    try:
        proc = launcher.launch(plan.command, plan.environment, plan.working_directory)
    except OSError as exc:
        return PhaseOutcome(
            OutcomeKind.LAUNCH_FAILED,
            f"Error while starting agent: {safe_error_text(exc)}",
            exc,
        )

    if not pause(settle_seconds, cancel):
        return PhaseOutcome.interrupted("interrupted while starting the agent")

    returncode = proc.poll()
    if returncode is not None and returncode != 0:
        message = (
            "Error while starting agent. "
            "Please make sure that another agent is not already running. "
        )
        if verbose:
            message += f"Command executed: {plan.command_line}"
        return PhaseOutcome(OutcomeKind.LAUNCH_FAILED, message.strip())
    return PhaseOutcome.done()
