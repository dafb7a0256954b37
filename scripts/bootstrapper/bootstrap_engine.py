from __future__ import annotations

import argparse
import importlib
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from .bootstrap_args import START_COMMANDS, parse_args, validate_args
from .bootstrap_config import (
    agent_settings,
    load_config,
    noise_loggers,
    service_settings,
    to_float,
    to_int,
)
from .bootstrap_detection import (
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    BootstrapError,
    exit_code_for,
    outcome_from_error,
    safe_error_text,
)
from .bootstrap_dryrun import InMemoryGrid
from .bootstrap_events import EventSink, HeartbeatPrinter
from .bootstrap_launch import SubprocessLauncher
from .bootstrap_orchestrator import BootstrapOrchestrator, is_port_free
from .models import BootstrapRequest, LookupFilter, OrchestrationResult, TeardownRequest

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_callable(target: str) -> Callable[..., Any]:
    """Resolve a ``package.module:attribute`` reference."""
    if ":" not in target:
        raise ValueError(f"Invalid integration '{target}'. Expected 'module:callable'.")
    module_name, attribute = target.split(":", 1)
    module = importlib.import_module(module_name.strip())
    try:
        factory = getattr(module, attribute.strip())
    except AttributeError as exc:
        raise ValueError(f"Integration '{target}' not found") from exc
    if not callable(factory):
        raise ValueError(f"Integration '{target}' is not callable")
    return factory


def lookup_from_args(args: argparse.Namespace) -> LookupFilter:
    return LookupFilter(
        groups=args.lookup_groups,
        locators=args.lookup_locators,
        nic_address=args.nic_address,
    )


def lookup_port_from(args: argparse.Namespace, cfg: dict[str, Any]) -> Optional[int]:
    if args.lookup_port is not None:
        return args.lookup_port
    section = cfg.get("lookup", {})
    key = "localcloud_port" if args.command in ("start-localcloud", "teardown-localcloud") else "port"
    return to_int(section.get(key), 0) or None


def build_start_request(args: argparse.Namespace, cfg: dict[str, Any]) -> BootstrapRequest:
    cloud_contents: Optional[str] = None
    cloud_file = getattr(args, "cloud_file", None)
    if cloud_file:
        cloud_contents = Path(cloud_file).expanduser().read_text(encoding="utf-8")
    timeouts = cfg.get("timeouts", {})
    return BootstrapRequest(
        timeout_seconds=args.timeout_seconds,
        lookup=lookup_from_args(args),
        zone=getattr(args, "zone", None),
        poll_interval=args.poll_interval,
        verbose=args.verbose,
        management_space=not getattr(args, "no_management_space", False),
        web_services=not getattr(args, "no_web_services", False),
        wait_for_web_ui=getattr(args, "wait_for_webui", False),
        highly_available_space=not getattr(args, "not_highly_available_management_space", False),
        auto_shutdown=args.auto_shutdown,
        lookup_port=lookup_port_from(args, cfg),
        cloud_contents=cloud_contents,
        launch_settle_seconds=agent_settings(cfg).settle_seconds,
        existing_agent_timeout=to_float(timeouts.get("existing_agent_seconds"), 10.0),
    )


def build_teardown_request(args: argparse.Namespace, cfg: dict[str, Any]) -> TeardownRequest:
    timeouts = cfg.get("timeouts", {})
    return TeardownRequest(
        timeout_seconds=args.timeout_seconds,
        lookup=lookup_from_args(args),
        single_box=args.command == "teardown-localcloud",
        force=args.force,
        poll_interval=args.poll_interval,
        verbose=args.verbose,
        lookup_port=lookup_port_from(args, cfg),
        locate_timeout=to_float(timeouts.get("existing_agent_seconds"), 10.0),
        grace_seconds=to_float(timeouts.get("shutdown_grace_seconds"), 10.0),
    )


def build_orchestrator(
    args: argparse.Namespace,
    cfg: dict[str, Any],
    *,
    cancel: threading.Event,
    grid: Optional[InMemoryGrid] = None,
) -> BootstrapOrchestrator:
    common = dict(
        agent_settings=agent_settings(cfg),
        service_settings=service_settings(cfg),
        noise_loggers=noise_loggers(cfg),
        cancel=cancel,
    )
    if args.dry_run:
        grid = grid if grid is not None else InMemoryGrid()
        return BootstrapOrchestrator(
            client_factory=grid.client_factory,
            launcher=grid.launcher(),
            installer_factory=grid.installer_factory,
            admin=grid.admin(),
            port_is_free=grid.port_is_free,
            **common,
        )

    integrations = cfg.get("integrations", {})
    discovery = str(integrations.get("discovery_client") or "")
    if not discovery:
        raise ValueError(
            "No discovery client configured. Set [integrations].discovery_client "
            "or use --dry-run."
        )
    client_factory = load_callable(discovery)
    admin = None
    admin_target = str(integrations.get("admin_facade") or "")
    if admin_target:
        admin = load_callable(admin_target)(lookup_from_args(args))
    installers = str(integrations.get("service_installers") or "")
    installer_factory = load_callable(installers) if installers else None
    return BootstrapOrchestrator(
        client_factory=client_factory,
        launcher=SubprocessLauncher(),
        installer_factory=installer_factory,
        admin=admin,
        port_is_free=is_port_free,
        **common,
    )


def dispatch(
    orchestrator: BootstrapOrchestrator,
    args: argparse.Namespace,
    cfg: dict[str, Any],
) -> OrchestrationResult:
    if args.command in START_COMMANDS:
        request = build_start_request(args, cfg)
        if args.command == "start-agent":
            return orchestrator.start_agent(request)
        if args.command == "start-management":
            return orchestrator.start_management(request)
        return orchestrator.start_local_cloud(request)

    teardown = build_teardown_request(args, cfg)
    if args.command == "shutdown-agent":
        return orchestrator.shutdown_agent(teardown)
    if args.command == "shutdown-management":
        return orchestrator.shutdown_management(teardown)
    return orchestrator.teardown_local_cloud(teardown)


def main(argv: Optional[Sequence[str]] = None, *, grid: Optional[InMemoryGrid] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
    )

    cancel = threading.Event()
    try:
        validate_args(args)
        cfg = load_config(Path(args.config).expanduser())
        orchestrator = build_orchestrator(args, cfg, cancel=cancel, grid=grid)
    except (ValueError, ImportError, OSError) as exc:
        print(f"startup error: {safe_error_text(exc)}", file=sys.stderr)
        return EXIT_USAGE

    events = EventSink(Path(args.events_file).expanduser() if args.events_file else None)
    orchestrator.add_listener(events)
    orchestrator.add_listener(HeartbeatPrinter())
    events.emit("start", f"{args.command} requested", dry_run=args.dry_run)

    try:
        result = dispatch(orchestrator, args, cfg)
    except KeyboardInterrupt:
        cancel.set()
        events.emit("interrupt", "KeyboardInterrupt received. Stopping.")
        return EXIT_INTERRUPTED
    except BootstrapError as exc:
        events.emit("failed", safe_error_text(exc))
        return exit_code_for(outcome_from_error(exc))
    except (ValueError, OSError) as exc:
        print(f"startup error: {safe_error_text(exc)}", file=sys.stderr)
        return EXIT_USAGE

    outcome = result.outcome
    if not outcome.ok:
        events.emit(outcome.kind.value, outcome.reason)
    events.emit(
        "finish",
        f"{result.operation} finished: {outcome.kind.value}",
        outcome=outcome.kind.value,
        elapsed_seconds=round(result.elapsed_seconds, 3),
        states=result.states,
    )
    return exit_code_for(outcome)


if __name__ == "__main__":
    sys.exit(main())
