from __future__ import annotations

import argparse
from pathlib import Path
from typing import Optional, Sequence

from .bootstrap_config import DEFAULT_CONFIG_PATH

START_COMMANDS = ("start-agent", "start-management", "start-localcloud")
TEARDOWN_COMMANDS = ("shutdown-agent", "shutdown-management", "teardown-localcloud")


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=300.0,
        help="Total time budget for the whole operation.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=5.0,
        help="Seconds between discovery polls (minimum 0.05).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Report discovery decisions and debug logging.",
    )
    parser.add_argument(
        "--nic-address",
        default=None,
        help="Address of the local network interface (default: resolved from hostname).",
    )
    parser.add_argument(
        "--lookup-groups",
        default=None,
        help="Comma-separated discovery groups.",
    )
    parser.add_argument(
        "--lookup-locators",
        default=None,
        help="Comma-separated host:port unicast locators. Disables multicast discovery.",
    )
    parser.add_argument(
        "--lookup-port",
        type=int,
        default=None,
        help="Lookup unicast port (default from config).",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to the TOML configuration file.",
    )
    parser.add_argument(
        "--events-file",
        default=None,
        help="Optional JSONL file receiving one line per progress event.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against an in-memory grid without launching any process.",
    )


def _add_start_options(parser: argparse.ArgumentParser, *, zoned: bool, services: bool) -> None:
    if zoned:
        parser.add_argument(
            "--zone",
            default=None,
            help="Zone the agent serves. Required for start-agent.",
        )
    parser.add_argument(
        "--auto-shutdown",
        action="store_true",
        help="Let the agent exit when its management processes go away.",
    )
    if not services:
        return
    parser.add_argument(
        "--no-web-services",
        action="store_true",
        help="Do not install the web UI and REST gateway.",
    )
    parser.add_argument(
        "--no-management-space",
        action="store_true",
        help="Do not install the management space.",
    )
    parser.add_argument(
        "--not-highly-available-management-space",
        action="store_true",
        help="Install the management space without a backup instance.",
    )
    parser.add_argument(
        "--wait-for-webui",
        action="store_true",
        help="Block until the web UI is available instead of returning once it is installed.",
    )
    parser.add_argument(
        "--cloud-file",
        default=None,
        help="File whose contents are written to the management space after installation.",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bounded-time bootstrap and teardown of a local grid agent and its management processes."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    start_agent = sub.add_parser("start-agent", help="Start an agent serving a zone.")
    _add_common(start_agent)
    _add_start_options(start_agent, zoned=True, services=False)

    start_management = sub.add_parser(
        "start-management", help="Start an agent with lookup, manager and management services."
    )
    _add_common(start_management)
    _add_start_options(start_management, zoned=False, services=True)

    start_localcloud = sub.add_parser(
        "start-localcloud", help="Start a single-box grid with all management processes."
    )
    _add_common(start_localcloud)
    _add_start_options(start_localcloud, zoned=False, services=True)

    for name, help_text in (
        ("shutdown-agent", "Shut down the local agent unless it hosts management or workloads."),
        ("shutdown-management", "Shut down the local agent and its management processes."),
        ("teardown-localcloud", "Uninstall applications and shut down the single-box grid."),
    ):
        teardown = sub.add_parser(name, help=help_text)
        _add_common(teardown)
        teardown.add_argument(
            "--force",
            action="store_true",
            help="Proceed even when workloads are still deployed.",
        )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    if args.timeout_seconds <= 0:
        raise ValueError("--timeout-seconds must be > 0.")
    if args.poll_interval < 0:
        raise ValueError("--poll-interval must be >= 0.")
    if args.lookup_port is not None and not 0 < args.lookup_port < 65536:
        raise ValueError("--lookup-port must be between 1 and 65535.")
    if args.command == "start-agent" and not args.zone:
        raise ValueError("start-agent requires --zone.")
    cloud_file = getattr(args, "cloud_file", None)
    if cloud_file and not Path(cloud_file).expanduser().is_file():
        raise ValueError(f"--cloud-file not found: {cloud_file}")
