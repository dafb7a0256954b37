from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass
from typing import Any

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .bootstrap_events import DEFAULT_NOISE_LOGGERS
from .models import DEFAULT_LOCALCLOUD_LOOKUP_PORT, DEFAULT_LOOKUP_PORT

DEFAULT_CONFIG_PATH = pathlib.Path("config/bootstrapper.toml")
HOME_ENV_VAR = "GRID_HOME"


def default_config() -> dict[str, Any]:
    return {
        "agent": {
            "home": ".",
            "script": "agent.sh",
            "windows_script": "agent.bat",
            "settle_seconds": 2.0,
            "agent_memory_mb": 128,
            "lookup_memory_mb": 128,
            "manager_memory_mb": 128,
            "elastic_manager_memory_mb": 128,
        },
        "lookup": {
            "port": DEFAULT_LOOKUP_PORT,
            "localcloud_port": DEFAULT_LOCALCLOUD_LOOKUP_PORT,
        },
        "timeouts": {
            "existing_agent_seconds": 10.0,
            "shutdown_grace_seconds": 10.0,
        },
        "services": {
            "management_space_memory_mb": 64,
            "webui_memory_mb": 512,
            "webui_port": 8099,
            "webui_artifact": "tools/webui/webui.war",
            "rest_memory_mb": 128,
            "rest_port": 8100,
            "rest_artifact": "tools/rest/rest.war",
        },
        "integrations": {
            "discovery_client": "",
            "admin_facade": "",
            "service_installers": "",
        },
        "logging": {
            "noise_loggers": list(DEFAULT_NOISE_LOGGERS),
        },
    }


def load_config(path: pathlib.Path) -> dict[str, Any]:
    defaults = default_config()
    if not path.exists():
        return defaults

    with path.open("rb") as fh:
        payload = tomllib.load(fh)
    merged = dict(defaults)
    for key, value in payload.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            section = dict(merged[key])
            section.update(value)
            merged[key] = section
        else:
            merged[key] = value
    return merged


def to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class AgentSettings:
    home: pathlib.Path
    script: str
    windows_script: str
    settle_seconds: float
    agent_memory_mb: int
    lookup_memory_mb: int
    manager_memory_mb: int
    elastic_manager_memory_mb: int

    @property
    def bin_directory(self) -> pathlib.Path:
        return (self.home / "bin").resolve()


@dataclass(frozen=True)
class ServiceSettings:
    management_space_memory_mb: int
    webui_memory_mb: int
    webui_port: int
    webui_artifact: str
    rest_memory_mb: int
    rest_port: int
    rest_artifact: str


def agent_settings(cfg: dict[str, Any]) -> AgentSettings:
    section = cfg.get("agent", {})
    defaults = default_config()["agent"]
    home = os.environ.get(HOME_ENV_VAR) or str(section.get("home") or defaults["home"])
    return AgentSettings(
        home=pathlib.Path(home).expanduser(),
        script=str(section.get("script") or defaults["script"]),
        windows_script=str(section.get("windows_script") or defaults["windows_script"]),
        settle_seconds=to_float(section.get("settle_seconds"), defaults["settle_seconds"]),
        agent_memory_mb=to_int(section.get("agent_memory_mb"), defaults["agent_memory_mb"]),
        lookup_memory_mb=to_int(section.get("lookup_memory_mb"), defaults["lookup_memory_mb"]),
        manager_memory_mb=to_int(section.get("manager_memory_mb"), defaults["manager_memory_mb"]),
        elastic_manager_memory_mb=to_int(
            section.get("elastic_manager_memory_mb"),
            defaults["elastic_manager_memory_mb"],
        ),
    )


def service_settings(cfg: dict[str, Any]) -> ServiceSettings:
    section = cfg.get("services", {})
    defaults = default_config()["services"]
    return ServiceSettings(
        management_space_memory_mb=to_int(
            section.get("management_space_memory_mb"),
            defaults["management_space_memory_mb"],
        ),
        webui_memory_mb=to_int(section.get("webui_memory_mb"), defaults["webui_memory_mb"]),
        webui_port=to_int(section.get("webui_port"), defaults["webui_port"]),
        webui_artifact=str(section.get("webui_artifact") or defaults["webui_artifact"]),
        rest_memory_mb=to_int(section.get("rest_memory_mb"), defaults["rest_memory_mb"]),
        rest_port=to_int(section.get("rest_port"), defaults["rest_port"]),
        rest_artifact=str(section.get("rest_artifact") or defaults["rest_artifact"]),
    )


def noise_loggers(cfg: dict[str, Any]) -> tuple[str, ...]:
    names = cfg.get("logging", {}).get("noise_loggers")
    if not isinstance(names, list):
        return DEFAULT_NOISE_LOGGERS
    return tuple(str(name) for name in names if str(name).strip())
