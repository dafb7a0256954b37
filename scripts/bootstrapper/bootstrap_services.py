from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from .bootstrap_config import ServiceSettings
from .bootstrap_latch import Deadline
from .models import MANAGEMENT_ZONE, AgentHandle, BootstrapRequest

MANAGEMENT_SPACE_NAME = "management_space"
WEBUI_NAME = "webui"
REST_NAME = "rest"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    memory_mb: int
    zone: str = MANAGEMENT_ZONE
    port: Optional[int] = None
    artifact: Optional[str] = None
    highly_available: bool = False
    dependencies: tuple[str, ...] = ()
    wait_for_connection: bool = False
    # False for fire-and-forget services the caller does not block on.
    wait: bool = True
    carries_state: bool = False


class ConfigurationStore(Protocol):
    def write_configuration(self, payload: Optional[str]) -> None: ...

    def close(self) -> None: ...


class ServiceInstaller(Protocol):
    spec: ServiceSpec

    def install(self) -> None: ...

    def wait_for_installation(self, deadline: Deadline) -> None: ...

    def location(self) -> Optional[str]: ...

    def open_store(self) -> ConfigurationStore: ...


InstallerFactory = Callable[[ServiceSpec, AgentHandle, Callable[[Optional[str]], None]], ServiceInstaller]


def plan_dependent_services(
    request: BootstrapRequest,
    settings: ServiceSettings,
) -> list[ServiceSpec]:
    """Dependent management services in install order."""
    services: list[ServiceSpec] = []
    if request.management_space:
        services.append(
            ServiceSpec(
                name=MANAGEMENT_SPACE_NAME,
                memory_mb=settings.management_space_memory_mb,
                highly_available=not request.single_box and request.highly_available_space,
                carries_state=True,
            )
        )
    if request.web_services:
        services.append(
            ServiceSpec(
                name=WEBUI_NAME,
                memory_mb=settings.webui_memory_mb,
                port=settings.webui_port,
                artifact=settings.webui_artifact,
                wait=request.wait_for_web_ui,
            )
        )
        services.append(
            ServiceSpec(
                name=REST_NAME,
                memory_mb=settings.rest_memory_mb,
                port=settings.rest_port,
                artifact=settings.rest_artifact,
                dependencies=(MANAGEMENT_SPACE_NAME,),
                wait_for_connection=True,
            )
        )
    return services
