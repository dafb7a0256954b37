from __future__ import annotations

import dataclasses
import ipaddress
import logging
import socket
from typing import Any, Callable, Iterable, Optional, Sequence

import psutil

from .models import (
    LOCALCLOUD_LOOKUP_GROUP,
    AgentControl,
    AgentHandle,
    ClientFactory,
    DiscoveryClient,
    LookupFilter,
    RoleInstance,
    RoleKind,
)

logger = logging.getLogger(__name__)

Reporter = Callable[[str], None]


def resolve_nic_address(nic_address: Optional[str]) -> str:
    if nic_address:
        return nic_address
    return socket.gethostbyname(socket.gethostname())


def with_nic_address(lookup: LookupFilter) -> LookupFilter:
    return dataclasses.replace(lookup, nic_address=resolve_nic_address(lookup.nic_address))


def localcloud_lookup(lookup: LookupFilter, lookup_port: int) -> LookupFilter:
    if not lookup.nic_address:
        raise ValueError("nic address must be resolved before applying local cloud lookup defaults")
    return dataclasses.replace(
        lookup,
        locators=lookup.locators or f"{lookup.nic_address}:{lookup_port}",
        groups=lookup.groups or LOCALCLOUD_LOOKUP_GROUP,
    )


def format_locators(locators: Iterable[Any]) -> str:
    """Render locators as ``host:port`` items joined by commas.

    Accepts plain strings or objects exposing ``host`` and ``port``.
    """
    rendered: list[str] = []
    for locator in locators:
        if isinstance(locator, str):
            rendered.append(locator.strip())
        else:
            rendered.append(f"{locator.host}:{locator.port}")
    return ",".join(item for item in rendered if item)


def derive_lookup_filter(lookup: LookupFilter, client: DiscoveryClient) -> LookupFilter:
    """Align the filter with the groups and locators the client actually uses."""
    groups = [g for g in (client.groups or ()) if g]
    if not groups:
        raise ValueError("Discovery client lookup group must be set")
    locators = format_locators(client.locators or ())
    return dataclasses.replace(
        lookup,
        groups=",".join(groups),
        locators=locators or lookup.locators,
    )


def _interface_addresses() -> set[str]:
    addresses: set[str] = set()
    for entries in psutil.net_if_addrs().values():
        for entry in entries:
            if entry.family in (socket.AF_INET, socket.AF_INET6):
                addresses.add(entry.address.split("%", 1)[0])
    return addresses


def is_local_address(address: str) -> bool:
    """True for loopback, wildcard, or an address bound to a local interface."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        try:
            ip = ipaddress.ip_address(socket.gethostbyname(address))
        except (OSError, ValueError):
            return False

    if ip.is_loopback or ip.is_unspecified:
        return True
    try:
        return str(ip) in _interface_addresses()
    except OSError:
        return False


def observe_agents(client: DiscoveryClient) -> list[AgentHandle]:
    handles: list[AgentHandle] = []
    for ref in client.list_agents():
        handles.append(
            AgentHandle(
                uid=str(getattr(ref, "uid", ref)),
                host_address=client.locale_of(ref),
                groups=client.groups_of(ref),
                ref=ref,
            )
        )
    return handles


def agent_rejection(agent: AgentHandle, lookup: LookupFilter) -> Optional[str]:
    """Return why ``agent`` does not match ``lookup``, or None when it does."""
    reasons: list[str] = []
    if lookup.groups is not None and agent.groups != lookup.groups:
        reasons.append(
            f"Ignoring agent. Filter lookupGroups='{lookup.groups}', "
            f"agent LookupGroups='{agent.groups}'"
        )
    address_ok = (
        lookup.nic_address is not None and agent.host_address == lookup.nic_address
    ) or is_local_address(agent.host_address)
    if not address_ok:
        reasons.append(
            f"Ignoring agent. Filter nicAddress='{lookup.nic_address}' or local address, "
            f"agent nicAddress='{agent.host_address}'"
        )
    if not reasons:
        return None
    return " ".join(reasons)


def find_agent(
    agents: Iterable[AgentHandle],
    lookup: LookupFilter,
    report: Optional[Reporter] = None,
) -> Optional[AgentHandle]:
    """Return the first agent matching ``lookup`` in discovery order.

    Several agents can satisfy the filter on multi-homed hosts; the first one
    presented wins and the rest are not inspected for uniqueness.
    """
    for agent in agents:
        rejection = agent_rejection(agent, lookup)
        if report is not None:
            message = (
                f"Discovered agent nic-address={agent.host_address} "
                f"lookup-groups={agent.groups}."
            )
            if rejection:
                message += f" {rejection}"
            report(message)
        if rejection is None:
            return agent
    return None


class ClientLease:
    """Exclusive owner of one discovery client for a single orchestration call.

    ``close`` may be called any number of times; only the first reaches the
    client.
    """

    def __init__(self, client: DiscoveryClient) -> None:
        self._client = client
        self._closed = False

    @classmethod
    def open(cls, factory: ClientFactory, lookup: LookupFilter) -> "ClientLease":
        return cls(factory(lookup))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def groups(self) -> Sequence[str]:
        return self._client.groups

    @property
    def locators(self) -> Sequence[str]:
        return self._client.locators

    def list_agents(self) -> Iterable[Any]:
        return self._client.list_agents()

    def list_roles_of(self, kind: RoleKind) -> Iterable[RoleInstance]:
        return self._client.list_roles_of(kind)

    def groups_of(self, agent: Any) -> Optional[str]:
        return self._client.groups_of(agent)

    def locale_of(self, agent: Any) -> str:
        return self._client.locale_of(agent)

    def control_of(self, agent: Any) -> AgentControl:
        return self._client.control_of(agent)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client.close()

    def __enter__(self) -> "ClientLease":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
