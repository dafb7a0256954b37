from __future__ import annotations

from .models import AgentHandle, DiscoveryClient, PhaseOutcome, RoleKind

MANAGEMENT_ROLE_KINDS = (RoleKind.MANAGER, RoleKind.ELASTIC_MANAGER, RoleKind.LOOKUP)

MANAGEMENT_RUNNING_MESSAGE = (
    "Cannot shutdown agent since management processes running on this machine. "
    "Use the shutdown-management command instead."
)


def check_shutdown_guard(
    client: DiscoveryClient,
    agent: AgentHandle,
    *,
    allow_workloads: bool,
    allow_management: bool,
) -> PhaseOutcome:
    """Refuse to shut ``agent`` down while it still hosts protected roles.

    Must run while the discovery client is still open; once it is closed the
    hosted roles can no longer be listed reliably. Categories that are allowed
    are not queried at all.
    """
    if not allow_workloads:
        for instance in client.list_roles_of(RoleKind.WORKLOAD):
            if instance.agent_uid == agent.uid:
                return PhaseOutcome.guard_violation(
                    f"Cannot shutdown agent since {instance.name} service is still "
                    "running on this machine. Use -force flag."
                )

    if not allow_management:
        for kind in MANAGEMENT_ROLE_KINDS:
            for instance in client.list_roles_of(kind):
                if instance.agent_uid == agent.uid:
                    return PhaseOutcome.guard_violation(MANAGEMENT_RUNNING_MESSAGE)

    return PhaseOutcome.done()
