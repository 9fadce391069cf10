"""Event filtering and request mapping for the ACL extension controller."""

from __future__ import annotations

from enum import Enum

from .kube import Infrastructure

TYPE = "acl"
_SUFFIX = "-extension-service"
CONTROLLER_NAME = TYPE + _SUFFIX
FINALIZER_SUFFIX = TYPE + _SUFFIX


class InfrastructureEvent(Enum):
    """Kinds of events the controller can observe for an Infrastructure."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERIC = "generic"


# Only updates may trigger a reconciliation of the ACL extension; everything
# else is handled by the regular shoot reconciliation flow.
_RECONCILE_ON = frozenset({InfrastructureEvent.UPDATE})


def _event_may_reconcile(event: InfrastructureEvent) -> bool:
    return event in _RECONCILE_ON


def infrastructure_update_changed(old: Infrastructure, new: Infrastructure) -> bool:
    """Return True when an Infrastructure update changed its egress CIDRs.

    The order of the CIDRs does not matter.
    """
    if not _event_may_reconcile(InfrastructureEvent.UPDATE):
        return False
    return sorted(old.egress_cidrs) != sorted(new.egress_cidrs)


def infrastructure_create_accepted(infrastructure: Infrastructure) -> bool:
    """Return whether creation of an Infrastructure triggers a reconciliation."""
    return _event_may_reconcile(InfrastructureEvent.CREATE)


def infrastructure_delete_accepted(infrastructure: Infrastructure) -> bool:
    """Return whether deletion of an Infrastructure triggers a reconciliation."""
    return _event_may_reconcile(InfrastructureEvent.DELETE)


def infrastructure_generic_accepted(infrastructure: Infrastructure) -> bool:
    """Return whether a generic Infrastructure event triggers a reconciliation."""
    return _event_may_reconcile(InfrastructureEvent.GENERIC)


def map_infrastructure_to_extension(infrastructure: Infrastructure) -> list[tuple[str, str]]:
    """Return the (namespace, name) of the ACL extension to reconcile for an Infrastructure."""
    return [(infrastructure.namespace, TYPE)]