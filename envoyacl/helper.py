"""Derive allowed CIDRs and identifiers from seed, shoot and infrastructure objects."""

from __future__ import annotations

import json
import re

from .kube import Infrastructure, Seed, Shoot

TECHNICAL_ID_PREFIX = "shoot-"
OPENSTACK_TYPE = "openstack"

# One or two dashes may follow "shoot" in a technical ID.
_TECHNICAL_ID_PATTERN = re.compile(f"^{re.escape(TECHNICAL_ID_PREFIX)}-?")


class ProviderStatusMissingError(ValueError):
    """Raised when an infrastructure has no provider status to read."""

    def __init__(self) -> None:
        super().__init__("provider status is missing and can't be decoded")


class WrongInfrastructureTypeError(ValueError):
    """Raised when an infrastructure is not of the expected type."""

    def __init__(self) -> None:
        super().__init__("infrastructure type is not correct")


def get_seed_specific_allowed_cidrs(seed: Seed) -> list[str]:
    """Return the node and pod CIDRs of the seed."""
    cidrs = []
    if seed.nodes is not None:
        cidrs.append(seed.nodes)
    if seed.pods:
        cidrs.append(seed.pods)
    return cidrs


def get_seed_ingress_domain(seed: Seed) -> str:
    """Return the ingress domain of the seed, or an empty string."""
    return seed.ingress_domain if seed.ingress_domain is not None else ""


def get_shoot_node_specific_allowed_cidrs(shoot: Shoot) -> list[str]:
    """Return the node CIDRs of the shoot."""
    return [shoot.nodes] if shoot.nodes is not None else []


def get_shoot_pod_specific_allowed_cidrs(shoot: Shoot) -> list[str]:
    """Return the pod CIDRs of the shoot."""
    return [shoot.pods] if shoot.pods is not None else []


def compute_short_shoot_id(shoot: Shoot) -> str:
    """Strip the technical ID prefix from the shoot's technical ID."""
    return _TECHNICAL_ID_PATTERN.sub("", shoot.technical_id)


def get_provider_specific_allowed_cidrs(infra: Infrastructure) -> list[str]:
    """Return the CIDRs the infrastructure egresses from."""
    if infra.egress_cidrs:
        return list(infra.egress_cidrs)
    if infra.type == OPENSTACK_TYPE:
        return _openstack_allowed_cidrs(infra)
    return []


def _openstack_allowed_cidrs(infra: Infrastructure) -> list[str]:
    if infra.type != OPENSTACK_TYPE:
        raise WrongInfrastructureTypeError()
    if infra.provider_status is None:
        raise ProviderStatusMissingError()
    status = json.loads(infra.provider_status)
    if not isinstance(status, dict):
        raise ValueError("provider status is not a JSON object")
    networks = status.get("networks") or {}
    router = networks.get("router") or {}
    return [f"{router.get('ip', '')}/32"]