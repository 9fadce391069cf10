"""Build the EnvoyFilter patches that enforce an ACL rule on shoot endpoints."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .helper import compute_short_shoot_id, get_seed_ingress_domain
from .kube import Cluster

_RBAC_TYPE = "type.googleapis.com/envoy.extensions.filters.{}.rbac.v3.RBAC"
_STAT_PREFIX = "envoyrbac"
_MATCH_ALL_REMOTE = {"remote_ip": {"address_prefix": "0.0.0.0", "prefix_len": 0}}


class NoHostsGivenError(ValueError):
    """Raised when an API patch is requested without any host."""

    def __init__(self) -> None:
        super().__init__("no hosts were given, at least one host is needed")


@dataclass
class ACLRule:
    """A single access rule: CIDR blocks, an action and a rule type."""

    cidrs: list[str] = field(default_factory=list)
    action: str = ""
    type: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ACLRule:
        """Build a rule from its JSON form."""
        if not isinstance(data, Mapping):
            raise TypeError("an ACL rule must be a JSON object")
        cidrs = data.get("cidrs") or []
        if not isinstance(cidrs, list) or not all(isinstance(c, str) for c in cidrs):
            raise TypeError("rule cidrs must be a list of strings")
        action = data.get("action") or ""
        rule_type = data.get("type") or ""
        if not isinstance(action, str) or not isinstance(rule_type, str):
            raise TypeError("rule action and type must be strings")
        return cls(cidrs=list(cidrs), action=action, type=rule_type)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the rule."""
        return {"cidrs": list(self.cidrs), "action": self.action, "type": self.type}


@dataclass
class ExtensionSpec:
    """The provider configuration of an ACL extension object."""

    rule: ACLRule | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExtensionSpec:
        """Build a spec from its JSON form."""
        if not isinstance(data, Mapping):
            raise TypeError("an extension spec must be a JSON object")
        raw_rule = data.get("rule")
        return cls(rule=None if raw_rule is None else ACLRule.from_dict(raw_rule))

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the spec."""
        return {"rule": None if self.rule is None else self.rule.to_dict()}


def _prefix_and_length(cidr: str) -> tuple[str, int]:
    """Split a CIDR into its address (as written) and prefix length."""
    address, sep, length = cidr.partition("/")
    if not sep or not length.isdigit():
        raise ValueError(f"invalid CIDR address: {cidr}")
    interface = ipaddress.ip_interface(f"{address}/{int(length)}")
    return str(interface.ip), interface.network.prefixlen


def _principals(key: str, cidrs: Iterable[str]) -> list[dict[str, Any]]:
    principals = []
    for cidr in cidrs:
        try:
            prefix, length = _prefix_and_length(cidr)
        except ValueError:
            continue
        principals.append({key: {"address_prefix": prefix, "prefix_len": length}})
    return principals


def _rule_cidrs_to_principals(
    rule: ACLRule, always_allowed_cidrs: Iterable[str]
) -> list[dict[str, Any]]:
    principals = _principals(rule.type.lower(), rule.cidrs)
    # An ALLOW rule limits access to the listed CIDRs, so cluster-internal
    # ranges must be added to avoid cutting off internal traffic.
    if rule.action == "ALLOW":
        principals.extend(_principals("remote_ip", always_allowed_cidrs))
    return principals


def _typed_config(
    rbac_name: str, action: str, filter_type: str, principals: list[dict[str, Any]]
) -> dict[str, Any]:
    return {
        "@type": _RBAC_TYPE.format(filter_type),
        "stat_prefix": _STAT_PREFIX,
        "rules": {
            "action": action.upper(),
            "policies": {
                rbac_name: {
                    "permissions": [{"any": True}],
                    "principals": principals,
                },
            },
        },
    }


def _selector_spec(istio_labels: Mapping[str, str] | None, patch: dict[str, Any]) -> dict[str, Any]:
    return {
        "workloadSelector": {"labels": istio_labels},
        "configPatches": [patch],
    }


def _inverse_policy_rules(
    policy_id: str,
    permission: dict[str, Any],
    principals: list[dict[str, Any]],
) -> dict[str, Any]:
    return {
        "action": "ALLOW",
        "policies": {
            f"{policy_id}-inverse": {
                "permissions": [{"not_rule": permission}],
                "principals": [dict(_MATCH_ALL_REMOTE)],
            },
            policy_id: {
                "permissions": [permission],
                "principals": principals,
            },
        },
    }


def build_api_envoy_filter_spec(
    rule: ACLRule,
    hosts: list[str] | None,
    always_allowed_cidrs: Iterable[str],
    istio_labels: Mapping[str, str] | None,
) -> dict[str, Any]:
    """Return the EnvoyFilter spec guarding the API server."""
    patch = create_api_config_patch(rule, hosts, always_allowed_cidrs)
    return _selector_spec(istio_labels, patch)


def build_ingress_envoy_filter_spec(
    cluster: Cluster,
    rule: ACLRule,
    always_allowed_cidrs: Iterable[str],
    istio_labels: Mapping[str, str] | None,
) -> dict[str, Any] | None:
    """Return the EnvoyFilter spec for the seed ingress domain, or None without one."""
    domain = get_seed_ingress_domain(cluster.seed)
    if not domain:
        return None
    shoot_id = compute_short_shoot_id(cluster.shoot)
    patch = create_ingress_config_patch(rule, domain, shoot_id, always_allowed_cidrs)
    return _selector_spec(istio_labels, patch)


def build_vpn_envoy_filter_spec(
    cluster: Cluster,
    rule: ACLRule,
    always_allowed_cidrs: Iterable[str],
    istio_labels: Mapping[str, str] | None,
) -> dict[str, Any]:
    """Return the EnvoyFilter spec guarding the VPN endpoint."""
    patch = create_vpn_config_patch(
        rule,
        compute_short_shoot_id(cluster.shoot),
        cluster.shoot.technical_id,
        always_allowed_cidrs,
    )
    return _selector_spec(istio_labels, patch)


def create_api_config_patch(
    rule: ACLRule, hosts: list[str] | None, always_allowed_cidrs: Iterable[str]
) -> dict[str, Any]:
    """Return a network filter patch for the gateway filter chain matching the first host."""
    if not hosts:
        raise NoHostsGivenError()
    rbac_name = "acl-api"
    principals = _rule_cidrs_to_principals(rule, always_allowed_cidrs)
    return {
        "applyTo": "NETWORK_FILTER",
        "match": {
            "context": "GATEWAY",
            # One filter chain per shoot matches both the internal and the
            # external domain, so either host selects it.
            "listener": {"filterChain": {"sni": hosts[0]}},
        },
        "patch": {
            "operation": "INSERT_FIRST",
            "value": {
                "name": rbac_name,
                "typed_config": _typed_config(rbac_name, rule.action, "network", principals),
            },
        },
    }


def create_ingress_config_patch(
    rule: ACLRule,
    seed_ingress_domain: str,
    shoot_id: str,
    always_allowed_cidrs: Iterable[str],
) -> dict[str, Any]:
    """Return a network filter patch for the wildcard ingress filter chain."""
    rbac_name = "acl-ingress"
    server_name = {"requested_server_name": {"suffix": f"-{shoot_id}.{seed_ingress_domain}"}}
    return {
        "applyTo": "NETWORK_FILTER",
        "match": {
            "context": "GATEWAY",
            "listener": {"filterChain": {"sni": f"*.{seed_ingress_domain}"}},
        },
        "patch": {
            "operation": "INSERT_FIRST",
            "value": {
                "name": rbac_name,
                "typed_config": {
                    "@type": _RBAC_TYPE.format("network"),
                    "rules": _inverse_policy_rules(
                        shoot_id,
                        server_name,
                        _rule_cidrs_to_principals(rule, always_allowed_cidrs),
                    ),
                    "stat_prefix": _STAT_PREFIX,
                },
            },
        },
    }


def create_vpn_config_patch(
    rule: ACLRule,
    short_shoot_id: str,
    technical_shoot_id: str,
    always_allowed_cidrs: Iterable[str],
) -> dict[str, Any]:
    """Return an HTTP filter patch for the VPN listener of the gateway."""
    rbac_name = "acl-vpn"
    # Dots anchor the match to the whole technical ID, so "foo" never
    # matches the traffic of "foo-bar".
    header = {
        "header": {
            "name": "reversed-vpn",
            "string_match": {"contains": f".{technical_shoot_id}."},
        }
    }
    return {
        "applyTo": "HTTP_FILTER",
        "match": {
            "context": "GATEWAY",
            "listener": {"name": "0.0.0.0_8132"},
        },
        "patch": {
            "operation": "INSERT_FIRST",
            "value": {
                "name": rbac_name,
                "typed_config": {
                    "@type": _RBAC_TYPE.format("http"),
                    "rules": _inverse_policy_rules(
                        short_shoot_id,
                        header,
                        _rule_cidrs_to_principals(rule, always_allowed_cidrs),
                    ),
                    "stat_prefix": _STAT_PREFIX,
                },
            },
        },
    }


def create_internal_filter_patch(
    rule: ACLRule,
    always_allowed_cidrs: Iterable[str],
    shoot_specific_cidrs: Iterable[str],
) -> dict[str, Any]:
    """Return a network filter entry for the shoot's own API server filter chain."""
    rbac_name = "acl-internal"
    principals = _rule_cidrs_to_principals(
        rule, [*always_allowed_cidrs, *shoot_specific_cidrs]
    )
    return {
        "name": f"{rbac_name}-{rule.type.lower()}",
        "typed_config": _typed_config(rbac_name, rule.action, "network", principals),
    }