"""Reconcile ACL extension objects into EnvoyFilter resources on the seed."""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from .envoyfilters import (
    ExtensionSpec,
    build_api_envoy_filter_spec,
    build_ingress_envoy_filter_spec,
    build_vpn_envoy_filter_spec,
)
from .helper import (
    get_provider_specific_allowed_cidrs,
    get_seed_specific_allowed_cidrs,
    get_shoot_node_specific_allowed_cidrs,
)
from .kube import (
    Cluster,
    Deployment,
    EnvoyFilter,
    Extension,
    Gateway,
    InMemoryClient,
    ManagedResource,
    NotFoundError,
    get_cluster_for_extension,
    get_infrastructure_for_extension,
)

RESOURCE_NAME_SEED = "acl-seed"
CHART_NAME_SEED = "seed"
# Deprecated: only removed from EnvoyFilters that still carry it.
HASH_ANNOTATION_NAME = "acl-ext-rule-hash"
GARDEN_NAMESPACE = "garden"
ISTIO_GATEWAY_NAME = "kube-apiserver"
INGRESS_GATEWAY_NAME = "nginx-ingress-controller"

_ENVOY_FILTER_API_VERSION = "networking.istio.io/v1alpha3"
_SEED_FILTERS = (
    ("apiEnvoyFilterSpec", "acl-api"),
    ("vpnEnvoyFilterSpec", "acl-vpn"),
    ("ingressEnvoyFilterSpec", "acl-ingress"),
)

_log = logging.getLogger(__name__)


class InvalidSpecError(ValueError):
    """Raised when an extension spec fails validation."""


class SpecRuleError(InvalidSpecError):
    def __init__(self) -> None:
        super().__init__("rule must be present")


class SpecActionError(InvalidSpecError):
    def __init__(self) -> None:
        super().__init__("action must either be 'ALLOW' or 'DENY'")


class SpecTypeError(InvalidSpecError):
    def __init__(self) -> None:
        super().__init__(
            "type must either be 'direct_remote_ip', 'remote_ip' or 'source_ip'"
        )


class SpecCIDRError(InvalidSpecError):
    def __init__(self) -> None:
        super().__init__("CIDRs must not be empty")


class NoAdvertisedAddressesError(RuntimeError):
    """Raised when the shoot has no advertised addresses yet."""

    def __init__(self) -> None:
        super().__init__(
            "advertised addresses are not available, likely because cluster "
            "creation has not yet completed"
        )


class IstioNamespaceError(RuntimeError):
    """Raised when the Istio namespace cannot be determined unambiguously."""

    def __init__(self, count: int) -> None:
        super().__init__(
            "no istio namespace could be selected, because the number of "
            f"deployments found is {count}"
        )
        self.count = count


@dataclass
class Config:
    """Configuration of the extension service."""

    chart_path: str = ""
    additional_allowed_cidrs: list[str] = field(default_factory=list)
    max_allowed_cidrs: int = 0


@dataclass
class ExtensionState:
    """State recorded in the status of an extension object."""

    istio_namespace: str | None = None

    @classmethod
    def from_json(cls, raw: str | bytes | None) -> ExtensionState:
        """Decode the state; an absent state yields an empty one."""
        if raw is None:
            return cls()
        data = json.loads(raw)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("extension state is not a JSON object")
        namespace = data.get("istioNamespace")
        if namespace is not None and not isinstance(namespace, str):
            raise ValueError("istioNamespace must be a string")
        return cls(istio_namespace=namespace)

    def to_json(self) -> str:
        """Encode the state as JSON."""
        return json.dumps({"istioNamespace": self.istio_namespace})


_VALID_ACTIONS = frozenset({"allow", "deny"})
_VALID_TYPES = frozenset({"direct_remote_ip", "remote_ip", "source_ip"})


def _check_cidr(cidr: str) -> None:
    address, sep, length = cidr.partition("/")
    if not sep or not length.isdigit():
        raise InvalidSpecError(f"invalid CIDR address: {cidr}")
    try:
        ipaddress.ip_interface(f"{address}/{int(length)}")
    except ValueError:
        raise InvalidSpecError(f"invalid CIDR address: {cidr}") from None


def validate_extension_spec(spec: ExtensionSpec) -> None:
    """Check that the spec has a rule with a valid action, type and CIDRs."""
    rule = spec.rule
    if rule is None:
        raise SpecRuleError()
    if rule.action.lower() not in _VALID_ACTIONS:
        raise SpecActionError()
    if rule.type.lower() not in _VALID_TYPES:
        raise SpecTypeError()
    if not rule.cidrs:
        raise SpecCIDRError()
    for cidr in rule.cidrs:
        _check_cidr(cidr)


def _decode_spec(extension: Extension) -> ExtensionSpec:
    if extension.provider_config is None:
        return ExtensionSpec()
    data = json.loads(extension.provider_config)
    if data is None:
        return ExtensionSpec()
    return ExtensionSpec.from_dict(data)


def _host_of(url: str) -> str:
    parts = url.split("//")
    if len(parts) < 2:
        raise ValueError(f"advertised address {url!r} has no scheme separator")
    return parts[1]


def _render_seed_manifest(values: Mapping[str, Any]) -> str:
    """Render the EnvoyFilter objects described by the chart values."""
    shoot_name = values["shootName"]
    namespace = values["targetNamespace"]
    documents = [
        {
            "apiVersion": _ENVOY_FILTER_API_VERSION,
            "kind": "EnvoyFilter",
            "metadata": {"name": f"{prefix}-{shoot_name}", "namespace": namespace},
            "spec": values[key],
        }
        for key, prefix in _SEED_FILTERS
        if values.get(key)
    ]
    return "".join(f"---\n{json.dumps(doc, sort_keys=True)}\n" for doc in documents)


class Actuator:
    """Reconciles and deletes the seed resources of ACL extension objects."""

    def __init__(self, client: InMemoryClient, config: Config | None = None) -> None:
        self.client = client
        self.config = config if config is not None else Config()

    def reconcile(self, extension: Extension) -> None:
        """Create or update the EnvoyFilters for the extension's shoot."""
        cluster = get_cluster_for_extension(self.client, extension)
        spec = _decode_spec(extension)
        validate_extension_spec(spec)

        try:
            istio_namespace, istio_labels = self._find_istio_namespace(extension)
        except NotFoundError:
            # Hibernated clusters may lack the Gateway the namespace comes from.
            if cluster.shoot.hibernated:
                return
            raise

        state = ExtensionState.from_json(extension.state)
        self.trigger_webhook(extension.namespace, istio_namespace)

        if not cluster.shoot.advertised_addresses:
            raise NoAdvertisedAddressesError()
        hosts = [_host_of(url) for url in cluster.shoot.advertised_addresses]

        always_allowed = [
            *get_seed_specific_allowed_cidrs(cluster.seed),
            *self.config.additional_allowed_cidrs,
        ]

        # Workerless shoots have no infrastructure and no node networks.
        shoot_specific: list[str] = []
        if cluster.shoot.workers:
            shoot_specific.extend(get_shoot_node_specific_allowed_cidrs(cluster.shoot))
            infra = get_infrastructure_for_extension(
                self.client, extension, cluster.shoot.name
            )
            shoot_specific.extend(get_provider_specific_allowed_cidrs(infra))

        self._create_seed_resources(
            extension.namespace,
            spec,
            cluster,
            hosts,
            shoot_specific,
            always_allowed,
            istio_namespace,
            istio_labels,
        )

        state.istio_namespace = istio_namespace
        self._update_status(extension, state)

    def delete(self, extension: Extension) -> None:
        """Remove the seed resources and resync the shoot's EnvoyFilter."""
        namespace = extension.namespace
        _log.info("Component is being deleted (namespace=%s)", namespace)
        self._delete_seed_resources(namespace)

        try:
            istio_namespace, _ = self._find_istio_namespace(extension)
        except NotFoundError:
            state = ExtensionState.from_json(extension.state)
            if state.istio_namespace is None:
                # Never fully reconciled, so there is nothing to clean up.
                return
            istio_namespace = state.istio_namespace

        self.trigger_webhook(namespace, istio_namespace)

    def force_delete(self, extension: Extension) -> None:
        """Delete the extension's resources."""
        self.delete(extension)

    def restore(self, extension: Extension) -> None:
        """Reconcile the extension after a restore."""
        self.reconcile(extension)

    def migrate(self, extension: Extension) -> None:
        """Delete the extension's resources before migration."""
        self.delete(extension)

    def trigger_webhook(self, shoot_name: str, istio_namespace: str) -> None:
        """Touch the shoot's EnvoyFilter so the mutating webhook runs again."""
        try:
            envoy_filter = self.client.get(EnvoyFilter, istio_namespace, shoot_name)
        except NotFoundError:
            return
        envoy_filter.annotations.pop(HASH_ANNOTATION_NAME, None)
        self.client.update(envoy_filter)

    def _create_seed_resources(
        self,
        namespace: str,
        spec: ExtensionSpec,
        cluster: Cluster,
        hosts: list[str],
        shoot_specific_cidrs: list[str],
        always_allowed_cidrs: list[str],
        istio_namespace: str,
        istio_labels: dict[str, str],
    ) -> None:
        allowed = [*always_allowed_cidrs, *shoot_specific_cidrs]
        values: dict[str, Any] = {
            "shootName": cluster.shoot.technical_id,
            "targetNamespace": istio_namespace,
            "apiEnvoyFilterSpec": build_api_envoy_filter_spec(
                spec.rule, hosts, allowed, istio_labels
            ),
            "vpnEnvoyFilterSpec": build_vpn_envoy_filter_spec(
                cluster, spec.rule, allowed, istio_labels
            ),
        }

        # Shoot ingresses are only reachable through Istio when this Gateway exists.
        try:
            default_labels = self.client.get(
                Gateway, GARDEN_NAMESPACE, INGRESS_GATEWAY_NAME
            ).selector
        except NotFoundError:
            pass
        else:
            values["ingressEnvoyFilterSpec"] = build_ingress_envoy_filter_spec(
                cluster, spec.rule, allowed, default_labels
            )

        _log.info("Component is being applied (namespace=%s)", namespace)
        self._create_managed_resource(
            namespace, RESOURCE_NAME_SEED, "seed", _render_seed_manifest(values)
        )

    def _create_managed_resource(
        self, namespace: str, name: str, class_name: str, manifest: str
    ) -> None:
        data = {CHART_NAME_SEED: manifest}
        try:
            existing = self.client.get(ManagedResource, namespace, name)
        except NotFoundError:
            self.client.create(
                ManagedResource(
                    name=name,
                    namespace=namespace,
                    class_name=class_name,
                    data=data,
                    keep_objects=False,
                )
            )
            return
        existing.class_name = class_name
        existing.data = data
        existing.keep_objects = False
        self.client.update(existing)

    def _delete_seed_resources(self, namespace: str) -> None:
        _log.info("Deleting managed resource for seed (namespace=%s)", namespace)
        try:
            self.client.delete(ManagedResource, namespace, RESOURCE_NAME_SEED)
        except NotFoundError:
            pass

    def _update_status(self, extension: Extension, state: ExtensionState) -> None:
        raw = state.to_json()
        extension.state = raw
        stored = self.client.get(Extension, extension.namespace, extension.name)
        stored.state = raw
        self.client.update(stored)
        extension.resource_version = stored.resource_version

    def _find_istio_namespace(self, extension: Extension) -> tuple[str, dict[str, str]]:
        """Find the namespace of the Istio deployment the shoot's Gateway selects."""
        gateway = self.client.get(Gateway, extension.namespace, ISTIO_GATEWAY_NAME)
        deployments = self.client.list(Deployment, gateway.selector)
        if len(deployments) != 1:
            raise IstioNamespaceError(len(deployments))
        return deployments[0].namespace, dict(gateway.selector)