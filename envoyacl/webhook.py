"""Mutating admission webhook that injects ACL filters into shoot EnvoyFilters."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Iterable, Mapping

from .actuator import InvalidSpecError, validate_extension_spec
from .envoyfilters import ExtensionSpec, create_internal_filter_patch
from .helper import (
    TECHNICAL_ID_PREFIX,
    get_provider_specific_allowed_cidrs,
    get_seed_specific_allowed_cidrs,
    get_shoot_node_specific_allowed_cidrs,
    get_shoot_pod_specific_allowed_cidrs,
)
from .kube import (
    Extension,
    InMemoryClient,
    NotFoundError,
    get_cluster_for_extension,
    get_infrastructure_for_extension,
)

EXTENSION_NAME = "acl"
WEBHOOK_NAME = "acl-webhook"
WEBHOOK_PATH = "/mutate"
FILTERS_PATCH_PATH = "/spec/configPatches/0/patch/value/filters"
TCP_PROXY_FILTER_NAME = "envoy.filters.network.tcp_proxy"

_EXPECTED_ERRORS = (LookupError, ValueError, TypeError)


@dataclass(frozen=True)
class PatchOperation:
    """A single JSON patch operation."""

    operation: str
    path: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON patch form of the operation."""
        return {"op": self.operation, "path": self.path, "value": self.value}


@dataclass
class AdmissionResponse:
    """The answer to an admission request."""

    allowed: bool
    code: int = HTTPStatus.OK
    message: str = ""
    patches: list[PatchOperation] = field(default_factory=list)
    patch_type: str | None = None

    @classmethod
    def allow(cls, message: str) -> AdmissionResponse:
        """Allow the request without changes."""
        return cls(allowed=True, code=HTTPStatus.OK, message=message)

    @classmethod
    def errored(cls, code: int, error: BaseException | str) -> AdmissionResponse:
        """Reject the request because of an error."""
        return cls(allowed=False, code=int(code), message=str(error))

    @property
    def patch(self) -> bytes:
        """The JSON patch document, empty when there are no patches."""
        if not self.patches:
            return b""
        return json.dumps([p.to_dict() for p in self.patches]).encode()

    def to_dict(self) -> dict[str, Any]:
        """Return the response in the shape of an AdmissionReview response."""
        result: dict[str, Any] = {
            "allowed": self.allowed,
            "status": {"code": int(self.code), "message": self.message},
        }
        if self.patches:
            result["patch"] = [p.to_dict() for p in self.patches]
            result["patchType"] = self.patch_type
        return result


def _find_original_filter(original: Any) -> dict[str, Any]:
    """Return the tcp_proxy filter of the first config patch of an EnvoyFilter."""
    try:
        filters = original["spec"]["configPatches"][0]["patch"]["value"]["filters"]
    except (KeyError, IndexError, TypeError):
        raise ValueError("the EnvoyFilter has no filters to patch") from None
    if not isinstance(filters, list):
        raise ValueError("the EnvoyFilter filters are not a list")
    for entry in filters:
        if isinstance(entry, dict) and entry.get("name") == TCP_PROXY_FILTER_NAME:
            return entry
    raise ValueError(f"the EnvoyFilter has no {TCP_PROXY_FILTER_NAME} filter")


def _with_filter_patches(filters: list[dict[str, Any]]) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=True,
        patches=[PatchOperation("replace", FILTERS_PATCH_PATH, filters)],
        patch_type="JSONPatch",
    )


class EnvoyFilterWebhook:
    """Handles admission requests for EnvoyFilters of shoot API servers."""

    def __init__(
        self,
        client: InMemoryClient,
        additional_allowed_cidrs: Iterable[str] = (),
    ) -> None:
        self.client = client
        self.additional_allowed_cidrs = list(additional_allowed_cidrs)

    def handle(self, raw_object: str | bytes) -> AdmissionResponse:
        """Answer an admission request for the given EnvoyFilter JSON."""
        try:
            obj = json.loads(raw_object)
            name = obj["metadata"]["name"]
            if not isinstance(name, str):
                raise TypeError("metadata.name must be a string")
        except _EXPECTED_ERRORS as err:
            return AdmissionResponse.errored(HTTPStatus.INTERNAL_SERVER_ERROR, err)
        text = raw_object.decode() if isinstance(raw_object, bytes) else raw_object
        return self.create_admission_response(name, text)

    def create_admission_response(
        self, filter_name: str, original_object_json: str
    ) -> AdmissionResponse:
        """Patch the ACL filter in front of the EnvoyFilter's tcp_proxy filter."""
        if not filter_name.startswith(TECHNICAL_ID_PREFIX):
            return AdmissionResponse.allow(
                "requested object is not an EnvoyFilter managed by this webhook"
            )

        try:
            extension = self.client.get(Extension, filter_name, EXTENSION_NAME)
        except NotFoundError:
            extension = None
        if extension is None or extension.deletion_timestamp is not None:
            return AdmissionResponse.allow(
                f"extension {EXTENSION_NAME} not enabled for shoot {filter_name} "
                "or is in deletion"
            )

        try:
            spec = self._decode_spec(extension)
        except _EXPECTED_ERRORS as err:
            return AdmissionResponse.errored(HTTPStatus.INTERNAL_SERVER_ERROR, err)

        try:
            validate_extension_spec(spec)
        except InvalidSpecError as err:
            return AdmissionResponse.errored(HTTPStatus.BAD_REQUEST, err)

        try:
            always_allowed, shoot_specific = self._allowed_cidrs(extension)
            original_filter = _find_original_filter(json.loads(original_object_json))
            filter_patch = create_internal_filter_patch(
                spec.rule, always_allowed, shoot_specific
            )
        except _EXPECTED_ERRORS as err:
            return AdmissionResponse.errored(HTTPStatus.INTERNAL_SERVER_ERROR, err)

        # The original filter must stay last in the chain.
        return _with_filter_patches([filter_patch, original_filter])

    @staticmethod
    def _decode_spec(extension: Extension) -> ExtensionSpec:
        if extension.provider_config is None:
            raise ValueError("extension has no provider config")
        return ExtensionSpec.from_dict(json.loads(extension.provider_config))

    def _allowed_cidrs(self, extension: Extension) -> tuple[list[str], list[str]]:
        cluster = get_cluster_for_extension(self.client, extension)
        always_allowed = [
            *get_seed_specific_allowed_cidrs(cluster.seed),
            *self.additional_allowed_cidrs,
        ]
        shoot_specific: list[str] = []
        # Workerless shoots have no infrastructure and no node or pod networks.
        if cluster.shoot.workers:
            shoot_specific.extend(get_shoot_node_specific_allowed_cidrs(cluster.shoot))
            shoot_specific.extend(get_shoot_pod_specific_allowed_cidrs(cluster.shoot))
            infra = get_infrastructure_for_extension(
                self.client, extension, cluster.shoot.name
            )
            shoot_specific.extend(get_provider_specific_allowed_cidrs(infra))
        return always_allowed, shoot_specific


def build_webhook_config(client_config: Mapping[str, Any]) -> dict[str, Any]:
    """Return the MutatingWebhookConfiguration routing EnvoyFilters to this webhook."""
    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": EXTENSION_NAME},
        "webhooks": [
            {
                "name": "acl.stackit.cloud",
                "clientConfig": dict(client_config),
                "rules": [
                    {
                        "operations": ["CREATE", "UPDATE"],
                        "apiGroups": ["networking.istio.io"],
                        "apiVersions": ["v1alpha3"],
                        "resources": ["envoyfilters"],
                    }
                ],
                "failurePolicy": "Fail",
                "sideEffects": "None",
                "timeoutSeconds": 5,
                "admissionReviewVersions": ["v1"],
            }
        ],
    }