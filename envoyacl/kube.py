"""In-memory object model and client for the cluster resources the extension works with."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Iterable, TypeVar


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        location = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {location!r} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ClusterIncompleteError(ValueError):
    """Raised when a Cluster object lacks its seed or shoot."""

    def __init__(self) -> None:
        super().__init__("cluster seed or cluster shoot is missing")


@dataclass
class _Object:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    kind: ClassVar[str] = "Object"


@dataclass
class Seed:
    """Network settings of the seed cluster."""

    nodes: str | None = None
    pods: str = ""
    ingress_domain: str | None = None


@dataclass
class Shoot:
    """The parts of a shoot cluster the extension reads."""

    name: str = ""
    technical_id: str = ""
    nodes: str | None = None
    pods: str | None = None
    advertised_addresses: list[str] = field(default_factory=list)
    workers: list[str] = field(default_factory=list)
    hibernated: bool = False


@dataclass
class Cluster(_Object):
    """Cluster-scoped object named after the shoot namespace."""

    seed: Seed | None = None
    shoot: Shoot | None = None

    kind: ClassVar[str] = "Cluster"


@dataclass
class Infrastructure(_Object):
    type: str = ""
    egress_cidrs: list[str] = field(default_factory=list)
    provider_status: str | bytes | None = None

    kind: ClassVar[str] = "Infrastructure"


@dataclass
class Extension(_Object):
    type: str = ""
    provider_config: str | bytes | None = None
    state: str | bytes | None = None
    deletion_timestamp: datetime | None = None

    kind: ClassVar[str] = "Extension"


@dataclass
class Gateway(_Object):
    selector: dict[str, str] = field(default_factory=dict)

    kind: ClassVar[str] = "Gateway"


@dataclass
class Deployment(_Object):
    kind: ClassVar[str] = "Deployment"


@dataclass
class EnvoyFilter(_Object):
    annotations: dict[str, str] = field(default_factory=dict)
    spec: dict = field(default_factory=dict)

    kind: ClassVar[str] = "EnvoyFilter"


@dataclass
class ManagedResource(_Object):
    class_name: str = ""
    data: dict[str, str] = field(default_factory=dict)
    keep_objects: bool = False

    kind: ClassVar[str] = "ManagedResource"


_T = TypeVar("_T", bound=_Object)


class InMemoryClient:
    """A small object store with get/create/update/delete/list semantics."""

    def __init__(self, objects: Iterable[_Object] = ()) -> None:
        self._store: dict[tuple[str, str, str], _Object] = {}
        self._version = 0
        for obj in objects:
            self.create(obj)

    @staticmethod
    def _key(kind: type[_Object], namespace: str, name: str) -> tuple[str, str, str]:
        return (kind.kind, namespace, name)

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def create(self, obj: _Object) -> _Object:
        """Store a new object; raise ValueError if it already exists."""
        key = self._key(type(obj), obj.namespace, obj.name)
        if key in self._store:
            raise ValueError(f"{obj.kind} {obj.namespace}/{obj.name} already exists")
        obj.resource_version = self._next_version()
        self._store[key] = copy.deepcopy(obj)
        return obj

    def get(self, kind: type[_T], namespace: str, name: str) -> _T:
        """Return a copy of the stored object."""
        try:
            stored = self._store[self._key(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(kind.kind, namespace, name) from None
        return copy.deepcopy(stored)  # type: ignore[return-value]

    def update(self, obj: _Object) -> _Object:
        """Replace an existing object."""
        key = self._key(type(obj), obj.namespace, obj.name)
        if key not in self._store:
            raise NotFoundError(obj.kind, obj.namespace, obj.name)
        obj.resource_version = self._next_version()
        self._store[key] = copy.deepcopy(obj)
        return obj

    def delete(self, kind: type[_Object], namespace: str, name: str) -> None:
        """Remove an object."""
        try:
            del self._store[self._key(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(kind.kind, namespace, name) from None

    def list(self, kind: type[_T], labels: dict[str, str] | None = None) -> list[_T]:
        """Return copies of all objects of a kind whose labels include the given ones."""
        wanted = labels or {}
        found = [
            obj
            for (kind_name, _, _), obj in self._store.items()
            if kind_name == kind.kind
            and all(obj.labels.get(k) == v for k, v in wanted.items())
        ]
        found.sort(key=lambda o: (o.namespace, o.name))
        return [copy.deepcopy(o) for o in found]  # type: ignore[misc]


def get_cluster_for_extension(client: InMemoryClient, extension: Extension) -> Cluster:
    """Return the Cluster belonging to the extension's namespace."""
    cluster = client.get(Cluster, "", extension.namespace)
    if cluster.seed is None or cluster.shoot is None:
        raise ClusterIncompleteError()
    return cluster


def get_infrastructure_for_extension(
    client: InMemoryClient, extension: Extension, shoot_name: str
) -> Infrastructure:
    """Return the Infrastructure object of the shoot in the extension's namespace."""
    return client.get(Infrastructure, extension.namespace, shoot_name)