import json

import pytest

from envoyacl.actuator import (
    HASH_ANNOTATION_NAME,
    RESOURCE_NAME_SEED,
    Actuator,
    Config,
    ExtensionState,
    InvalidSpecError,
    IstioNamespaceError,
    NoAdvertisedAddressesError,
    SpecActionError,
    SpecCIDRError,
    SpecRuleError,
    SpecTypeError,
    validate_extension_spec,
)
from envoyacl.envoyfilters import ACLRule, ExtensionSpec
from envoyacl.kube import (
    Cluster,
    Deployment,
    EnvoyFilter,
    Extension,
    Gateway,
    InMemoryClient,
    Infrastructure,
    ManagedResource,
    NotFoundError,
    Seed,
    Shoot,
)

SHOOT_NS = "shoot--project--test1"
SHOOT_NS_2 = "shoot--project--test2"
ISTIO_NS = "istio-ingress-namespace1"
ISTIO_NS_2 = "istio-ingress-namespace2"


def _selector(istio_ns):
    return {"app": "istio-ingressgateway", "istio": istio_ns}


def _cluster(shoot_ns, **shoot_kwargs):
    shoot = Shoot(
        name=shoot_ns,
        technical_id=shoot_ns,
        advertised_addresses=["https://test"],
        **shoot_kwargs,
    )
    seed = Seed(nodes="10.250.0.0/24", pods="10.10.0.0/24", ingress_domain="ingress.test")
    return Cluster(name=shoot_ns, seed=seed, shoot=shoot)


def _setup_shoot(client, shoot_ns, istio_ns, **shoot_kwargs):
    client.create(EnvoyFilter(name=shoot_ns, namespace=istio_ns))
    client.create(Gateway(name="kube-apiserver", namespace=shoot_ns, selector=_selector(istio_ns)))
    client.create(_cluster(shoot_ns, **shoot_kwargs))
    client.create(Infrastructure(name=shoot_ns, namespace=shoot_ns))


def _add_istio_deployment(client, istio_ns):
    client.create(
        Deployment(name="istio-ingressgateway", namespace=istio_ns, labels=_selector(istio_ns))
    )


def _extension(client, shoot_ns, provider_config=None):
    if provider_config is None:
        spec = ExtensionSpec(rule=ACLRule(cidrs=["1.2.3.4/24"], action="ALLOW", type="remote_ip"))
        provider_config = json.dumps(spec.to_dict())
    ext = Extension(name="acl", namespace=shoot_ns, type="acl", provider_config=provider_config)
    client.create(ext)
    return ext


def _seed_data(client, shoot_ns=SHOOT_NS):
    return client.get(ManagedResource, shoot_ns, RESOURCE_NAME_SEED).data["seed"]


@pytest.fixture
def client():
    c = InMemoryClient()
    _setup_shoot(c, SHOOT_NS, ISTIO_NS)
    _add_istio_deployment(c, ISTIO_NS)
    return c


@pytest.fixture
def actuator(client):
    return Actuator(client, Config(chart_path="charts"))


def test_reconcile_creates_api_and_vpn_filters(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    data = _seed_data(client)
    assert "1.2.3.4" in data
    assert "acl-api-" + SHOOT_NS in data
    assert "acl-vpn-" + SHOOT_NS in data


def test_reconcile_records_istio_namespace(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    stored = client.get(Extension, SHOOT_NS, "acl")
    assert stored.state is not None
    assert ExtensionState.from_json(stored.state).istio_namespace == ISTIO_NS


def test_reconcile_includes_ingress_filter_when_gateway_exists(client, actuator):
    client.create(
        Gateway(
            name="nginx-ingress-controller",
            namespace="garden",
            selector={"app": "istio-ingressgateway", "istio": "ingressgateway"},
        )
    )
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    assert "acl-ingress-" + SHOOT_NS in _seed_data(client)


def test_reconcile_omits_ingress_filter_without_gateway(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    assert "acl-ingress-" + SHOOT_NS not in _seed_data(client)


def test_reconcile_ignores_other_extension_without_gateway(client, actuator):
    _setup_shoot(client, SHOOT_NS_2, ISTIO_NS)
    ext1 = _extension(client, SHOOT_NS)
    _extension(client, SHOOT_NS_2, provider_config="{}")
    client.delete(Gateway, SHOOT_NS_2, "kube-apiserver")

    actuator.reconcile(ext1)

    data = _seed_data(client)
    assert "1.2.3.4" in data
    assert ISTIO_NS in data
    assert "acl-vpn-" + SHOOT_NS in data


def test_switching_istio_namespace(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    data = _seed_data(client)
    assert "1.2.3.4" in data
    assert ISTIO_NS in data

    client.delete(Gateway, SHOOT_NS, "kube-apiserver")
    client.create(Gateway(name="kube-apiserver", namespace=SHOOT_NS, selector=_selector(ISTIO_NS_2)))
    _add_istio_deployment(client, ISTIO_NS_2)
    client.create(EnvoyFilter(name=SHOOT_NS, namespace=ISTIO_NS_2))

    ext = client.get(Extension, SHOOT_NS, "acl")
    actuator.reconcile(ext)

    data = _seed_data(client)
    assert ISTIO_NS_2 in data
    assert "acl-vpn-" + SHOOT_NS in data
    assert ISTIO_NS not in data
    assert ExtensionState.from_json(client.get(Extension, SHOOT_NS, "acl").state).istio_namespace == ISTIO_NS_2


def test_delete_hibernated_cluster_removes_managed_resource(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    assert client.get(ManagedResource, SHOOT_NS, RESOURCE_NAME_SEED).class_name == "seed"

    client.delete(Gateway, SHOOT_NS, "kube-apiserver")
    actuator.delete(ext)

    with pytest.raises(NotFoundError):
        client.get(ManagedResource, SHOOT_NS, RESOURCE_NAME_SEED)


def test_delete_with_gateway_touches_envoy_filter(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    before = client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS).resource_version
    actuator.delete(ext)
    assert client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS).resource_version > before


def test_delete_never_reconciled_without_gateway(client, actuator):
    ext = _extension(client, SHOOT_NS)
    client.delete(Gateway, SHOOT_NS, "kube-apiserver")
    before = client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS).resource_version
    actuator.force_delete(ext)
    assert client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS).resource_version == before


def test_migrate_deletes_managed_resource(client, actuator):
    ext = _extension(client, SHOOT_NS)
    actuator.restore(ext)
    actuator.migrate(ext)
    with pytest.raises(NotFoundError):
        client.get(ManagedResource, SHOOT_NS, RESOURCE_NAME_SEED)


def test_trigger_webhook_removes_hash_annotation():
    client = InMemoryClient()
    client.create(
        EnvoyFilter(
            name=SHOOT_NS,
            namespace=ISTIO_NS,
            annotations={HASH_ANNOTATION_NAME: "should-be-removed"},
        )
    )
    Actuator(client).trigger_webhook(SHOOT_NS, ISTIO_NS)
    assert HASH_ANNOTATION_NAME not in client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS).annotations


def test_trigger_webhook_without_filter_creates_nothing():
    client = InMemoryClient()
    Actuator(client).trigger_webhook(SHOOT_NS, ISTIO_NS)
    with pytest.raises(NotFoundError):
        client.get(EnvoyFilter, ISTIO_NS, SHOOT_NS)


def test_reconcile_hibernated_without_gateway_does_nothing():
    client = InMemoryClient()
    client.create(_cluster(SHOOT_NS, hibernated=True))
    ext = _extension(client, SHOOT_NS)
    Actuator(client).reconcile(ext)
    with pytest.raises(NotFoundError):
        client.get(ManagedResource, SHOOT_NS, RESOURCE_NAME_SEED)


def test_reconcile_not_hibernated_without_gateway_raises():
    client = InMemoryClient()
    client.create(_cluster(SHOOT_NS))
    ext = _extension(client, SHOOT_NS)
    with pytest.raises(NotFoundError):
        Actuator(client).reconcile(ext)


def test_reconcile_ambiguous_istio_namespace(client, actuator):
    client.create(Deployment(name="second", namespace="other", labels=_selector(ISTIO_NS)))
    ext = _extension(client, SHOOT_NS)
    with pytest.raises(IstioNamespaceError):
        actuator.reconcile(ext)


def test_reconcile_without_advertised_addresses():
    client = InMemoryClient()
    _setup_shoot(client, SHOOT_NS, ISTIO_NS)
    _add_istio_deployment(client, ISTIO_NS)
    cluster = client.get(Cluster, "", SHOOT_NS)
    cluster.shoot.advertised_addresses = []
    client.update(cluster)
    ext = _extension(client, SHOOT_NS)
    with pytest.raises(NoAdvertisedAddressesError):
        Actuator(client).reconcile(ext)


def test_reconcile_invalid_spec_raises(client, actuator):
    ext = _extension(client, SHOOT_NS, provider_config="{}")
    with pytest.raises(SpecRuleError):
        actuator.reconcile(ext)


def test_reconcile_adds_additional_allowed_cidrs(client):
    actuator = Actuator(client, Config(additional_allowed_cidrs=["192.168.1.40/32"]))
    ext = _extension(client, SHOOT_NS)
    actuator.reconcile(ext)
    assert "192.168.1.40" in _seed_data(client)


def test_reconcile_with_workers_uses_infrastructure_cidrs():
    client = InMemoryClient()
    client.create(EnvoyFilter(name=SHOOT_NS, namespace=ISTIO_NS))
    client.create(Gateway(name="kube-apiserver", namespace=SHOOT_NS, selector=_selector(ISTIO_NS)))
    client.create(_cluster(SHOOT_NS, workers=["pool"], nodes="10.77.0.0/16"))
    client.create(Infrastructure(name=SHOOT_NS, namespace=SHOOT_NS, egress_cidrs=["52.53.54.55/32"]))
    _add_istio_deployment(client, ISTIO_NS)
    ext = _extension(client, SHOOT_NS)
    Actuator(client).reconcile(ext)
    data = _seed_data(client)
    assert "52.53.54.55" in data
    assert "10.77.0.0" in data


def test_reconcile_with_workers_needs_infrastructure():
    client = InMemoryClient()
    client.create(Gateway(name="kube-apiserver", namespace=SHOOT_NS, selector=_selector(ISTIO_NS)))
    client.create(_cluster(SHOOT_NS, workers=["pool"]))
    _add_istio_deployment(client, ISTIO_NS)
    ext = _extension(client, SHOOT_NS)
    with pytest.raises(NotFoundError):
        Actuator(client).reconcile(ext)


def _spec(action, rule_type, cidr):
    return ExtensionSpec(rule=ACLRule(cidrs=[cidr], action=action, type=rule_type))


def test_validate_valid_rule():
    spec = _spec("DENY", "source_ip", "0.0.0.0/0")
    assert validate_extension_spec(spec) is None


def test_validate_without_rule():
    with pytest.raises(SpecRuleError):
        validate_extension_spec(ExtensionSpec())


def test_validate_invalid_type():
    with pytest.raises(SpecTypeError):
        validate_extension_spec(_spec("DENY", "nonexistent", "0.0.0.0/0"))


def test_validate_invalid_action():
    with pytest.raises(SpecActionError):
        validate_extension_spec(_spec("NONEXISTENT", "remote_ip", "0.0.0.0/0"))


def test_validate_invalid_cidr():
    with pytest.raises(InvalidSpecError):
        validate_extension_spec(_spec("DENY", "remote_ip", "n0n3x1st3/nt"))


def test_validate_without_cidrs():
    spec = ExtensionSpec(rule=ACLRule(action="DENY", type="remote_ip"))
    with pytest.raises(SpecCIDRError):
        validate_extension_spec(spec)


def test_extension_state_round_trip():
    state = ExtensionState(istio_namespace="istio-ingress")
    assert ExtensionState.from_json(state.to_json()) == state
    assert json.loads(state.to_json()) == {"istioNamespace": "istio-ingress"}


def test_extension_state_from_none_is_empty():
    assert ExtensionState.from_json(None).istio_namespace is None