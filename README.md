# envoyacl

`envoyacl` turns a per-cluster access control rule into Envoy RBAC filter
patches. A rule is a list of CIDR blocks, an action (`ALLOW` or `DENY`) and a
match type (`remote_ip`, `direct_remote_ip` or `source_ip`). The patches cover
three kinds of traffic:

- the cluster's API server endpoint (an SNI-matched network filter),
- the cluster's VPN tunnel (an HTTP filter on the `0.0.0.0_8132` listener),
- the seed's wildcard ingress domain, for hosts that belong to the cluster.

For an `ALLOW` rule, the CIDRs that must always be able to connect are
appended as `remote_ip` principals. These are the seed's node and pod networks,
the shoot's node network, the infrastructure's egress addresses (or, for
`openstack` infrastructures without them, the router IP as a `/32`) and any
extra CIDRs from the configuration. Without them the rule would cut off traffic
inside the cluster. Rule CIDRs that cannot be parsed are skipped when the
principals are built.

The package has no third-party dependencies. Install the `test` extra to run
the test suite with pytest.

## Modules

| Module | What it holds |
| --- | --- |
| `envoyacl.envoyfilters` | `ACLRule`, `ExtensionSpec` and the functions that build the EnvoyFilter specs and patches |
| `envoyacl.helper` | CIDR lookups for seeds, shoots and infrastructures, and `compute_short_shoot_id` |
| `envoyacl.kube` | Resource records (`Cluster`, `Shoot`, `Seed`, `Infrastructure`, `Extension`, `Gateway`, `Deployment`, `EnvoyFilter`, `ManagedResource`) and `InMemoryClient`, a small object store |
| `envoyacl.actuator` | `Actuator`, which reconciles and deletes the rendered filters; `Config`, `ExtensionState`, `validate_extension_spec` and its errors |
| `envoyacl.webhook` | `EnvoyFilterWebhook`, which patches a cluster's API server EnvoyFilter with the internal RBAC filter; `AdmissionResponse`, `PatchOperation`, `build_webhook_config` |
| `envoyacl.validator` | `ShootValidator`, which rejects shoots with more rule CIDRs than allowed; `AdmissionOptions` |
| `envoyacl.registration` | Predicates deciding when an Infrastructure event triggers a new reconciliation |
| `envoyacl.options` | `ExtensionOptions` and `parse_duration` for command line settings |

## Building filter specs

```python
from envoyacl.envoyfilters import ACLRule, build_api_envoy_filter_spec

rule = ACLRule.from_dict(
    {"cidrs": ["0.0.0.0/0"], "action": "ALLOW", "type": "source_ip"}
)

spec = build_api_envoy_filter_spec(
    rule,
    ["api.example.com", "api.internal.example.com"],
    ["10.250.0.0/16", "10.96.0.0/11"],
    {"app": "istio-ingressgateway", "istio": "ingressgateway"},
)
```

`spec` is a plain dictionary with a `workloadSelector` and one entry in
`configPatches`. The patch matches the filter chain by the first host and
inserts an RBAC filter named `acl-api` in front of it. The rule's CIDR becomes
a `source_ip` principal. Because the action is `ALLOW`, the two always-allowed
CIDRs follow as `remote_ip` principals.

An empty or missing host list raises `NoHostsGivenError`.

`build_vpn_envoy_filter_spec` and `build_ingress_envoy_filter_spec` take the
cluster, the rule, the always-allowed CIDRs and the gateway labels. The
ingress builder returns `None` when the seed has no ingress domain.
`create_internal_filter_patch` returns the single filter entry
(`acl-internal-<type>`) that the webhook puts in front of a cluster's
`tcp_proxy` filter.

## Validating a rule

```python
from envoyacl.actuator import validate_extension_spec
from envoyacl.envoyfilters import ExtensionSpec

spec = ExtensionSpec.from_dict(
    {"rule": {"cidrs": ["1.2.3.4/24"], "action": "DENY", "type": "remote_ip"}}
)
validate_extension_spec(spec)
```

A missing rule (`SpecRuleError`), an unknown action (`SpecActionError`) or
type (`SpecTypeError`), an empty CIDR list (`SpecCIDRError`) or a malformed
CIDR raises an error. All of them derive from `InvalidSpecError`. Action and
type are compared without regard to case.

## Reconciling with the actuator

`Actuator(client, config)` works on an `InMemoryClient`. `reconcile(extension)`:

1. reads the `Cluster` named after the extension's namespace,
2. decodes and validates the extension's provider config,
3. finds the Istio namespace: the `kube-apiserver` `Gateway` in the shoot
   namespace selects exactly one `Deployment`, whose namespace is used
   (otherwise `IstioNamespaceError`; a hibernated shoot without the gateway is
   left alone),
4. touches the shoot's `EnvoyFilter` through `trigger_webhook`, dropping the
   deprecated `acl-ext-rule-hash` annotation,
5. stores a `ManagedResource` named `acl-seed` whose `data["seed"]` holds the
   rendered `acl-api-<id>`, `acl-vpn-<id>` and, when the
   `garden/nginx-ingress-controller` gateway exists, `acl-ingress-<id>`
   EnvoyFilter documents as JSON, separated by `---`,
6. records the Istio namespace in the extension's state.

A shoot without advertised addresses raises `NoAdvertisedAddressesError`.
Workerless shoots (no workers) get no shoot node or infrastructure CIDRs.
`delete` removes the managed resource and triggers the webhook again, using
the recorded Istio namespace if the gateway is gone. `force_delete` and
`migrate` delete; `restore` reconciles.

## The admission webhook

```python
from envoyacl.webhook import EnvoyFilterWebhook

webhook = EnvoyFilterWebhook(client, additional_allowed_cidrs=["192.168.1.40/32"])
response = webhook.handle(envoy_filter_json)
```

EnvoyFilters whose name does not start with `shoot-`, and shoots without an
`acl` extension or whose extension is being deleted, are allowed unchanged.
Otherwise the response carries one JSON patch that replaces
`/spec/configPatches/0/patch/value/filters` with the ACL filter followed by
the original `tcp_proxy` filter. An invalid rule gives code 400; other
failures give code 500. `build_webhook_config(client_config)` returns the
`MutatingWebhookConfiguration` for EnvoyFilter create and update requests.

## Validating shoots

`ShootValidator(max_allowed_cidrs=50).validate(new, old)` takes a
`GardenShoot`. When its `acl` extension lists more rule CIDRs than allowed, it
raises `TooManyError` with `type` `FieldValueTooMany` and a `field` such as
`spec.extensions[0].providerConfig.rule.cidrs`.

## Options

`ExtensionOptions.from_args(argv)` reads `--healthcheck-sync-period`
(default `30s`, parsed by `parse_duration`), `--chart-path` (default
`charts`) and `--additional-allowed-cidrs` (comma separated, repeatable).
`apply(config)` copies the chart path and extra CIDRs into a `Config`.
`AdmissionOptions.add_arguments` registers `--maxAllowedCIDRs` (default 50).

## What the package does not do

- It installs no command; the options classes only fill an `argparse` parser.
- It talks to no cluster API. All objects live in `InMemoryClient`.
- It serves no HTTP: the webhook and validator are plain objects to call.
- It does not render charts or run health checks; the managed resource holds
  the EnvoyFilter documents as JSON text.