# nicoperator

Reconcile logic for deploying network components into a cluster: the OFED
driver container, the RDMA shared and SR-IOV device plugins, the Whereabouts
IPAM CNI and a privileged pod security policy.

Each component is a *state*. On `sync(cr, node_info)` a state renders its
manifests through a renderer, creates the objects or updates them when they
already exist, labels them with the state's name, and returns a `SyncState`
(`READY`, `NOT_READY`, `IGNORE` or `ERROR`). When its part of the policy is
absent, the state deletes the objects carrying its label instead. A failed
synchronisation raises `nicoperator.ofed.SyncError`, whose `state` attribute
holds the `SyncState` to report.

## Install

```
pip install .
```

## Modules

- `nicoperator.utils`: `get_files_with_suffix` (recursive search for
  manifest files by suffix), `get_network_attachment_def_link` and
  `get_pod_template_generation`.
- `nicoperator.skel`: `StateSkel`, the shared create/update/delete and
  readiness logic; `SyncState`; `NodeAttributes`; `supported_gvks` and
  `group_version_kind`; and the errors a client raises: `NotFoundError`,
  `AlreadyExistsError` and `NoMatchError`.
- `nicoperator.spec`: the policy model — `NicClusterPolicy`,
  `NicClusterPolicySpec`, `OFEDDriverSpec`, `DevicePluginSpec`,
  `ImageSpec`, `SecondaryNetworkSpec`, `PSPSpec`, `PodProbeSpec`,
  `EnvVar`, `ConfigMap`, `ConfigMapNameReference` and `ProxyConfig`.
- `nicoperator.volumes`: `AdditionalVolumeMounts`, which turns a
  `ConfigMap` into a `Volume` and one `VolumeMount` per key, plus
  `get_cert_config_path` and `get_repo_config_path` for `ubuntu` and
  `rhcos`.
- `nicoperator.ofed`: `StateOFED`, including driver image naming
  (`mofed_driver_image_name`, `parse_driver_version`), default probes,
  certificate and repository mounts, and Openshift cluster-wide proxy
  handling.
- `nicoperator.device_plugins`: `StateSharedDp` and `StateSriovDp`.
- `nicoperator.cluster_states`: `StateWhereaboutsCNI` and
  `StatePodSecurityPolicy`.

## What you supply

A **client**: any object with these methods over plain dictionary objects
in the Kubernetes wire layout:

- `get(obj) -> dict` — the current copy; raises `NotFoundError` if missing
- `create(obj)` — raises `AlreadyExistsError` if the object exists
- `update(obj)`
- `list(gvk, labels) -> list` — raises `NoMatchError` for unserved kinds
- `delete(obj)`

A **renderer**: any object with `render_objects(render_data) -> list[dict]`.

A **node info provider** (for `StateOFED`, `StateSharedDp`, `StateSriovDp`):
any object with `get_nodes_attributes(labels) -> list[NodeAttributes]`,
where attribute keys are `cpuArch`, `osName` and `osVer`.

## Example

```python
from nicoperator.ofed import StateOFED
from nicoperator.spec import NicClusterPolicy, NicClusterPolicySpec, OFEDDriverSpec, ProxyConfig

state = StateOFED(client=None, renderer=None, namespace="nvidia-network-operator")
cr = NicClusterPolicy(
    spec=NicClusterPolicySpec(
        ofed_driver=OFEDDriverSpec(image="mofed", repository="nvcr.io/mellanox", version="5.7-1.0.0.0"),
    )
)
node_attr = {"cpuArch": "amd64", "osName": "ubuntu", "osVer": "20.04"}
print(state.mofed_driver_image_name(cr, node_attr))
# nvcr.io/mellanox/mofed:5.7-1.0.0.0-ubuntu20.04-amd64

state.set_env_from_cluster_wide_proxy(cr, ProxyConfig(http_proxy="http://proxy.example.com:3128"))
print([(e.name, e.value) for e in cr.spec.ofed_driver.env])
# [('HTTP_PROXY', 'http://proxy.example.com:3128'), ('http_proxy', 'http://proxy.example.com:3128')]
```

Versions before `5.7-0.1.2.0` use the older image name layout
`<repo>/<image>-<version>:<os><ver>-<arch>`; versions that do not parse use
the newer one.

## What this package does not do

It holds no manifest templates and no template renderer, no client that
talks to a real cluster API, and no controller loop or command that watches
resources and calls `sync`. Those are supplied by the caller as described
above.

## Tests

```
pip install .[test]
pytest
```