"""State that deploys the OFED driver container into the cluster."""

from __future__ import annotations

import copy
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from nicoperator.skel import (
    AlreadyExistsError,
    NoMatchError,
    NodeAttributes,
    NotFoundError,
    StateSkel,
    SyncState,
    group_version_kind,
)
from nicoperator.spec import (
    ConfigMap,
    ConfigMapNameReference,
    EnvVar,
    NicClusterPolicy,
    PodProbeSpec,
    ProxyConfig,
)
from nicoperator.volumes import (
    OCP_TRUSTED_CA_BUNDLE_FILE_NAME,
    OCP_TRUSTED_CA_CONFIG_MAP_NAME,
    AdditionalVolumeMounts,
    get_cert_config_path,
    get_repo_config_path,
)

log = logging.getLogger(__name__)

STATE_OFED_NAME = "state-OFED"
STATE_OFED_DESCRIPTION = "OFED driver deployed in the cluster"

# First driver version whose container image uses the new name format.
NEW_MOFED_IMAGE_FORMAT_VERSION = "5.7-0.1.2.0"
# <repo>/<image-name>:<driver-version>-<os-name><os-ver>-<cpu-arch>
MOFED_IMAGE_NEW_FORMAT = "{repo}/{image}:{version}-{os_name}{os_ver}-{arch}"
# <repo>/<image-name>-<driver-version>:<os-name><os-ver>-<cpu-arch>
MOFED_IMAGE_OLD_FORMAT = "{repo}/{image}-{version}:{os_name}{os_ver}-{arch}"

OCP_TRUSTED_CA_CHECK_INTERVAL = 0.03
OCP_TRUSTED_CA_CHECK_TIMEOUT = 15.0

ENV_HTTP_PROXY = "HTTP_PROXY"
ENV_HTTPS_PROXY = "HTTPS_PROXY"
ENV_NO_PROXY = "NO_PROXY"

NODE_LABEL_MLNX_NIC = "feature.node.kubernetes.io/pci-15b3.present"
ATTR_CPU_ARCH = "cpuArch"
ATTR_OS_NAME = "osName"
ATTR_OS_VER = "osVer"

INJECT_TRUSTED_CA_LABEL = "config.openshift.io/inject-trusted-cabundle"


class NodeInfoProvider(Protocol):
    def get_nodes_attributes(self, labels: Mapping[str, str]) -> list[NodeAttributes]: ...


class SyncError(RuntimeError):
    """A synchronisation failed; ``state`` is what the state should report."""

    def __init__(self, message: str, state: SyncState = SyncState.NOT_READY):
        super().__init__(message)
        self.state = state


_SEMVER = re.compile(
    r"v?(?P<major>[0-9]+)(?:\.(?P<minor>[0-9]+))?(?:\.(?P<patch>[0-9]+))?"
    r"(?:-(?P<pre>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<meta>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
)


def parse_driver_version(version: str) -> tuple:
    """Parse a loose semantic version into a key ordered by version precedence.

    Missing minor and patch parts count as zero. Build metadata is ignored.
    Raises ValueError when ``version`` is not a semantic version.
    """
    match = _SEMVER.fullmatch(version)
    if match is None:
        raise ValueError(f"invalid semantic version {version!r}")
    major = int(match["major"])
    minor = int(match["minor"] or 0)
    patch = int(match["patch"] or 0)
    pre = match["pre"]
    if pre is None:
        pre_key: tuple = (1,)
    else:
        idents = []
        for ident in pre.split("."):
            if ident.isdigit():
                if len(ident) > 1 and ident.startswith("0"):
                    raise ValueError(f"invalid prerelease identifier {ident!r} in {version!r}")
                idents.append((0, int(ident), ""))
            else:
                idents.append((1, 0, ident))
        pre_key = (0, tuple(idents))
    return (major, minor, patch, pre_key)


def set_controller_reference(owner: NicClusterPolicy, obj: dict[str, Any]) -> None:
    """Record ``owner`` as the managing controller of ``obj``."""
    metadata = obj.setdefault("metadata", {})
    if owner.namespace:
        obj_namespace = metadata.get("namespace") or ""
        if not obj_namespace:
            raise ValueError(
                f"cluster-scoped resource must not have a namespace-scoped owner, "
                f"owner's namespace {owner.namespace}"
            )
        if obj_namespace != owner.namespace:
            raise ValueError(
                f"cross-namespace owner references are disallowed, owner's namespace "
                f"{owner.namespace}, obj's namespace {obj_namespace}"
            )
    owner_group = owner.api_version.split("/")[0] if "/" in owner.api_version else ""
    reference = {
        "apiVersion": owner.api_version,
        "kind": owner.kind,
        "name": owner.name,
        "uid": owner.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }
    references = list(metadata.get("ownerReferences") or [])
    for existing in references:
        if existing.get("controller") and existing.get("uid") != owner.uid:
            raise ValueError(
                f"object is already owned by another {existing.get('kind')} "
                f"controller {existing.get('name')}"
            )

    def same_owner(ref: Mapping[str, Any]) -> bool:
        api_version = ref.get("apiVersion") or ""
        group = api_version.split("/")[0] if "/" in api_version else ""
        return group == owner_group and ref.get("kind") == owner.kind and ref.get("name") == owner.name

    for position, existing in enumerate(references):
        if same_owner(existing):
            references[position] = reference
            break
    else:
        references.append(reference)
    metadata["ownerReferences"] = references


def _config_map_from_object(obj: Mapping[str, Any]) -> ConfigMap:
    metadata = obj.get("metadata") or {}
    return ConfigMap(
        name=metadata.get("name") or "",
        namespace=metadata.get("namespace") or "",
        data=dict(obj.get("data") or {}),
        labels=dict(metadata.get("labels") or {}),
    )


def _config_map_query(namespace: str, name: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
    }


@dataclass
class OfedRuntimeSpec:
    """Values known only at run time that the OFED manifests need."""

    namespace: str
    cpu_arch: str
    os_name: str
    os_ver: str
    mofed_image_name: str


class StateOFED(StateSkel):
    """Deploys the OFED driver DaemonSet and its supporting objects."""

    def __init__(self, client: Any, renderer: Any, namespace: str):
        super().__init__(STATE_OFED_NAME, STATE_OFED_DESCRIPTION, client, renderer, namespace)
        self.poll_interval = OCP_TRUSTED_CA_CHECK_INTERVAL
        self.poll_timeout = OCP_TRUSTED_CA_CHECK_TIMEOUT

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider]) -> SyncState:
        """Bring the cluster in line with the OFED part of ``cr``."""
        log.info("Sync Custom resource: state %s, name %s, namespace %s",
                 self.name, cr.name, cr.namespace)
        if cr.spec.ofed_driver is None:
            return self.handle_state_objects_deletion()
        if node_info is None:
            raise SyncError("unexpected state, catalog does not provide node information",
                            SyncState.ERROR)
        try:
            self.handle_openshift_cluster_wide_proxy_config(cr)
        except Exception as err:
            raise SyncError(f"failed to handle Openshift cluster-wide proxy settings: {err}") from err
        try:
            objs = self.get_manifest_objects(cr, node_info)
        except Exception as err:
            raise SyncError(f"failed to create k8s objects from manifest: {err}") from err
        if not objs:
            return SyncState.NOT_READY
        try:
            self.create_or_update_objs(lambda obj: set_controller_reference(cr, obj), objs)
        except Exception as err:
            raise SyncError(f"failed to create/update objects: {err}") from err
        try:
            return self.get_sync_state(objs)
        except Exception as err:
            raise SyncError(f"failed to get sync state: {err}") from err

    def watch_sources(self) -> dict[str, Any]:
        """Return the kinds to watch for this state, keyed by kind name."""
        return {"DaemonSet": group_version_kind({"apiVersion": "apps/v1", "kind": "DaemonSet"})}

    def handle_openshift_cluster_wide_proxy_config(self, cr: NicClusterPolicy) -> None:
        """Fill proxy env and CA settings of ``cr`` from the Openshift cluster-wide proxy.

        Settings given explicitly in ``cr`` are kept. Nothing happens outside Openshift.
        """
        proxy = self.read_openshift_proxy_config()
        if proxy is None:
            return
        self.set_env_from_cluster_wide_proxy(cr, proxy)
        driver = cr.spec.ofed_driver
        if driver.cert_config is not None and driver.cert_config.name:
            log.debug("use trusted certificate configuration from NicClusterPolicy: %s",
                      driver.cert_config.name)
            return
        if not proxy.trusted_ca:
            return
        config_map = self.get_or_create_trusted_ca_config_map(cr)
        driver.cert_config = ConfigMapNameReference(name=config_map.name)
        log.debug("use trusted certificate configuration from Openshift cluster-wide proxy: %s",
                  config_map.name)

    def handle_additional_mounts(
        self, vol_mounts: AdditionalVolumeMounts, config_map_name: str, dest_dir: str
    ) -> None:
        """Add mounts for every key of the named ConfigMap under ``dest_dir``."""
        try:
            obj = self.client.get(_config_map_query(self.namespace, config_map_name))
        except Exception as err:
            raise RuntimeError(
                f"could not get ConfigMap {config_map_name} from client: {err}"
            ) from err
        try:
            vol_mounts.from_config_map(_config_map_from_object(obj), dest_dir)
        except Exception as err:
            raise RuntimeError(
                f"could not create volume mounts for ConfigMap: {config_map_name}"
            ) from err

    def get_manifest_objects(
        self, cr: NicClusterPolicy, node_info: NodeInfoProvider
    ) -> list[dict[str, Any]]:
        """Render the objects for the OFED driver; empty when no node has a NIC."""
        attrs = node_info.get_nodes_attributes({NODE_LABEL_MLNX_NIC: "true"})
        if not attrs:
            log.info("No nodes with Mellanox NICs where found in the cluster.")
            return []
        node = attrs[0]
        self.check_attributes_exist(node, ATTR_CPU_ARCH, ATTR_OS_NAME, ATTR_OS_VER)

        driver = cr.spec.ofed_driver
        if driver.startup_probe is None:
            driver.startup_probe = PodProbeSpec(initial_delay_seconds=10, period_seconds=10)
        if driver.liveness_probe is None:
            driver.liveness_probe = PodProbeSpec(initial_delay_seconds=30, period_seconds=30)
        if driver.readiness_probe is None:
            driver.readiness_probe = PodProbeSpec(initial_delay_seconds=10, period_seconds=30)

        mounts = AdditionalVolumeMounts()
        osname = node.attributes[ATTR_OS_NAME]
        if driver.cert_config is not None and driver.cert_config.name:
            try:
                dest = get_cert_config_path(osname)
            except ValueError as err:
                raise ValueError(
                    f"failed to get destination directory for custom TLS certificates config: {err}"
                ) from err
            try:
                self.handle_additional_mounts(mounts, driver.cert_config.name, dest)
            except Exception as err:
                raise RuntimeError(
                    f"failed to mount volumes for custom TLS certificates: {err}"
                ) from err
        if driver.repo_config is not None and driver.repo_config.name:
            try:
                dest = get_repo_config_path(osname)
            except ValueError as err:
                raise ValueError(
                    f"failed to get destination directory for custom repo config: {err}"
                ) from err
            try:
                self.handle_additional_mounts(mounts, driver.repo_config.name, dest)
            except Exception as err:
                raise RuntimeError(
                    f"failed to mount volumes for custom repositories configuration: {err}"
                ) from err

        node_attr = node.attributes
        render_data = {
            "cr_spec": driver,
            "tolerations": cr.spec.tolerations,
            "node_affinity": cr.spec.node_affinity,
            "runtime_spec": OfedRuntimeSpec(
                namespace=self.namespace,
                cpu_arch=node_attr[ATTR_CPU_ARCH],
                os_name=node_attr[ATTR_OS_NAME],
                os_ver=node_attr[ATTR_OS_VER],
                mofed_image_name=self.mofed_driver_image_name(cr, node_attr),
            ),
            "additional_volume_mounts": mounts,
        }
        log.debug("Rendering objects: %s", render_data)
        try:
            objs = self.renderer.render_objects(render_data)
        except Exception as err:
            raise RuntimeError(f"failed to render objects: {err}") from err
        log.debug("Rendered objects: %s", objs)
        return objs

    def mofed_driver_image_name(self, cr: NicClusterPolicy, node_attr: Mapping[str, str]) -> str:
        """Return the driver image name in the format its version calls for."""
        driver = cr.spec.ofed_driver
        template = MOFED_IMAGE_NEW_FORMAT
        try:
            current = parse_driver_version(driver.version)
            threshold = parse_driver_version(NEW_MOFED_IMAGE_FORMAT_VERSION)
        except ValueError:
            log.debug("failed to parse ofed driver version as semver")
        else:
            if current < threshold:
                template = MOFED_IMAGE_OLD_FORMAT
        return template.format(
            repo=driver.repository,
            image=driver.image,
            version=driver.version,
            os_name=node_attr.get(ATTR_OS_NAME, ""),
            os_ver=node_attr.get(ATTR_OS_VER, ""),
            arch=node_attr.get(ATTR_CPU_ARCH, ""),
        )

    def read_openshift_proxy_config(self) -> Optional[ProxyConfig]:
        """Return the Openshift cluster-wide proxy settings, or None outside Openshift."""
        query = {
            "apiVersion": "config.openshift.io/v1",
            "kind": "Proxy",
            "metadata": {"name": "cluster"},
        }
        try:
            obj = self.client.get(query)
        except (NoMatchError, NotFoundError):
            return None
        except Exception as err:
            raise RuntimeError(f"failed to read Cluster Wide proxy settings: {err}") from err
        spec = obj.get("spec") or {}
        return ProxyConfig(
            http_proxy=spec.get("httpProxy") or "",
            https_proxy=spec.get("httpsProxy") or "",
            no_proxy=spec.get("noProxy") or "",
            trusted_ca=(spec.get("trustedCA") or {}).get("name") or "",
        )

    def get_or_create_trusted_ca_config_map(self, cr: NicClusterPolicy) -> ConfigMap:
        """Return the trusted CA ConfigMap, creating it for Openshift to fill if missing."""
        name = OCP_TRUSTED_CA_CONFIG_MAP_NAME
        namespace = self.namespace
        try:
            existing = self.client.get(_config_map_query(namespace, name))
        except NotFoundError:
            pass
        except Exception as err:
            raise RuntimeError(f"failed to get trusted CA bundle config map {name}: {err}") from err
        else:
            config_map = _config_map_from_object(existing)
            log.debug("TrustedCAConfigMap already exist: %s/%s", namespace, name)
            if not config_map.data.get(OCP_TRUSTED_CA_BUNDLE_FILE_NAME):
                log.warning("TrustedCAConfigMap has empty ca-bundle.crt key: %s/%s", namespace, name)
            return config_map

        obj = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {INJECT_TRUSTED_CA_LABEL: "true"},
            },
            "data": {OCP_TRUSTED_CA_BUNDLE_FILE_NAME: ""},
        }
        set_controller_reference(cr, obj)
        try:
            self.client.create(copy.deepcopy(obj))
        except Exception as err:
            raise RuntimeError(f"failed to create TrustedCAConfigMap: {err}") from err
        log.info("TrustedCAConfigMap created: %s/%s", namespace, name)

        config_map = _config_map_from_object(obj)
        deadline = time.monotonic() + self.poll_timeout
        while True:
            time.sleep(self.poll_interval)
            try:
                current = self.client.get(_config_map_query(namespace, name))
            except NotFoundError:
                current = None
            except Exception as err:
                raise RuntimeError(f"failed to check TrustedCAConfigMap content: {err}") from err
            if current is not None:
                config_map = _config_map_from_object(current)
                if config_map.data.get(OCP_TRUSTED_CA_BUNDLE_FILE_NAME):
                    log.info("TrustedCAConfigMap has been populated by Openshift: %s/%s",
                             namespace, name)
                    return config_map
            if time.monotonic() >= deadline:
                log.warning(
                    "TrustedCAConfigMap was not populated by Openshift, this may result in "
                    "misconfiguration of trusted certificates for the OFED container: %s/%s",
                    namespace, name,
                )
                return config_map

    def set_env_from_cluster_wide_proxy(self, cr: NicClusterPolicy, proxy_config: ProxyConfig) -> None:
        """Add proxy variables from ``proxy_config`` that ``cr`` does not already set.

        Each variable is added in upper and lower case.
        """
        params = (
            (ENV_HTTPS_PROXY, proxy_config.https_proxy),
            (ENV_HTTP_PROXY, proxy_config.http_proxy),
            (ENV_NO_PROXY, proxy_config.no_proxy),
        )
        driver = cr.spec.ofed_driver
        configured = {env.name for env in driver.env}
        for key, value in params:
            if not value:
                continue
            if key.upper() in configured or key.lower() in configured:
                continue
            driver.env.extend([EnvVar(key.upper(), value), EnvVar(key.lower(), value)])