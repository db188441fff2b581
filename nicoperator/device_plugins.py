"""States that deploy the RDMA shared and SR-IOV device plugins."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from nicoperator.ofed import (
    ATTR_CPU_ARCH,
    ATTR_OS_NAME,
    ATTR_OS_VER,
    NODE_LABEL_MLNX_NIC,
    NodeInfoProvider,
    SyncError,
    set_controller_reference,
)
from nicoperator.skel import StateSkel, SyncState, group_version_kind
from nicoperator.spec import DevicePluginSpec, NicClusterPolicy

log = logging.getLogger(__name__)

STATE_SHARED_DP_NAME = "state-RDMA-device-plugin"
STATE_SHARED_DP_DESCRIPTION = "RDMA shared device plugin deployed in the cluster"
STATE_SRIOV_DP_NAME = "state-SRIOV-device-plugin"
STATE_SRIOV_DP_DESCRIPTION = "SR-IOV device plugin deployed in the cluster"


@dataclass
class SharedDpRuntimeSpec:
    """Run-time values the shared device plugin manifests need."""

    namespace: str
    os_name: str


@dataclass
class SriovDpRuntimeSpec:
    """Run-time values the SR-IOV device plugin manifests need."""

    namespace: str
    os_name: str
    cpu_arch: str = ""


class _DevicePluginState(StateSkel):
    """Common synchronisation flow of the device plugin states."""

    def _plugin_spec(self, cr: NicClusterPolicy) -> Optional[DevicePluginSpec]:
        raise NotImplementedError

    def get_manifest_objects(
        self, cr: NicClusterPolicy, node_info: NodeInfoProvider
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _render(self, render_data: dict[str, Any]) -> list[dict[str, Any]]:
        log.debug("Rendering objects: %s", render_data)
        try:
            objs = self.renderer.render_objects(render_data)
        except Exception as err:
            raise RuntimeError(f"failed to render objects: {err}") from err
        log.debug("Rendered objects: %s", objs)
        return objs

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider]) -> SyncState:
        """Bring the cluster in line with the device plugin part of ``cr``."""
        log.info("Sync Custom resource: state %s, name %s, namespace %s",
                 self.name, cr.name, cr.namespace)
        if self._plugin_spec(cr) is None:
            return self.handle_state_objects_deletion()
        if node_info is None:
            raise SyncError("unexpected state, catalog does not provide node information",
                            SyncState.ERROR)
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


class StateSharedDp(_DevicePluginState):
    """Deploys the RDMA shared device plugin."""

    def __init__(self, client: Any, renderer: Any, namespace: str):
        super().__init__(STATE_SHARED_DP_NAME, STATE_SHARED_DP_DESCRIPTION,
                         client, renderer, namespace)

    def _plugin_spec(self, cr: NicClusterPolicy) -> Optional[DevicePluginSpec]:
        return cr.spec.rdma_shared_device_plugin

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider]) -> SyncState:
        """Bring the cluster in line with the RDMA shared device plugin part of ``cr``."""
        return super().sync(cr, node_info)

    def watch_sources(self) -> dict[str, Any]:
        """Return the kinds to watch for this state, keyed by kind name."""
        return super().watch_sources()

    def get_manifest_objects(
        self, cr: NicClusterPolicy, node_info: NodeInfoProvider
    ) -> list[dict[str, Any]]:
        """Render the plugin's objects; empty when no node has a NIC."""
        attrs = node_info.get_nodes_attributes({NODE_LABEL_MLNX_NIC: "true"})
        if not attrs:
            log.info("No nodes with Mellanox NICs where found in the cluster.")
            return []
        node = attrs[0]
        self.check_attributes_exist(node, ATTR_CPU_ARCH, ATTR_OS_NAME, ATTR_OS_VER)
        render_data = {
            "cr_spec": cr.spec.rdma_shared_device_plugin,
            "tolerations": cr.spec.tolerations,
            "node_affinity": cr.spec.node_affinity,
            "deploy_init_container": cr.spec.ofed_driver is not None,
            "runtime_spec": SharedDpRuntimeSpec(
                namespace=self.namespace,
                os_name=node.attributes[ATTR_OS_NAME],
            ),
        }
        return self._render(render_data)


class StateSriovDp(_DevicePluginState):
    """Deploys the SR-IOV device plugin."""

    def __init__(self, client: Any, renderer: Any, namespace: str):
        super().__init__(STATE_SRIOV_DP_NAME, STATE_SRIOV_DP_DESCRIPTION,
                         client, renderer, namespace)

    def _plugin_spec(self, cr: NicClusterPolicy) -> Optional[DevicePluginSpec]:
        return cr.spec.sriov_device_plugin

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider]) -> SyncState:
        """Bring the cluster in line with the SR-IOV device plugin part of ``cr``."""
        return super().sync(cr, node_info)

    def watch_sources(self) -> dict[str, Any]:
        """Return the kinds to watch for this state, keyed by kind name."""
        return super().watch_sources()

    def get_manifest_objects(
        self, cr: NicClusterPolicy, node_info: NodeInfoProvider
    ) -> list[dict[str, Any]]:
        """Render the plugin's objects; empty when no node has a NIC."""
        attrs = node_info.get_nodes_attributes({NODE_LABEL_MLNX_NIC: "true"})
        if not attrs:
            log.info("No nodes with NVIDIA NICs where found in the cluster.")
            return []
        render_data = {
            "cr_spec": cr.spec.sriov_device_plugin,
            "tolerations": cr.spec.tolerations,
            "node_affinity": cr.spec.node_affinity,
            "deploy_init_container": cr.spec.ofed_driver is not None,
            "runtime_spec": SriovDpRuntimeSpec(
                namespace=self.namespace,
                os_name=attrs[0].attributes.get(ATTR_OS_NAME, ""),
            ),
        }
        return self._render(render_data)