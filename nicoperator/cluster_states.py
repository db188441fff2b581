"""States that deploy the Whereabouts IPAM CNI and the privileged pod security policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from nicoperator.ofed import NodeInfoProvider, SyncError, set_controller_reference
from nicoperator.skel import NoMatchError, StateSkel, SyncState, group_version_kind
from nicoperator.spec import NicClusterPolicy

log = logging.getLogger(__name__)

STATE_WHEREABOUTS_NAME = "state-whereabouts-cni"
STATE_WHEREABOUTS_DESCRIPTION = "whereabouts IPAM CNI deployed in the cluster"
STATE_PSP_NAME = "state-pod-security-policy"
STATE_PSP_DESCRIPTION = "Privileged pod security policy deployed in the cluster"


@dataclass
class RuntimeSpec:
    """Run-time values the manifests need."""

    namespace: str


class _ClusterState(StateSkel):
    """Common render and apply steps of states that need no node information."""

    def _render(self, render_data: dict[str, Any]) -> list[dict[str, Any]]:
        log.debug("Rendering objects: %s", render_data)
        try:
            objs = self.renderer.render_objects(render_data)
        except Exception as err:
            raise RuntimeError(f"failed to render objects: {err}") from err
        log.debug("Rendered objects: %s", objs)
        return objs

    def _apply(self, cr: NicClusterPolicy, objs: list[dict[str, Any]]) -> SyncState:
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


class StateWhereaboutsCNI(_ClusterState):
    """Deploys the Whereabouts IPAM CNI."""

    def __init__(self, client: Any, renderer: Any, namespace: str):
        super().__init__(STATE_WHEREABOUTS_NAME, STATE_WHEREABOUTS_DESCRIPTION,
                         client, renderer, namespace)

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider] = None) -> SyncState:
        """Bring the cluster in line with the IPAM plugin part of ``cr``."""
        log.info("Sync Custom resource: state %s, name %s, namespace %s",
                 self.name, cr.name, cr.namespace)
        network = cr.spec.secondary_network
        if network is None or network.ipam_plugin is None:
            return self.handle_state_objects_deletion()
        try:
            objs = self.get_manifest_objects(cr)
        except Exception as err:
            raise SyncError(f"failed to create k8s objects from manifest: {err}") from err
        return self._apply(cr, objs)

    def watch_sources(self) -> dict[str, Any]:
        """Return the kinds to watch for this state, keyed by kind name."""
        return {"DaemonSet": group_version_kind({"apiVersion": "apps/v1", "kind": "DaemonSet"})}

    def get_manifest_objects(self, cr: NicClusterPolicy) -> list[dict[str, Any]]:
        """Render the Whereabouts objects."""
        render_data = {
            "cr_spec": cr.spec.secondary_network.ipam_plugin,
            "tolerations": cr.spec.tolerations,
            "node_affinity": cr.spec.node_affinity,
            "runtime_spec": RuntimeSpec(namespace=self.namespace),
        }
        return self._render(render_data)


class StatePodSecurityPolicy(_ClusterState):
    """Deploys the privileged pod security policy."""

    def __init__(self, client: Any, renderer: Any, namespace: str):
        super().__init__(STATE_PSP_NAME, STATE_PSP_DESCRIPTION, client, renderer, namespace)

    def sync(self, cr: NicClusterPolicy, node_info: Optional[NodeInfoProvider] = None) -> SyncState:
        """Bring the cluster in line with the pod security policy part of ``cr``."""
        log.info("Sync Custom resource: state %s, name %s, namespace %s",
                 self.name, cr.name, cr.namespace)
        if cr.spec.psp is None or not cr.spec.psp.enabled:
            return self.handle_state_objects_deletion()
        try:
            objs = self.get_manifest_objects()
        except Exception as err:
            raise SyncError(f"failed to create k8s objects from manifest: {err}") from err
        return self._apply(cr, objs)

    def watch_sources(self) -> dict[str, Any]:
        """Return the kinds to watch; empty when the cluster no longer serves the policy kind."""
        gvk = group_version_kind({"apiVersion": "policy/v1beta1", "kind": "PodSecurityPolicy"})
        try:
            self.client.list(gvk, {})
        except NoMatchError:
            return {}
        except Exception as err:
            log.debug("listing pod security policies failed: %s", err)
        return {"PodSecurityPolicy": gvk}

    def get_manifest_objects(self) -> list[dict[str, Any]]:
        """Render the pod security policy objects."""
        return self._render({"runtime_spec": RuntimeSpec(namespace=self.namespace)})