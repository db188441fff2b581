"""Shared machinery for states that deploy rendered objects into a cluster.

Objects are plain dictionaries in the Kubernetes wire layout. The client is
any object providing::

    get(obj) -> dict            # current copy of obj; raises NotFoundError
    create(obj)                 # raises AlreadyExistsError
    update(obj)
    list(gvk, labels) -> list   # raises NoMatchError for unknown kinds
    delete(obj)
"""

from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, NamedTuple, Protocol

STATE_LABEL = "nvidia.network-operator.state"

log = logging.getLogger(__name__)

Object = dict[str, Any]


class SyncState(str, enum.Enum):
    """Outcome of a state synchronisation."""

    READY = "ready"
    NOT_READY = "notReady"
    IGNORE = "ignore"
    ERROR = "error"


class NotFoundError(Exception):
    """The requested object does not exist."""


class AlreadyExistsError(Exception):
    """An object with the same identity already exists."""


class NoMatchError(Exception):
    """The cluster does not serve the requested kind."""


class _GVK(NamedTuple):
    group: str
    version: str
    kind: str


class _Client(Protocol):
    def get(self, obj: Object) -> Object: ...

    def create(self, obj: Object) -> None: ...

    def update(self, obj: Object) -> None: ...

    def list(self, gvk: _GVK, labels: Mapping[str, str]) -> list[Object]: ...

    def delete(self, obj: Object) -> None: ...


@dataclass
class NodeAttributes:
    """Attributes discovered for a cluster node."""

    name: str
    attributes: dict[str, str] = field(default_factory=dict)


_SUPPORTED_GVKS = (
    _GVK("", "v1", "ServiceAccount"),
    _GVK("", "v1", "ConfigMap"),
    _GVK("apps", "v1", "DaemonSet"),
    _GVK("apps", "v1", "Deployment"),
    _GVK("apiextensions.k8s.io", "v1", "CustomResourceDefinition"),
    _GVK("rbac.authorization.k8s.io", "v1", "ClusterRole"),
    _GVK("rbac.authorization.k8s.io", "v1", "ClusterRoleBinding"),
    _GVK("rbac.authorization.k8s.io", "v1", "Role"),
    _GVK("rbac.authorization.k8s.io", "v1", "RoleBinding"),
    _GVK("k8s.cni.cncf.io", "v1", "NetworkAttachmentDefinition"),
    _GVK("batch", "v1", "CronJob"),
    _GVK("security.openshift.io", "v1", "SecurityContextConstraints"),
)


def supported_gvks() -> list[_GVK]:
    """Return the kinds whose objects a state can find and delete again."""
    return list(_SUPPORTED_GVKS)


def group_version_kind(obj: Mapping[str, Any]) -> _GVK:
    """Return the (group, version, kind) of an object."""
    api_version = obj.get("apiVersion") or ""
    kind = obj.get("kind") or ""
    if api_version in ("", "/"):
        return _GVK("", "", kind)
    parts = api_version.split("/")
    if len(parts) == 1:
        return _GVK("", parts[0], kind)
    if len(parts) == 2:
        return _GVK(parts[0], parts[1], kind)
    return _GVK("", "", "")


def _meta(obj: Mapping[str, Any], key: str) -> Any:
    return (obj.get("metadata") or {}).get(key)


def _describe(obj: Mapping[str, Any]) -> str:
    return f"{_meta(obj, 'namespace') or ''}/{_meta(obj, 'name') or ''}"


class StateSkel:
    """Base for states: creates, updates, inspects and deletes their objects."""

    def __init__(self, name: str, description: str, client: _Client, renderer: Any, namespace: str):
        self.name = name
        self.description = description
        self.client = client
        self.renderer = renderer
        self.namespace = namespace

    def get_obj(self, obj: Object) -> Object:
        """Return the cluster's current copy of ``obj``."""
        log.info("Get Object %s", _describe(obj))
        try:
            return self.client.get(obj)
        except NotFoundError:
            log.info("Object Does not Exists")
            raise

    def create_obj(self, obj: Object) -> None:
        """Create ``obj`` in the cluster."""
        self.is_delete_supported(obj)
        log.info("Creating Object %s", _describe(obj))
        try:
            self.client.create(copy.deepcopy(obj))
        except AlreadyExistsError:
            log.info("Object Already Exists")
            raise
        log.info("Object created successfully")

    def is_delete_supported(self, obj: Mapping[str, Any]) -> bool:
        """Tell whether objects of this kind are cleaned up later; warn if not."""
        if group_version_kind(obj) in _SUPPORTED_GVKS:
            return True
        log.warning(
            "Object will not be deleted if needed: %s %s", _describe(obj), group_version_kind(obj)
        )
        return False

    def update_obj(self, obj: Object) -> None:
        """Replace the cluster's copy of ``obj``."""
        log.info("Updating Object %s", _describe(obj))
        try:
            self.client.update(copy.deepcopy(obj))
        except Exception as err:
            raise RuntimeError(f"failed to update resource: {err}") from err
        log.info("Object updated successfully")

    def create_or_update_objs(
        self, set_controller_reference: Callable[[Object], None], objs: Iterable[Object]
    ) -> None:
        """Create each object, or update it when it already exists."""
        for desired in objs:
            log.info("Handling manifest object %s %s", desired.get("kind"), _meta(desired, "name"))
            try:
                set_controller_reference(desired)
            except Exception as err:
                raise RuntimeError(
                    f"failed to set controller reference for object: {err}"
                ) from err
            self.add_state_specific_labels(desired)
            try:
                self.create_obj(desired)
                continue
            except AlreadyExistsError:
                pass
            current = self.get_obj(copy.deepcopy(desired))
            self.merge_objects(desired, current)
            self.update_obj(desired)

    def add_state_specific_labels(self, obj: Object) -> None:
        """Label ``obj`` with the name of this state."""
        metadata = obj.setdefault("metadata", {})
        labels = metadata.get("labels") or {}
        labels[STATE_LABEL] = self.name
        metadata["labels"] = labels

    def handle_state_objects_deletion(self) -> SyncState:
        """Delete this state's objects; NOT_READY while any remain, else IGNORE."""
        log.info("State spec in CR is nil, deleting existing objects if needed: %s", self.name)
        try:
            found = self.delete_state_related_objects()
        except Exception as err:
            raise RuntimeError(f"failed to delete k8s objects: {err}") from err
        if found:
            log.info("State deleting objects in progress: %s", self.name)
            return SyncState.NOT_READY
        return SyncState.IGNORE

    def delete_state_related_objects(self) -> bool:
        """Delete every object labelled with this state; tell whether any were found."""
        labels = {STATE_LABEL: self.name}
        found = False
        for gvk in _SUPPORTED_GVKS:
            try:
                items = self.client.list(gvk, labels)
            except NoMatchError:
                continue
            if items:
                found = True
            for item in items:
                if _meta(item, "deletionTimestamp") is None:
                    self.client.delete(item)
        return found

    def merge_objects(self, updated: Object, current: Mapping[str, Any]) -> None:
        """Carry over from ``current`` what the server expects back in ``updated``."""
        version = _meta(current, "resourceVersion") or ""
        metadata = updated.setdefault("metadata", {})
        if version:
            metadata["resourceVersion"] = version
        else:
            metadata.pop("resourceVersion", None)
        gvk = group_version_kind(updated)
        if gvk.group == "" and gvk.kind == "ServiceAccount":
            self.merge_service_account(updated, current)

    def merge_service_account(self, updated: Object, current: Mapping[str, Any]) -> None:
        """Keep the secrets a service account already holds."""
        for key in ("secrets", "imagePullSecrets"):
            if key not in current:
                continue
            value = current[key]
            if not isinstance(value, list):
                raise TypeError(f"{key} accessor error: {value!r} is of the type "
                                f"{type(value).__name__}, expected list")
            updated[key] = copy.deepcopy(value)

    def get_sync_state(self, objs: Iterable[Object]) -> SyncState:
        """Report READY once every object exists and every DaemonSet is ready."""
        log.info("Checking related object states")
        for obj in objs:
            log.info("Checking object %s %s", obj.get("kind"), _meta(obj, "name"))
            try:
                found = self.get_obj(copy.deepcopy(obj))
            except NotFoundError:
                log.info("Object is not ready %s %s", obj.get("kind"), _meta(obj, "name"))
                return SyncState.NOT_READY
            except Exception as err:
                raise RuntimeError(f"failed to get object: {err}") from err
            if found.get("kind") == "DaemonSet" and not self.is_daemonset_ready(found):
                log.info("Object is not ready %s %s", obj.get("kind"), _meta(obj, "name"))
                return SyncState.NOT_READY
            log.info("Object is ready %s %s", obj.get("kind"), _meta(obj, "name"))
        return SyncState.READY

    def is_daemonset_ready(self, daemonset: Mapping[str, Any]) -> bool:
        """Tell whether a DaemonSet has all desired pods updated and available."""
        status = daemonset.get("status") or {}
        counts = {}
        for key in ("desiredNumberScheduled", "numberAvailable", "updatedNumberScheduled"):
            value = status.get(key, 0)
            if value is None:
                value = 0
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"failed to read daemonset status field {key}: {value!r}")
            counts[key] = value
        log.debug("Check daemonset state %s", status)
        desired = counts["desiredNumberScheduled"]
        available = counts["numberAvailable"]
        return desired != 0 and desired == available and counts["updatedNumberScheduled"] == available

    def check_attributes_exist(self, attrs: NodeAttributes, *attr_types: str) -> None:
        """Raise ValueError unless every attribute type is present for the node."""
        for attr_type in attr_types:
            if attr_type not in attrs.attributes:
                raise ValueError(f"mandatory node attribute does not exist for node {attrs.name}")