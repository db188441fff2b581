import copy

import pytest

from nicoperator.skel import (
    STATE_LABEL,
    AlreadyExistsError,
    NodeAttributes,
    NoMatchError,
    NotFoundError,
    StateSkel,
    SyncState,
    group_version_kind,
    supported_gvks,
)


class FakeClient:
    def __init__(self, no_match=(), fail_update=False):
        self.objects = {}
        self.no_match = set(no_match)
        self.fail_update = fail_update
        self.counter = 0
        self.deleted = []

    @staticmethod
    def _key(obj):
        meta = obj.get("metadata", {})
        return (tuple(group_version_kind(obj)), meta.get("namespace", ""), meta.get("name", ""))

    def get(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFoundError(key)
        return copy.deepcopy(self.objects[key])

    def _store(self, obj):
        self.counter += 1
        stored = copy.deepcopy(obj)
        stored.setdefault("metadata", {})["resourceVersion"] = str(self.counter)
        self.objects[self._key(obj)] = stored

    def create(self, obj):
        if self._key(obj) in self.objects:
            raise AlreadyExistsError(self._key(obj))
        self._store(obj)

    def update(self, obj):
        if self.fail_update:
            raise ConnectionError("boom")
        self._store(obj)

    def list(self, gvk, labels):
        if gvk.kind in self.no_match:
            raise NoMatchError(gvk.kind)
        result = []
        for (key_gvk, _, _), obj in self.objects.items():
            obj_labels = obj.get("metadata", {}).get("labels", {})
            if key_gvk == tuple(gvk) and all(obj_labels.get(k) == v for k, v in labels.items()):
                result.append(copy.deepcopy(obj))
        return result

    def delete(self, obj):
        self.deleted.append(self._key(obj))
        del self.objects[self._key(obj)]


def _obj(api_version, kind, name, **extra):
    obj = {"apiVersion": api_version, "kind": kind, "metadata": {"name": name, "namespace": "ns"}}
    obj.update(extra)
    return obj


def _noop(_obj):
    return None


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def state(client):
    return StateSkel("state-test", "test state", client, None, "ns")


def test_supported_gvks_contains_core_kinds():
    gvks = supported_gvks()
    assert len(gvks) == 12
    assert ("apps", "v1", "DaemonSet") in gvks
    assert ("", "v1", "ServiceAccount") in gvks


@pytest.mark.parametrize(
    "api_version, expected",
    [
        ("apps/v1", ("apps", "v1", "DaemonSet")),
        ("v1", ("", "v1", "DaemonSet")),
        ("", ("", "", "DaemonSet")),
        ("a/b/c", ("", "", "")),
    ],
)
def test_group_version_kind(api_version, expected):
    assert group_version_kind({"apiVersion": api_version, "kind": "DaemonSet"}) == expected


def test_add_state_specific_labels_keeps_existing(state):
    obj = _obj("v1", "ConfigMap", "cm")
    obj["metadata"]["labels"] = {"app": "x"}
    state.add_state_specific_labels(obj)
    assert obj["metadata"]["labels"] == {"app": "x", STATE_LABEL: "state-test"}


def test_is_delete_supported(state):
    assert state.is_delete_supported(_obj("apps/v1", "DaemonSet", "ds")) is True
    assert state.is_delete_supported(_obj("example.com/v1", "Widget", "w")) is False


def test_get_obj_missing_raises(state):
    with pytest.raises(NotFoundError):
        state.get_obj(_obj("v1", "ConfigMap", "absent"))


def test_create_or_update_creates_labelled_objects(state, client):
    refs = []
    state.create_or_update_objs(refs.append, [_obj("v1", "ConfigMap", "cm")])
    stored = client.get(_obj("v1", "ConfigMap", "cm"))
    assert stored["metadata"]["labels"][STATE_LABEL] == "state-test"
    assert [r["metadata"]["name"] for r in refs] == ["cm"]


def test_create_or_update_updates_existing_and_keeps_secrets(state, client):
    client.create(_obj("v1", "ServiceAccount", "sa", secrets=[{"name": "s1"}],
                       imagePullSecrets=[{"name": "p1"}]))
    desired = _obj("v1", "ServiceAccount", "sa")
    state.create_or_update_objs(_noop, [desired])
    stored = client.get(desired)
    assert stored["secrets"] == [{"name": "s1"}]
    assert stored["imagePullSecrets"] == [{"name": "p1"}]
    assert desired["metadata"]["resourceVersion"] == "1"
    assert stored["metadata"]["labels"][STATE_LABEL] == "state-test"


def test_set_controller_reference_failure_is_wrapped(state):
    def fail(_obj):
        raise ValueError("no owner")

    with pytest.raises(RuntimeError, match="failed to set controller reference"):
        state.create_or_update_objs(fail, [_obj("v1", "ConfigMap", "cm")])


def test_update_failure_is_wrapped(client):
    client.fail_update = True
    state = StateSkel("state-test", "d", client, None, "ns")
    with pytest.raises(RuntimeError, match="failed to update resource"):
        state.update_obj(_obj("v1", "ConfigMap", "cm"))


def test_merge_objects_without_resource_version_removes_it(state):
    updated = _obj("v1", "ConfigMap", "cm")
    updated["metadata"]["resourceVersion"] = "stale"
    state.merge_objects(updated, _obj("v1", "ConfigMap", "cm"))
    assert "resourceVersion" not in updated["metadata"]


def test_merge_service_account_rejects_non_list(state):
    with pytest.raises(TypeError):
        state.merge_service_account({}, {"secrets": "oops"})


def test_deletion_with_nothing_found_is_ignore(state):
    assert state.handle_state_objects_deletion() == SyncState.IGNORE


def test_deletion_removes_labelled_objects(state, client):
    state.create_or_update_objs(_noop, [_obj("apps/v1", "DaemonSet", "ds")])
    client.create(_obj("v1", "ConfigMap", "other"))
    assert state.handle_state_objects_deletion() == SyncState.NOT_READY
    assert client.deleted == [(("apps", "v1", "DaemonSet"), "ns", "ds")]
    assert state.handle_state_objects_deletion() == SyncState.IGNORE


def test_deletion_skips_objects_already_terminating(state, client):
    obj = _obj("v1", "ConfigMap", "cm")
    state.add_state_specific_labels(obj)
    obj["metadata"]["deletionTimestamp"] = "2023-01-01T00:00:00Z"
    client.create(obj)
    assert state.delete_state_related_objects() is True
    assert client.deleted == []


def test_deletion_skips_unknown_kinds(state):
    client = FakeClient(no_match={kind for _, _, kind in supported_gvks()})
    state.client = client
    assert state.delete_state_related_objects() is False


def test_sync_state_missing_object_not_ready(state):
    assert state.get_sync_state([_obj("v1", "ConfigMap", "cm")]) == SyncState.NOT_READY


def test_sync_state_ready_for_present_objects(state, client):
    ready = {"desiredNumberScheduled": 2, "numberAvailable": 2, "updatedNumberScheduled": 2}
    objs = [_obj("v1", "ConfigMap", "cm"), _obj("apps/v1", "DaemonSet", "ds", status=ready)]
    for obj in objs:
        client.create(obj)
    assert state.get_sync_state(objs) == SyncState.READY


def test_sync_state_daemonset_not_ready(state, client):
    status = {"desiredNumberScheduled": 2, "numberAvailable": 1, "updatedNumberScheduled": 1}
    ds = _obj("apps/v1", "DaemonSet", "ds", status=status)
    client.create(ds)
    assert state.get_sync_state([ds]) == SyncState.NOT_READY


@pytest.mark.parametrize(
    "status, expected",
    [
        ({}, False),
        ({"desiredNumberScheduled": 0, "numberAvailable": 0, "updatedNumberScheduled": 0}, False),
        ({"desiredNumberScheduled": 1, "numberAvailable": 1, "updatedNumberScheduled": 0}, False),
        ({"desiredNumberScheduled": 1, "numberAvailable": 1, "updatedNumberScheduled": 1}, True),
    ],
)
def test_is_daemonset_ready(state, status, expected):
    assert state.is_daemonset_ready({"kind": "DaemonSet", "status": status}) is expected


def test_is_daemonset_ready_rejects_bad_status(state):
    with pytest.raises(TypeError):
        state.is_daemonset_ready({"status": {"desiredNumberScheduled": "many"}})


def test_check_attributes_exist(state):
    attrs = NodeAttributes("node-a", {"cpu": "amd64", "os": "ubuntu"})
    state.check_attributes_exist(attrs, "cpu", "os")
    with pytest.raises(ValueError, match="node-a"):
        state.check_attributes_exist(attrs, "cpu", "osver")