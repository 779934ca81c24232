"""
Tests for releasing objects whose management was disabled
"""

import pytest
from kubernetes.client.rest import ApiException

from reconciler import errors, metadata
from reconciler.disabler import DisableHandler
from reconciler.fakes import FakeKube, manifest
from reconciler.inventory import InventoryManager
from reconciler.objects import ObjectIdentity

MANAGED_ANNOTATIONS = {
    metadata.RESOURCE_MANAGEMENT_KEY: metadata.RESOURCE_MANAGEMENT_ENABLED,
    metadata.RESOURCE_MANAGER_KEY: ":root",
    metadata.OWNING_INVENTORY_KEY: "config-management-system_root-sync",
    "team": "payments",
}
MANAGED_LABELS = {metadata.MANAGED_BY_KEY: metadata.MANAGED_BY_VALUE, "app": "web"}
DISABLED = {metadata.RESOURCE_MANAGEMENT_KEY: metadata.RESOURCE_MANAGEMENT_DISABLED}


def _setup(*live):
    kube = FakeKube()
    inventory = InventoryManager(kube, "root-sync", "config-management-system")
    for obj in live:
        kube.add(obj)
    inventory.replace({ObjectIdentity.of(obj) for obj in live})
    return kube, inventory, DisableHandler(kube, inventory, field_manager="configsync.gke.io")


def test_disable_removes_from_inventory_and_strips_metadata():
    """Test the disable round trip: evicted, stripped, never deleted"""
    print("🧪 Testing DisableHandler.disable_objects...")

    live = manifest("rbac.authorization.k8s.io/v1", "Role", "x", "team-a",
                    annotations=MANAGED_ANNOTATIONS, labels=MANAGED_LABELS, rules=[])
    kube, inventory, handler = _setup(live)

    declared = manifest("rbac.authorization.k8s.io/v1", "Role", "x", "team-a", annotations=DISABLED)
    count, errs = handler.disable_objects([declared])

    assert (count, errs) == (1, None)
    assert inventory.load() == set(), "Disabled objects leave the inventory"
    current = kube.get_object(live)
    assert current is not None, "Disabled objects are never deleted"
    assert kube.deleted == []
    assert metadata.labels_of(current) == {"app": "web"}
    assert metadata.annotations_of(current) == {"team": "payments", **DISABLED}
    assert current["rules"] == [], "The object body is untouched"

    patch = kube.applied[-1]
    assert patch["rules"] == [], "The patch keeps the payload the field manager owns"
    assert "resourceVersion" not in patch["metadata"]

    print("✅ DisableHandler.disable_objects tests passed!")


def test_disable_missing_object_counts_as_success():
    kube, inventory, handler = _setup()
    declared = manifest("v1", "ConfigMap", "gone", "team-a", annotations=DISABLED)
    assert handler.disable_objects([declared]) == (1, None)
    assert kube.applied == []


def test_ssa_incompatible_kind_uses_update():
    """Test that APIService objects get a regular update"""
    print("\n🧪 Testing SSA-incompatible kinds...")

    live = manifest("apiregistration.k8s.io/v1", "APIService", "v1beta1.metrics.k8s.io",
                    annotations=MANAGED_ANNOTATIONS, spec={"service": {"name": "metrics-server"}})
    kube, inventory, handler = _setup(live)

    count, errs = handler.disable_objects([manifest("apiregistration.k8s.io/v1", "APIService",
                                                    "v1beta1.metrics.k8s.io", annotations=DISABLED)])
    assert (count, errs) == (1, None)
    assert kube.applied == [], "No server-side apply for SSA-incompatible kinds"
    assert len(kube.updated) == 1
    assert kube.updated[0]["spec"] == live["spec"], "Update sends the full object"
    assert metadata.get_annotation(kube.get_object(live), metadata.RESOURCE_MANAGER_KEY) == ""

    custom = DisableHandler(kube, inventory, ssa_incompatible_kinds=["/ConfigMap"])
    assert "/ConfigMap" in custom.ssa_incompatible_kinds, "The exception list is configurable"

    print("✅ SSA-incompatible kind tests passed!")


def test_inventory_failure_stops_disabling():
    """Test that no object is touched when the inventory cannot be updated"""
    print("\n🧪 Testing inventory failure...")

    live = manifest("v1", "ConfigMap", "a", "team-a", annotations=MANAGED_ANNOTATIONS)
    kube, inventory, handler = _setup(live)
    kube.custom.failures["replace"] = ApiException(status=500, reason="etcdserver: request is too large")

    with pytest.raises(errors.ConfigSyncError) as exc:
        handler.disable_objects([manifest("v1", "ConfigMap", "a", "team-a", annotations=DISABLED)])
    assert "too many declared resources" in exc.value.message, "Reported as a large inventory"
    assert inventory.load() == {ObjectIdentity.of(live)}, "Ownership is unchanged"
    assert kube.applied == []

    print("✅ inventory failure tests passed!")


def test_per_object_failures_are_independent():
    """Test that one failing object does not stop the others"""
    first = manifest("v1", "ConfigMap", "a", "team-a", annotations=MANAGED_ANNOTATIONS)
    second = manifest("v1", "ConfigMap", "b", "team-a", annotations=MANAGED_ANNOTATIONS)
    kube, inventory, handler = _setup(first, second)
    kube.apply_failures[ObjectIdentity.of(first)] = ApiException(status=409, reason="Conflict")

    count, errs = handler.disable_objects([
        manifest("v1", "ConfigMap", "a", "team-a", annotations=DISABLED),
        manifest("v1", "ConfigMap", "b", "team-a", annotations=DISABLED),
    ])
    assert count == 1
    assert [e.code for e in errs] == [errors.RESOURCE_ERROR_CODE]
    assert metadata.get_annotation(kube.get_object(second), metadata.RESOURCE_MANAGER_KEY) == ""


def test_ssa_patch_keeps_payload():
    """Test that the release patch is the live object minus server-owned fields"""
    live = manifest("apps/v1", "Deployment", "web", "team-a", annotations=MANAGED_ANNOTATIONS,
                    labels=MANAGED_LABELS, spec={"replicas": 2, "template": {"spec": {"containers": []}}},
                    status={"readyReplicas": 2})
    live["metadata"]["managedFields"] = [{"manager": "configsync.gke.io", "operation": "Apply"}]
    live["metadata"]["uid"] = "0b7c1e"
    kube, _, handler = _setup(live)

    declared = manifest("apps/v1", "Deployment", "web", "team-a", annotations=DISABLED)
    assert handler.disable_objects([declared]) == (1, None)

    patch = kube.applied[-1]
    assert patch["spec"] == live["spec"]
    assert "status" not in patch
    assert not {"managedFields", "uid", "resourceVersion"} & set(patch["metadata"])
    assert metadata.labels_of(patch) == {"app": "web"}
    assert kube.get_object(live)["spec"]["replicas"] == 2
