"""
Tests for the applier and its event classification
"""

import threading
from unittest.mock import Mock

from kubernetes.client.rest import ApiException

from reconciler import errors, metadata
from reconciler.applier import Applier, new_namespace_applier, new_root_applier, parse_depends_on
from reconciler.events import (
    ActionGroupEvent, ApplyEvent, ApplyOperation, ErrorEvent, InitEvent, InventoryOverlapError,
    PruneEvent, PruneOperation, UnknownTypeError, WaitEvent, WaitOperation,
)
from reconciler.fakes import FakeKube, manifest
from reconciler.objects import GroupVersionKind, ObjectIdentity

NAMESPACE_GVK = GroupVersionKind("", "v1", "Namespace")
ROLE_GVK = GroupVersionKind("rbac.authorization.k8s.io", "v1", "Role")
DISABLED = {metadata.RESOURCE_MANAGEMENT_KEY: metadata.RESOURCE_MANAGEMENT_DISABLED}


def _namespace(name):
    return manifest("v1", "Namespace", name)


def _role(name, namespace, annotations=None, labels=None):
    return manifest("rbac.authorization.k8s.io/v1", "Role", name, namespace,
                    annotations=annotations, labels=labels, rules=[])


class ScriptedEngine:
    """Engine double replaying a fixed list of events"""

    def __init__(self, events):
        self.events = events
        self.runs = []

    def run(self, inventory, objects, options):
        self.runs.append((objects, options))
        yield from self.events


def test_apply_new_namespace_and_role():
    """Test applying a namespace and a role into an empty inventory"""
    print("🧪 Testing first apply...")

    kube = FakeKube()
    applier = new_root_applier(kube, "root-sync", "config-management-system")
    desired = [_namespace("a"), _role("x", "a")]

    gvks, errs = applier.apply(desired)

    assert errs is None, errs
    assert gvks == {NAMESPACE_GVK, ROLE_GVK}
    assert applier.inventory.load() == {ObjectIdentity.of(o) for o in desired}
    assert dict(applier.metrics.apply_operations) == {
        ("update", "Namespace", "success"): 1,
        ("update", "Role", "success"): 1,
    }
    assert not applier.syncing()

    print("✅ first apply tests passed!")


def test_second_apply_is_idempotent():
    """Test that re-applying the same set changes nothing"""
    print("\n🧪 Testing idempotent apply...")

    kube = FakeKube()
    applier = new_root_applier(kube, "root-sync", "config-management-system")
    desired = [_namespace("a"), _role("x", "a")]
    applier.apply(desired)
    rg_before = applier.inventory.get()
    objects_before = dict(kube.objects)
    inventory_writes = kube.custom.calls.count("replace") + kube.custom.calls.count("create")

    gvks, errs = applier.apply(desired)

    assert errs is None
    assert gvks == {NAMESPACE_GVK, ROLE_GVK}
    assert kube.objects == objects_before, "No resourceVersion moved"
    assert applier.inventory.get() == rg_before
    assert kube.custom.calls.count("replace") + kube.custom.calls.count("create") == inventory_writes
    assert sum(applier.metrics.apply_operations.values()) == 2, "Unchanged objects are not counted"

    print("✅ idempotent apply tests passed!")


def test_disabled_object_is_released_not_deleted():
    """Test disabling a role that the inventory owns"""
    print("\n🧪 Testing disabled object...")

    kube = FakeKube()
    applier = new_root_applier(kube, "root-sync", "config-management-system")
    applier.apply([_role("x", "a")])
    assert applier.inventory.load() == {ObjectIdentity.of(_role("x", "a"))}

    gvks, errs = applier.apply([_role("x", "a", annotations=DISABLED)])

    assert errs is None, errs
    assert gvks == {ROLE_GVK}
    assert applier.inventory.load() == set()
    live = kube.get_object(_role("x", "a"))
    assert live is not None, "RoleX is not deleted"
    assert kube.deleted == []
    assert metadata.get_annotation(live, metadata.OWNING_INVENTORY_KEY) == ""
    assert metadata.is_management_disabled(live)

    print("✅ disabled object tests passed!")


def test_inventory_failure_while_disabling_prunes_nothing():
    """Test that a failed inventory update stops the sync before prune"""
    print("\n🧪 Testing inventory failure while disabling...")

    kube = FakeKube()
    applier = new_root_applier(kube, "root-sync", "config-management-system")
    applier.apply([_role("x", "a")])
    kube.custom.failures["replace"] = ApiException(status=500, reason="Internal Server Error")

    gvks, errs = applier.apply([_role("x", "a", annotations=DISABLED)])

    assert gvks == set()
    assert [e.code for e in errs] == [errors.APPLIER_ERROR_CODE]
    assert kube.deleted == [], "RoleX is not deleted"
    assert kube.get_object(_role("x", "a")) is not None
    assert applier.inventory.load() == {ObjectIdentity.of(_role("x", "a"))}
    assert applier.last_errors() == errs

    print("✅ inventory failure while disabling tests passed!")


def test_management_conflict():
    """Test a role owned by another scope's inventory"""
    print("\n🧪 Testing management conflict...")

    kube = FakeKube()
    kube.add(_role("y", "b", annotations={
        metadata.OWNING_INVENTORY_KEY: "b_repo-sync",
        metadata.RESOURCE_MANAGER_KEY: "ns-b",
    }))
    applier = new_root_applier(kube, "root-sync", "config-management-system")

    gvks, errs = applier.apply([_namespace("a"), _role("y", "b")])

    assert len(errs) == 1
    conflict = errs.errors()[0]
    assert isinstance(conflict, errors.ManagementConflictError)
    assert conflict.current_manager == ":root"
    assert conflict.conflicting_manager == "ns-b"
    assert gvks == {NAMESPACE_GVK}, "The conflicting role is excluded"
    assert applier.metrics.management_conflicts["Role"] == 1
    assert metadata.get_annotation(kube.get_object(_role("y", "b")), metadata.RESOURCE_MANAGER_KEY) == "ns-b"

    print("✅ management conflict tests passed!")


def test_conflict_owner_falls_back_to_declared_object():
    overlap = InventoryOverlapError(ObjectIdentity("rbac.authorization.k8s.io", "Role", "b", "y"), "b_repo-sync")
    engine = ScriptedEngine([ApplyEvent(overlap.identity, ApplyOperation.FAILED, error=overlap)])
    applier = Applier(FakeKube(), "a", "repo-sync", "a", engine=engine)

    _, errs = applier.apply([_role("y", "b")])
    assert errs.errors()[0].conflicting_manager == "b_repo-sync"


def test_unknown_type_excluded_from_gvks():
    """Test that kinds without a CRD are excluded"""
    crontab_gvk = GroupVersionKind("example.com", "v1", "CronTab")
    crontab = manifest("example.com/v1", "CronTab", "c", "a")
    identity = ObjectIdentity.of(crontab)
    engine = ScriptedEngine([
        InitEvent(["apply-0"]),
        ApplyEvent(identity, ApplyOperation.FAILED, error=UnknownTypeError(crontab_gvk)),
        ApplyEvent(ObjectIdentity("", "Namespace", "", "a"), ApplyOperation.CREATED),
    ])
    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system", engine=engine)

    gvks, errs = applier.apply([crontab, _namespace("a")])
    assert gvks == {NAMESPACE_GVK}
    assert [e.code for e in errs] == [errors.RESOURCE_ERROR_CODE]


def test_error_events():
    """Test generic and request-too-large error events"""
    engine = ScriptedEngine([
        ErrorEvent(Exception("etcdserver: request is too large")),
        ErrorEvent(Exception("connection refused")),
        ActionGroupEvent("apply-0", "Apply", "Finished"),
    ])
    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system", engine=engine)

    _, errs = applier.apply([])
    messages = [e.message for e in errs]
    assert "too many declared resources" in messages[0]
    assert "connection refused" in messages[1]
    assert all(e.code == errors.APPLIER_ERROR_CODE for e in errs)
    assert applier.metrics.error_count == 2


def test_prune_skipped_special_namespace_is_stripped():
    """Test that a skipped special namespace loses its reconciler metadata"""
    print("\n🧪 Testing special namespace prune skip...")

    live = manifest("v1", "Namespace", "default", annotations={metadata.RESOURCE_MANAGER_KEY: ":root"})
    other = manifest("v1", "Namespace", "team-a")
    engine = ScriptedEngine([
        PruneEvent(ObjectIdentity.of(live), PruneOperation.SKIPPED, resource=live),
        PruneEvent(ObjectIdentity.of(other), PruneOperation.SKIPPED, resource=other),
        PruneEvent(ObjectIdentity("", "ConfigMap", "a", "gone"), PruneOperation.PRUNED),
    ])
    disabler = Mock()
    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system",
                      engine=engine, disabler=disabler)

    _, errs = applier.apply([])
    assert errs is None
    disabler.disable_object.assert_called_once_with(live)
    assert applier.metrics.apply_operations[("delete", "ConfigMap", "success")] == 1

    disabler.disable_object.side_effect = ApiException(status=500, reason="boom")
    _, errs = applier.apply([])
    assert len(errs) == 1 and "special namespace" in errs.errors()[0].message

    print("✅ special namespace prune skip tests passed!")


def test_prune_failure_is_resource_error():
    identity = ObjectIdentity("", "ConfigMap", "a", "stuck")
    engine = ScriptedEngine([PruneEvent(identity, PruneOperation.FAILED, error=Exception("forbidden"))])
    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system", engine=engine)
    _, errs = applier.apply([])
    assert errs.errors()[0].resources == (identity,)


def test_depends_on_unreconciled():
    """Test unchanged objects whose dependencies did not reconcile"""
    print("\n🧪 Testing depends-on...")

    dependency = ObjectIdentity("", "ConfigMap", "a", "config")
    dependent = manifest("apps/v1", "Deployment", "web", "a",
                         annotations={metadata.DEPENDS_ON_KEY: "/namespaces/a/ConfigMap/config"})
    unchanged = ApplyEvent(ObjectIdentity.of(dependent), ApplyOperation.UNCHANGED)

    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system",
                      engine=ScriptedEngine([unchanged]))
    _, errs = applier.apply([dependent])
    assert len(errs) == 1 and "not reconciled" in errs.errors()[0].message

    applier.engine = ScriptedEngine([unchanged, WaitEvent(dependency, WaitOperation.RECONCILED)])
    _, errs = applier.apply([dependent])
    assert errs is None, "Dependencies reconciled later in the same run count"

    print("✅ depends-on tests passed!")


def test_parse_depends_on():
    assert parse_depends_on("apps/namespaces/a/Deployment/web, /Namespace/a") == [
        ObjectIdentity("apps", "Deployment", "a", "web"),
        ObjectIdentity("", "Namespace", "", "a"),
    ]


def test_refresh_and_run():
    """Test periodic re-apply of the last declared set"""
    print("\n🧪 Testing refresh...")

    kube = FakeKube()
    applier = new_namespace_applier(kube, "a", "repo-sync")
    assert applier.refresh() is None, "Nothing to refresh before the first apply"

    applier.apply([_role("x", "a")])
    del kube.objects[ObjectIdentity.of(_role("x", "a"))]
    assert applier.refresh() is None
    assert kube.get_object(_role("x", "a")) is not None, "Drift is corrected"

    stop = threading.Event()
    stop.set()
    applier.run(0.01, stop)

    assert applier.inventory.namespace == "a"
    assert applier.apply_options().field_manager == "configsync.gke.io"
    assert applier.apply_options().force_conflicts

    print("✅ refresh tests passed!")


def test_conversion_failure_aborts():
    engine = ScriptedEngine([])
    applier = Applier(FakeKube(), ":root", "root-sync", "config-management-system", engine=engine)
    gvks, errs = applier.apply([{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}}])
    assert gvks == set()
    assert errs is not None
    assert engine.runs == [], "The engine never runs on a conversion failure"
