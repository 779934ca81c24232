"""
Tests for metrics exposition, configuration and the command line
"""

import importlib
from unittest.mock import patch

from prometheus_client import CollectorRegistry, generate_latest

from reconciler import errors
from reconciler.config import Config
from reconciler.events import ApplyOperation
from reconciler.fakes import FakeKube
from reconciler.main import build_reconciler, list_errors, main
from reconciler.metrics import Metrics, MetricsCollector, status_label
from reconciler.stats import ApplyStats


def test_collector_exposition():
    """Test Prometheus exposition through the custom collector"""
    print("🧪 Testing MetricsCollector...")

    metrics = Metrics(":root")
    metrics.record_apply_operation("update", "Role", "success")
    metrics.record_apply_operation("update", "Role", "success")
    metrics.record_apply_operation("delete", "ConfigMap", "error")
    metrics.record_reconciler_errors("sync", 3)
    metrics.record_management_conflict("Role")
    metrics.record_declared_resources(12)
    metrics.record_last_sync("abc123", 1700000000.0)

    registry = CollectorRegistry()
    registry.register(MetricsCollector(metrics))

    scope = {"reconciler": ":root"}
    assert registry.get_sample_value(
        "reconciler_apply_operations_total",
        {**scope, "operation": "update", "type": "Role", "status": "success"}) == 2
    assert registry.get_sample_value(
        "reconciler_apply_operations_total",
        {**scope, "operation": "delete", "type": "ConfigMap", "status": "error"}) == 1
    assert registry.get_sample_value("reconciler_component_errors", {**scope, "component": "sync"}) == 3
    assert registry.get_sample_value("reconciler_management_conflicts_total", {**scope, "type": "Role"}) == 1
    assert registry.get_sample_value("reconciler_declared_resources", scope) == 12
    assert registry.get_sample_value("reconciler_last_sync_timestamp",
                                     {**scope, "commit": "abc123"}) == 1700000000.0

    output = generate_latest(registry).decode()
    assert "reconciler_syncs_total{reconciler=\":root\"} 0.0" in output

    print("✅ MetricsCollector tests passed!")


def test_record_sync():
    stats = ApplyStats()
    stats.apply_event.event_by_op[ApplyOperation.CREATED] += 2
    stats.apply_event.err_count = 1
    stats.prune_event.err_count = 2
    stats.error_type_events = 1

    metrics = Metrics()
    metrics.record_sync(stats)
    metrics.record_sync(ApplyStats())
    assert metrics.sync_count == 2
    assert metrics.error_count == 4


def test_status_label():
    assert status_label(None) == "success"
    assert status_label(errors.internal_error("boom")) == "error"


def test_config_defaults():
    """Test default configuration values"""
    print("\n🧪 Testing Config...")

    assert Config.ROOT_SCOPE == ":root"
    assert Config.FIELD_MANAGER == "configsync.gke.io"
    assert "default" in Config.SPECIAL_NAMESPACES
    assert "kube-system" in Config.SPECIAL_NAMESPACES
    assert "apiregistration.k8s.io/APIService" in Config.SSA_INCOMPATIBLE_KINDS

    with patch.object(Config, "RECONCILER_SCOPE", "team-a"):
        assert not Config.is_root()
    with patch.object(Config, "RECONCILER_SCOPE", ":root"):
        assert Config.is_root()

    print("✅ Config tests passed!")


def test_build_namespace_reconciler():
    """Test wiring a namespace scope"""
    with patch.object(Config, "RECONCILER_SCOPE", "team-a"), patch.object(Config, "SYNC_NAME", "repo-sync"):
        reconciler = build_reconciler(FakeKube(), Metrics("team-a"))

    assert reconciler.applier.inventory.namespace == "team-a"
    assert reconciler.parser.scope == "team-a"
    assert reconciler.status_writer.plural == "reposyncs"
    assert reconciler.status_writer.namespace == "team-a"


def test_list_errors(capsys):
    list_errors(errors.ErrorTaxonomy())
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == f"KNV{errors.INTERNAL_ERROR_CODE}\t{errors.ErrorTaxonomy().describe(errors.INTERNAL_ERROR_CODE)}"
    assert len(lines) == len(errors.ErrorTaxonomy().codes())

    main(["--list-errors"])
    assert "KNV1060" in capsys.readouterr().out


def test_entry_point_imports():
    """Test that the console script target and its collaborators import"""
    module = importlib.import_module("reconciler.main")
    assert callable(module.main)
    for name in ("reconciler.applier", "reconciler.loop", "reconciler.status", "reconciler.kube"):
        importlib.import_module(name)


def test_snapshot_is_a_copy():
    """Test that a snapshot does not change with later recordings"""
    metrics = Metrics(":root")
    metrics.record_apply_operation("update", "Role", "success")
    metrics.record_declared_resources(3)

    snapshot = metrics.snapshot()
    metrics.record_apply_operation("update", "Role", "success")
    metrics.record_declared_resources(4)

    assert snapshot["apply_operations"] == {("update", "Role", "success"): 1}, \
        "The snapshot keeps the counts from when it was taken"
    assert snapshot["declared_resources"] == 3
    assert metrics.snapshot()["apply_operations"][("update", "Role", "success")] == 2
