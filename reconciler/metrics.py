"""
In-memory reconciler metrics, exposed to Prometheus through a custom collector.
"""

import time
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from reconciler.stats import ApplyStats

logger = logging.getLogger("reconciler.metrics")


def status_label(err) -> str:
    return "error" if err else "success"


class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self, scope: str = ""):
        self.scope = scope
        self._lock = threading.Lock()
        self.sync_count = 0
        self.last_sync_timestamp = 0.0
        self.last_sync_commit = ""
        self.declared_resources = 0
        self.apply_operations: Dict[Tuple[str, str, str], int] = defaultdict(int)
        self.reconciler_errors: Dict[str, int] = {}
        self.parser_duration: Dict[Tuple[str, str, str], float] = defaultdict(float)
        self.management_conflicts: Dict[str, int] = defaultdict(int)
        self.error_count = 0

    def record_apply_operation(self, operation: str, kind: str, status: str):
        with self._lock:
            self.apply_operations[(operation, kind, status)] += 1

    def record_reconciler_errors(self, component: str, count: int):
        with self._lock:
            self.reconciler_errors[component] = count

    def record_parser_duration(self, trigger: str, stage: str, status: str, start: float):
        with self._lock:
            self.parser_duration[(trigger, stage, status)] = time.time() - start

    def record_management_conflict(self, kind: str):
        with self._lock:
            self.management_conflicts[kind] += 1

    def record_declared_resources(self, count: int):
        with self._lock:
            self.declared_resources = count

    def record_last_sync(self, commit: str, timestamp: float):
        with self._lock:
            self.last_sync_commit = commit
            self.last_sync_timestamp = timestamp

    def record_sync(self, stats: ApplyStats):
        """Record metrics from one applier sync"""
        with self._lock:
            self.sync_count += 1
            self.error_count += (stats.apply_event.err_count + stats.prune_event.err_count
                                 + stats.error_type_events)

    def snapshot(self) -> Dict[str, Any]:
        """Return a consistent copy of every metric, taken under the lock"""
        with self._lock:
            return {
                "scope": self.scope,
                "sync_count": self.sync_count,
                "error_count": self.error_count,
                "last_sync_commit": self.last_sync_commit,
                "last_sync_timestamp": self.last_sync_timestamp,
                "declared_resources": self.declared_resources,
                "apply_operations": dict(self.apply_operations),
                "reconciler_errors": dict(self.reconciler_errors),
                "parser_duration": dict(self.parser_duration),
                "management_conflicts": dict(self.management_conflicts),
            }


class MetricsCollector:
    """Exposes a Metrics snapshot through a prometheus_client registry"""

    def __init__(self, metrics: Metrics):
        self.metrics = metrics

    def collect(self):
        m = self.metrics.snapshot()
        scope = [m["scope"]]
        syncs = CounterMetricFamily("reconciler_syncs", "Total number of applier syncs", labels=["reconciler"])
        syncs.add_metric(scope, m["sync_count"])
        error_total = CounterMetricFamily("reconciler_errors", "Total errors reported by the applier",
                                          labels=["reconciler"])
        error_total.add_metric(scope, m["error_count"])
        last_sync = GaugeMetricFamily("reconciler_last_sync_timestamp",
                                      "Timestamp of the most recent completed sync",
                                      labels=["reconciler", "commit"])
        last_sync.add_metric(scope + [m["last_sync_commit"]], m["last_sync_timestamp"])
        declared = GaugeMetricFamily("reconciler_declared_resources", "Number of declared resources",
                                     labels=["reconciler"])
        declared.add_metric(scope, m["declared_resources"])

        operations = CounterMetricFamily("reconciler_apply_operations",
                                         "Apply and prune operations by kind and status",
                                         labels=["reconciler", "operation", "type", "status"])
        for (operation, kind, status), count in sorted(m["apply_operations"].items()):
            operations.add_metric(scope + [operation, kind, status], count)

        component_errors = GaugeMetricFamily("reconciler_component_errors",
                                             "Current number of errors per component",
                                             labels=["reconciler", "component"])
        for component, count in sorted(m["reconciler_errors"].items()):
            component_errors.add_metric(scope + [component], count)

        durations = GaugeMetricFamily("reconciler_parser_duration_seconds",
                                      "Duration of the last read/parse/update stage",
                                      labels=["reconciler", "trigger", "stage", "status"])
        for (trigger, stage, status), seconds in sorted(m["parser_duration"].items()):
            durations.add_metric(scope + [trigger, stage, status], seconds)

        conflicts = CounterMetricFamily("reconciler_management_conflicts", "Management conflicts by kind",
                                        labels=["reconciler", "type"])
        for kind, count in sorted(m["management_conflicts"].items()):
            conflicts.add_metric(scope + [kind], count)

        return [syncs, error_total, last_sync, declared, operations, component_errors, durations, conflicts]


def serve(metrics: Metrics, port: int, registry: CollectorRegistry = REGISTRY):
    """Expose metrics on :port/metrics"""
    registry.register(MetricsCollector(metrics))
    start_http_server(port, registry=registry)
    logger.info(f"Serving metrics on :{port}/metrics")
