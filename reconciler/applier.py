"""
Applier of one reconciler scope.

The applier partitions the declared objects, releases the disabled ones,
hands the enabled ones to the apply engine and turns the engine's event
stream into the set of successfully applied GroupVersionKinds plus the
errors of the cycle. Per-object failures never stop the rest of the cycle:
a CR may fail while its CRD is applied, and the next cycle picks it up.
"""

import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from kubernetes.client.rest import ApiException

from reconciler import errors, metadata
from reconciler.config import Config
from reconciler.disabler import DisableHandler
from reconciler.engine import ApplyOptions, InventoryPolicy, KubeApplyEngine
from reconciler.events import (
    ApplyOperation, EventType, InventoryOverlapError, PruneOperation, UnknownTypeError, WaitOperation,
)
from reconciler.inventory import InventoryManager
from reconciler.metrics import Metrics, status_label
from reconciler.objects import (
    GroupVersionKind, ObjectIdentity, describe, gvk_of, index_by_identity, partition_objects, to_unstructured,
)
from reconciler.stats import ApplyStats

logger = logging.getLogger("reconciler.applier")


def parse_depends_on(value: str) -> List[ObjectIdentity]:
    """
    Parse a depends-on annotation

    Entries are comma separated, either group/namespaces/<ns>/kind/name for
    namespaced objects or group/kind/name for cluster-scoped ones.
    """
    deps = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split("/")
        if len(parts) == 5 and parts[1] == "namespaces":
            deps.append(ObjectIdentity(parts[0], parts[3], parts[2], parts[4]))
        elif len(parts) == 3:
            deps.append(ObjectIdentity(parts[0], parts[1], "", parts[2]))
        else:
            raise ValueError(f"invalid depends-on entry {entry!r}")
    return deps


class Applier:
    """
    Applies the declared objects of one scope.

    apply() and refresh() share a lock so that two syncs of the same scope
    never overlap; the inventory read-modify-write is not safe otherwise.
    """

    def __init__(self, kube, scope: str, sync_name: str, sync_namespace: str,
                 policy: InventoryPolicy = InventoryPolicy.ADOPT_IF_NO_INVENTORY,
                 engine=None, inventory: Optional[InventoryManager] = None,
                 disabler: Optional[DisableHandler] = None, metrics: Optional[Metrics] = None):
        self.kube = kube
        self.scope = scope
        self.sync_name = sync_name
        self.sync_namespace = sync_namespace
        self.policy = policy
        self.inventory = inventory or InventoryManager(kube, sync_name, sync_namespace)
        self.engine = engine or KubeApplyEngine(kube)
        self.disabler = disabler or DisableHandler(kube, self.inventory)
        self.metrics = metrics or Metrics(scope)
        self.special_namespaces = set(Config.SPECIAL_NAMESPACES)

        self._errs: Optional[errors.MultiError] = None
        self._syncing = False
        self._last_desired: Optional[List[dict]] = None
        self._mux = threading.Lock()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def apply(self, desired: List[dict]) -> Tuple[Set[GroupVersionKind], Optional[errors.MultiError]]:
        """
        Apply the latest declared objects

        Args:
            desired: Every object declared in the source, enabled or disabled

        Returns:
            Tuple of (GVKs which can be synced, errors of the cycle)
        """
        with self._mux:
            self._last_desired = list(desired)
            return self._sync(self._last_desired)

    def refresh(self) -> Optional[errors.MultiError]:
        """Re-apply the most recently declared objects to correct drift"""
        with self._mux:
            if self._last_desired is None:
                logger.debug("Nothing applied yet, skipping refresh")
                return None
            _, errs = self._sync(self._last_desired)
            return errs

    def run(self, resync_period: float, stop_event: threading.Event):
        """Call refresh every resync_period seconds until stop_event is set"""
        while not stop_event.wait(resync_period):
            try:
                errs = self.refresh()
            except Exception as e:
                logger.error(f"Unexpected error refreshing {self.scope}: {e}", exc_info=True)
                continue
            if errs:
                logger.error(f"Refresh of {self.scope} failed: {errs.format_single_line()}")

    def last_errors(self) -> Optional[errors.MultiError]:
        return self._errs

    def syncing(self) -> bool:
        return self._syncing

    def apply_options(self) -> ApplyOptions:
        return ApplyOptions(
            server_side_apply=True,
            force_conflicts=True,
            field_manager=Config.FIELD_MANAGER,
            inventory_policy=self.policy,
            reconcile_timeout=Config.RECONCILE_TIMEOUT,
            prune_timeout=Config.PRUNE_TIMEOUT,
            protected_namespaces=set(self.special_namespaces),
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _sync(self, objs: List[dict]) -> Tuple[Set[GroupVersionKind], Optional[errors.MultiError]]:
        self._errs = None
        self._syncing = True
        try:
            return self._do_sync(objs)
        finally:
            self._syncing = False

    def _do_sync(self, objs: List[dict]) -> Tuple[Set[GroupVersionKind], Optional[errors.MultiError]]:
        self.inventory.check_size()
        stats = ApplyStats(start_time=datetime.now())
        cache = index_by_identity(objs)

        enabled, disabled = partition_objects(objs)
        if disabled:
            logger.info(f"{len(disabled)} objects to be disabled: {describe(disabled)}")
            try:
                disabled_count, disable_errs = self.disabler.disable_objects(disabled)
            except errors.ConfigSyncError as e:
                # Disabled objects are still in the inventory and would be pruned
                self._errs = errors.append(self._errs, e)
                return set(), self._errs
            self._errs = errors.append(self._errs, disable_errs)
            stats.disable_objs.total = len(disabled)
            stats.disable_objs.succeeded = disabled_count

        logger.info(f"{len(enabled)} objects to be applied: {describe(enabled)}")
        resources, conversion_errs = to_unstructured(enabled)
        if conversion_errs is not None:
            self._errs = errors.append(self._errs, conversion_errs)
            return set(), self._errs

        unknown_types: Set[ObjectIdentity] = set()
        conflicts: Set[ObjectIdentity] = set()
        unchanged: List[ObjectIdentity] = []
        for event in self.engine.run(self.inventory, resources, self.apply_options()):
            if event.type == EventType.INIT:
                logger.info(f"Apply run started with action groups {event.action_groups}")
            elif event.type == EventType.ACTION_GROUP:
                logger.info(f"{event.action} {event.group}: {event.status}")
            elif event.type == EventType.ERROR:
                if errors.is_request_too_large_error(event.error):
                    err = errors.large_inventory_error(event.error, self.inventory.id)
                else:
                    err = errors.applier_error(event.error)
                self._errs = errors.append(self._errs, err)
                stats.error_type_events += 1
            elif event.type == EventType.WAIT:
                logger.debug(f"wait [op: {event.operation.value}] resource {event.identifier}")
                self._process_wait_event(event, stats)
            elif event.type == EventType.APPLY:
                if event.error is None and event.operation == ApplyOperation.UNCHANGED:
                    logger.debug(f"applied [op: {event.operation.value}] resource {event.identifier}")
                    unchanged.append(event.identifier)
                    continue
                err = self._process_apply_event(event, stats, cache, unknown_types, conflicts)
                self._errs = errors.append(self._errs, err)
            elif event.type == EventType.PRUNE:
                err = self._process_prune_event(event, stats)
                self._errs = errors.append(self._errs, err)
            else:
                logger.debug(f"Skipped {event.type} event")

        # Dependencies are only known to be reconciled once the wait phase is over
        for identity in unchanged:
            err = self._handle_skip_event(cache.get(identity), identity, stats.objs_reconciled)
            if err is not None:
                stats.apply_event.err_count += 1
                self._errs = errors.append(self._errs, err)

        gvks = set()
        for obj in objs:
            identity = ObjectIdentity.of(obj)
            if identity in unknown_types or identity in conflicts:
                continue
            gvks.add(gvk_of(obj))

        stats.end_time = datetime.now()
        self.metrics.record_sync(stats)
        if self._errs is None:
            logger.debug("All resources are up to date.")
        if stats.empty():
            logger.debug("The applier made no new progress")
        else:
            logger.info(f"The applier made new progress: {stats.string()}.")
        return gvks, self._errs

    # ------------------------------------------------------------------
    # Event classification
    # ------------------------------------------------------------------

    def _process_apply_event(self, event, stats: ApplyStats, cache: Dict[ObjectIdentity, dict],
                             unknown_types: Set[ObjectIdentity],
                             conflicts: Set[ObjectIdentity]) -> Optional[errors.ConfigSyncError]:
        identity = event.identifier
        if event.error is not None:
            stats.apply_event.err_count += 1
            if isinstance(event.error, UnknownTypeError):
                unknown_types.add(identity)
                return errors.resource_error(event.error, identity)
            if isinstance(event.error, InventoryOverlapError):
                conflicts.add(identity)
                return self._management_conflict(event, cache)
            return errors.resource_error(event.error, identity)

        logger.debug(f"applied [op: {event.operation.value}] resource {identity}")
        self._handle_metrics("update", None, identity)
        stats.apply_event.event_by_op[event.operation] += 1
        return None

    def _management_conflict(self, event, cache: Dict[ObjectIdentity, dict]) -> errors.ManagementConflictError:
        identity = event.identifier
        resource = event.resource if event.resource is not None else getattr(event.error, "resource", None)
        previous = metadata.get_annotation(resource, metadata.RESOURCE_MANAGER_KEY)
        if not previous:
            previous = getattr(event.error, "owner", "") or metadata.get_annotation(
                cache.get(identity), metadata.RESOURCE_MANAGER_KEY)
        current = metadata.manager_for(self.scope, self.sync_name)
        logger.warning(f"Management conflict for {identity}: declared by {current}, managed by {previous}")
        self.metrics.record_management_conflict(identity.kind)
        return errors.ManagementConflictError(identity, current, previous)

    @staticmethod
    def _process_wait_event(event, stats: ApplyStats):
        if event.operation == WaitOperation.RECONCILED:
            stats.objs_reconciled.add(event.identifier)

    def _handle_skip_event(self, obj: Optional[dict], identity: ObjectIdentity,
                           objs_reconciled: Set[ObjectIdentity]) -> Optional[errors.ConfigSyncError]:
        """Report an unchanged object whose dependencies have not reconciled"""
        depends_on = metadata.get_annotation(obj, metadata.DEPENDS_ON_KEY)
        if not depends_on:
            return None
        try:
            deps = parse_depends_on(depends_on)
        except ValueError as e:
            return errors.resource_error(e, identity)
        unreconciled = [dep for dep in deps if dep not in objs_reconciled]
        if unreconciled:
            logger.error(f"Dependencies of {identity} are not ready: {[str(d) for d in unreconciled]}")
            return errors.resource_error(
                Exception(f"dependencies are not reconciled: {[str(d) for d in unreconciled]}"), identity)
        return None

    def _process_prune_event(self, event, stats: ApplyStats) -> Optional[errors.ConfigSyncError]:
        identity = event.identifier
        if event.error is not None:
            stats.prune_event.err_count += 1
            return errors.resource_error(event.error, identity)

        if event.operation == PruneOperation.SKIPPED:
            logger.debug(f"Skipped pruning resource {identity}")
            if (event.resource is not None and (identity.group, identity.kind) == ("", "Namespace")
                    and identity.name in self.special_namespaces):
                # The lifecycle annotation is not reconciler metadata and stays
                try:
                    self.disabler.disable_object(event.resource)
                except (ApiException, UnknownTypeError) as e:
                    message = (f"failed to remove the reconciler metadata from {identity} "
                               f"(which is a special namespace): {e}")
                    logger.error(message)
                    return errors.applier_error(Exception(message))
                logger.debug(f"Removed the reconciler metadata from {identity} (which is a special namespace)")
            return None

        logger.debug(f"Pruned resource {identity}")
        self._handle_metrics("delete", None, identity)
        stats.prune_event.event_by_op[event.operation] += 1
        return None

    def _handle_metrics(self, operation: str, err, identity: ObjectIdentity):
        self.metrics.record_apply_operation(operation, identity.kind, status_label(err))


def new_root_applier(kube, sync_name: str, sync_namespace: str, **kwargs) -> Applier:
    """Applier for the root scope, which may manage objects in any namespace"""
    applier = Applier(kube, Config.ROOT_SCOPE, sync_name, sync_namespace, **kwargs)
    logger.debug(f"Root applier {sync_name} is initialized")
    return applier


def new_namespace_applier(kube, namespace: str, sync_name: str, **kwargs) -> Applier:
    """Applier for a namespace scope; its inventory lives in the namespace"""
    applier = Applier(kube, namespace, sync_name, namespace, **kwargs)
    logger.debug(f"Applier {namespace}/{sync_name} is initialized")
    return applier

