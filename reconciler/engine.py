"""
Declarative apply engine.

Applies a set of objects with server-side apply, then prunes objects that
are recorded in the scope's inventory but are no longer declared, and
finally stores the new inventory. Progress is reported as a lazy sequence of
events (see reconciler.events); the run ends when the iterator is exhausted.
"""

import copy
import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Set

from kubernetes.client.rest import ApiException

from reconciler import metadata
from reconciler.config import Config
from reconciler.events import (
    ActionGroupEvent, ApplyEvent, ApplyOperation, ApplyRunError, ErrorEvent, InitEvent,
    InventoryOverlapError, PruneEvent, PruneOperation, UnknownTypeError, WaitEvent, WaitOperation,
)
from reconciler.objects import ObjectIdentity, identities

logger = logging.getLogger("reconciler.engine")

CRD_GROUP_KIND = ("apiextensions.k8s.io", "CustomResourceDefinition")
NAMESPACE_GROUP_KIND = ("", "Namespace")

WAIT_POLL_INTERVAL = 1.0


class InventoryPolicy(Enum):
    # Only touch objects already owned by this inventory
    MUST_MATCH = "MustMatch"
    # Also adopt live objects that no inventory owns
    ADOPT_IF_NO_INVENTORY = "AdoptIfNoInventory"
    # Adopt live objects regardless of their current owner
    ADOPT_ALL = "AdoptAll"


@dataclass
class ApplyOptions:
    server_side_apply: bool = True
    force_conflicts: bool = True
    field_manager: str = "configsync.gke.io"
    inventory_policy: InventoryPolicy = InventoryPolicy.ADOPT_IF_NO_INVENTORY
    reconcile_timeout: float = 60.0
    prune_timeout: float = 60.0
    protected_namespaces: Set[str] = field(default_factory=lambda: set(Config.SPECIAL_NAMESPACES))


def _group_kind(obj: dict):
    api_version = obj.get("apiVersion") or ""
    group = api_version.split("/", 1)[0] if "/" in api_version else ""
    return group, obj.get("kind") or ""


def apply_order(obj: dict) -> int:
    """CRDs first, then Namespaces, then other cluster-scoped, then namespaced objects"""
    group_kind = _group_kind(obj)
    if group_kind == CRD_GROUP_KIND:
        return 0
    if group_kind == NAMESPACE_GROUP_KIND:
        return 1
    if not (obj.get("metadata") or {}).get("namespace"):
        return 2
    return 3


def _is_established(crd: Optional[dict]) -> bool:
    if not crd:
        return False
    for condition in (crd.get("status") or {}).get("conditions") or []:
        if condition.get("type") == "Established" and condition.get("status") == "True":
            return True
    return False


class KubeApplyEngine:
    """Server-side apply + prune engine backed by the Kubernetes dynamic client"""

    def __init__(self, kube, sleep=time.sleep, clock=time.monotonic):
        self.kube = kube
        self._sleep = sleep
        self._clock = clock

    def run(self, inventory, objects: List[dict], options: ApplyOptions) -> Iterator:
        """
        Apply objects and prune the rest of the inventory

        Args:
            inventory: InventoryManager of the scope
            objects: Converted objects to apply
            options: Apply options

        Yields:
            Events describing each step; errors are reported as events,
            never raised
        """
        yield InitEvent(action_groups=["apply-0", "wait-0", "prune-0", "wait-1"])

        try:
            previous = inventory.load()
        except ApiException as e:
            yield ErrorEvent(e)
            return

        desired_ids = identities(objects)
        keep: Set[ObjectIdentity] = set()
        applied: List[dict] = []

        yield ActionGroupEvent("apply-0", "Apply", "Started")
        for obj in sorted(objects, key=apply_order):
            identity = ObjectIdentity.of(obj)
            event = self._apply_one(inventory, obj, identity, options)
            if event.error is None:
                keep.add(identity)
                applied.append(event.resource or obj)
            elif identity in previous and not isinstance(event.error, InventoryOverlapError):
                keep.add(identity)
            yield event
        yield ActionGroupEvent("apply-0", "Apply", "Finished")

        yield ActionGroupEvent("wait-0", "Wait", "Started")
        for obj in applied:
            yield self._wait_reconciled(obj, options)
        yield ActionGroupEvent("wait-0", "Wait", "Finished")

        yield ActionGroupEvent("prune-0", "Prune", "Started")
        pruned: List[dict] = []
        namespaces_in_use = {identity.namespace for identity in desired_ids if identity.namespace}
        for identity in sorted(previous - desired_ids, key=apply_order_for_identity, reverse=True):
            event = self._prune_one(inventory, identity, options, namespaces_in_use)
            if event.error is not None:
                keep.add(identity)
            elif event.operation == PruneOperation.PRUNED and event.resource is not None:
                pruned.append(event.resource)
            yield event
        yield ActionGroupEvent("prune-0", "Prune", "Finished")

        yield ActionGroupEvent("wait-1", "Wait", "Started")
        for obj in pruned:
            yield self._wait_deleted(obj, options)
        yield ActionGroupEvent("wait-1", "Wait", "Finished")

        if keep != previous:
            try:
                inventory.replace(keep)
            except ApiException as e:
                yield ErrorEvent(e)

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply_one(self, inventory, obj: dict, identity: ObjectIdentity, options: ApplyOptions) -> ApplyEvent:
        try:
            live = self.kube.get_object(obj)
        except UnknownTypeError as e:
            return ApplyEvent(identity, ApplyOperation.FAILED, error=e)
        except ApiException as e:
            return ApplyEvent(identity, ApplyOperation.FAILED, error=ApplyRunError(e))

        overlap = self._check_ownership(inventory, identity, live, options.inventory_policy)
        if overlap is not None:
            return ApplyEvent(identity, ApplyOperation.FAILED, error=overlap, resource=live)

        body = copy.deepcopy(obj)
        body_metadata = body.setdefault("metadata", {})
        body_metadata.pop("resourceVersion", None)
        body_metadata.pop("managedFields", None)
        metadata.set_annotation(body, metadata.OWNING_INVENTORY_KEY, inventory.id)

        try:
            result = self.kube.apply_object(body, options.field_manager, options.force_conflicts)
        except ApiException as e:
            return ApplyEvent(identity, ApplyOperation.FAILED, error=ApplyRunError(e))

        if live is None:
            operation = ApplyOperation.CREATED
        elif _resource_version(result) == _resource_version(live):
            operation = ApplyOperation.UNCHANGED
        else:
            operation = ApplyOperation.CONFIGURED
        return ApplyEvent(identity, operation, resource=result)

    @staticmethod
    def _check_ownership(inventory, identity, live, policy) -> Optional[InventoryOverlapError]:
        if live is None or policy == InventoryPolicy.ADOPT_ALL:
            return None
        owner = metadata.get_annotation(live, metadata.OWNING_INVENTORY_KEY)
        if owner == inventory.id:
            return None
        if not owner and policy == InventoryPolicy.ADOPT_IF_NO_INVENTORY:
            return None
        return InventoryOverlapError(identity, owner, live)

    def _wait_reconciled(self, obj: dict, options: ApplyOptions) -> WaitEvent:
        identity = ObjectIdentity.of(obj)
        if _group_kind(obj) != CRD_GROUP_KIND:
            return WaitEvent(identity, WaitOperation.RECONCILED)
        # Custom resources of a new CRD cannot be applied until it is established
        deadline = self._clock() + options.reconcile_timeout
        current = obj
        while not _is_established(current):
            if self._clock() >= deadline:
                return WaitEvent(identity, WaitOperation.TIMEOUT)
            self._sleep(WAIT_POLL_INTERVAL)
            try:
                current = self.kube.get_object(obj)
            except (ApiException, UnknownTypeError) as e:
                logger.warning(f"Failed to check whether {identity} is established: {e}")
                return WaitEvent(identity, WaitOperation.FAILED)
        return WaitEvent(identity, WaitOperation.RECONCILED)

    # ------------------------------------------------------------------
    # Prune
    # ------------------------------------------------------------------

    def _prune_one(self, inventory, identity: ObjectIdentity, options: ApplyOptions,
                   namespaces_in_use: Set[str]) -> PruneEvent:
        try:
            live = self.kube.get_by_identity(identity)
        except UnknownTypeError:
            # The kind is gone from the cluster, so the object is too
            return PruneEvent(identity, PruneOperation.PRUNED)
        except ApiException as e:
            return PruneEvent(identity, PruneOperation.FAILED, error=ApplyRunError(e))

        if live is None:
            return PruneEvent(identity, PruneOperation.PRUNED)

        owner = metadata.get_annotation(live, metadata.OWNING_INVENTORY_KEY)
        if owner and owner != inventory.id:
            logger.debug(f"Skipping prune of {identity}, owned by inventory {owner}")
            return PruneEvent(identity, PruneOperation.SKIPPED, resource=live)
        if metadata.get_annotation(live, metadata.LIFECYCLE_DELETE_KEY) == metadata.PREVENT_DELETION:
            return PruneEvent(identity, PruneOperation.SKIPPED, resource=live)
        if (identity.group, identity.kind) == NAMESPACE_GROUP_KIND:
            if identity.name in options.protected_namespaces or identity.name in namespaces_in_use:
                return PruneEvent(identity, PruneOperation.SKIPPED, resource=live)

        try:
            self.kube.delete_object(live)
        except ApiException as e:
            if e.status == 404:
                return PruneEvent(identity, PruneOperation.PRUNED)
            return PruneEvent(identity, PruneOperation.FAILED, error=ApplyRunError(e), resource=live)
        return PruneEvent(identity, PruneOperation.PRUNED, resource=live)

    def _wait_deleted(self, obj: dict, options: ApplyOptions) -> WaitEvent:
        identity = ObjectIdentity.of(obj)
        deadline = self._clock() + options.prune_timeout
        while True:
            try:
                if self.kube.get_object(obj) is None:
                    return WaitEvent(identity, WaitOperation.RECONCILED)
            except UnknownTypeError:
                return WaitEvent(identity, WaitOperation.RECONCILED)
            except ApiException as e:
                logger.warning(f"Failed to check whether {identity} is deleted: {e}")
                return WaitEvent(identity, WaitOperation.FAILED)
            if self._clock() >= deadline:
                return WaitEvent(identity, WaitOperation.TIMEOUT)
            self._sleep(WAIT_POLL_INTERVAL)


def apply_order_for_identity(identity: ObjectIdentity) -> int:
    if (identity.group, identity.kind) == CRD_GROUP_KIND:
        return 0
    if (identity.group, identity.kind) == NAMESPACE_GROUP_KIND:
        return 1
    return 2 if not identity.namespace else 3


def _resource_version(obj: Optional[dict]) -> str:
    return ((obj or {}).get("metadata") or {}).get("resourceVersion", "")
