"""
Release of objects whose management was disabled in the source.

A disabled object is first dropped from the scope's inventory, so the apply
engine will never prune it, and then stripped of the reconciler's labels and
annotations. The live object itself is left in place.
"""

import copy
import logging
from typing import Iterable, List, Optional, Tuple

from kubernetes.client.rest import ApiException

from reconciler import errors, metadata
from reconciler.config import Config
from reconciler.events import UnknownTypeError
from reconciler.objects import ObjectIdentity, gvk_of, identities

logger = logging.getLogger("reconciler.disabler")


class DisableHandler:
    """Removes disabled objects from the inventory and strips their metadata"""

    def __init__(self, kube, inventory, field_manager: Optional[str] = None,
                 ssa_incompatible_kinds: Optional[Iterable[str]] = None):
        self.kube = kube
        self.inventory = inventory
        self.field_manager = field_manager or Config.FIELD_MANAGER
        if ssa_incompatible_kinds is None:
            ssa_incompatible_kinds = Config.SSA_INCOMPATIBLE_KINDS
        self.ssa_incompatible_kinds = set(ssa_incompatible_kinds)

    def disable_objects(self, objs: List[dict]) -> Tuple[int, Optional[errors.MultiError]]:
        """
        Disable management of objs

        Args:
            objs: Declared objects carrying the disabled management annotation

        Returns:
            Tuple of (number of objects disabled, per-object errors)

        Raises:
            ConfigSyncError: the inventory could not be updated; no object
                was touched and the objects are still owned by the inventory
        """
        try:
            self.remove_from_inventory(objs)
        except ApiException as e:
            if errors.is_request_too_large_error(e):
                raise errors.large_inventory_error(e, self.inventory.id)
            raise errors.applier_error(e)

        disabled_count = 0
        errs = None
        for obj in objs:
            identity = ObjectIdentity.of(obj)
            try:
                self.disable_object(obj)
            except (ApiException, UnknownTypeError) as e:
                logger.warning(f"Failed to disable object {identity}: {e}")
                errs = errors.append(errs, errors.resource_error(e, identity))
            else:
                logger.debug(f"Disabled object {identity}")
                disabled_count += 1
        return disabled_count, errs

    def remove_from_inventory(self, objs: List[dict]):
        old_ids = self.inventory.load()
        new_ids = old_ids - identities(objs)
        if new_ids != old_ids:
            self.inventory.replace(new_ids)

    def disable_object(self, obj: dict):
        """
        Strip reconciler labels and annotations from the live copy of obj

        A live object which no longer exists counts as disabled.
        """
        live = self.kube.get_object(obj)
        if live is None:
            return
        if not metadata.has_config_sync_metadata(live):
            return
        labels, annotations, updated = metadata.remove_config_sync_metadata(live)
        if not updated:
            return

        group_kind = gvk_of(live).group_kind()
        if f"{group_kind.group}/{group_kind.kind}" in self.ssa_incompatible_kinds:
            updated_obj = copy.deepcopy(live)
            updated_obj["metadata"]["labels"] = labels
            updated_obj["metadata"]["annotations"] = annotations
            self.kube.update_object(updated_obj)
            return

        # The patch carries every field this manager owns, not only the metadata
        patch = copy.deepcopy(live)
        patch.pop("status", None)
        patch_metadata = patch.setdefault("metadata", {})
        for key in ("managedFields", "resourceVersion", "uid", "creationTimestamp", "generation"):
            patch_metadata.pop(key, None)
        patch_metadata["labels"] = labels
        patch_metadata["annotations"] = annotations
        self.kube.apply_object(patch, self.field_manager, force_conflicts=True)
