"""
Ownership inventory of a reconciler scope.

The set of objects a scope owns is persisted in one ResourceGroup per
RootSync/RepoSync, in the same namespace and with the same name. The set is
always written whole; there is no incremental update.
"""

import json
import logging
from typing import Iterable, Optional, Set

from kubernetes.client.rest import ApiException

from reconciler import metadata
from reconciler.objects import ObjectIdentity

logger = logging.getLogger("reconciler.inventory")

RESOURCE_GROUP_GROUP = "kpt.dev"
RESOURCE_GROUP_VERSION = "v1alpha1"
RESOURCE_GROUP_PLURAL = "resourcegroups"
RESOURCE_GROUP_KIND = "ResourceGroup"

# Maximum request size accepted by etcd
MAX_REQUEST_BYTES_STR = "1.5M"
MAX_REQUEST_BYTES = int(1.5 * 1024 * 1024)


def inventory_id(name: str, namespace: str) -> str:
    """Inventory ID of a RootSync/RepoSync: <NAMESPACE>_<NAME>"""
    return f"{namespace}_{name}"


def _sort_key(identity: ObjectIdentity):
    return (identity.group, identity.kind, identity.namespace, identity.name)


class InventoryManager:
    """Loads and replaces the ResourceGroup inventory of one scope"""

    def __init__(self, kube, name: str, namespace: str):
        self.kube = kube
        self.name = name
        self.namespace = namespace

    @property
    def id(self) -> str:
        return inventory_id(self.name, self.namespace)

    def new_resource_group(self) -> dict:
        rg = {
            "apiVersion": f"{RESOURCE_GROUP_GROUP}/{RESOURCE_GROUP_VERSION}",
            "kind": RESOURCE_GROUP_KIND,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": {"resources": []},
        }
        metadata.set_label(rg, metadata.INVENTORY_LABEL, self.id)
        metadata.set_label(rg, metadata.MANAGED_BY_KEY, metadata.MANAGED_BY_VALUE)
        metadata.set_label(rg, metadata.SYNC_NAMESPACE_LABEL, self.namespace)
        metadata.set_label(rg, metadata.SYNC_NAME_LABEL, self.name)
        metadata.set_annotation(rg, metadata.RESOURCE_MANAGEMENT_KEY, metadata.RESOURCE_MANAGEMENT_ENABLED)
        return rg

    def get(self) -> Optional[dict]:
        """Fetch the ResourceGroup, or None if it has not been created yet"""
        try:
            return self.kube.custom.get_namespaced_custom_object(
                RESOURCE_GROUP_GROUP, RESOURCE_GROUP_VERSION, self.namespace,
                RESOURCE_GROUP_PLURAL, self.name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def load(self) -> Set[ObjectIdentity]:
        """
        Load the identities owned by this scope

        Raises:
            ApiException: if the ResourceGroup cannot be read; callers must
                not apply without knowing current ownership
        """
        rg = self.get()
        if rg is None:
            logger.info(f"No inventory {self.id} found, starting fresh")
            return set()
        entries = (rg.get("spec") or {}).get("resources") or []
        return {ObjectIdentity.from_inventory(entry) for entry in entries}

    def replace(self, ids: Iterable[ObjectIdentity]):
        """
        Replace the stored identity set with ids

        Args:
            ids: The complete new set of owned identities
        """
        resources = [identity.to_inventory() for identity in sorted(set(ids), key=_sort_key)]
        rg = self.get()
        if rg is None:
            rg = self.new_resource_group()
            rg["spec"]["resources"] = resources
            self.kube.custom.create_namespaced_custom_object(
                RESOURCE_GROUP_GROUP, RESOURCE_GROUP_VERSION, self.namespace,
                RESOURCE_GROUP_PLURAL, rg)
        else:
            rg.setdefault("spec", {})["resources"] = resources
            self.kube.custom.replace_namespaced_custom_object(
                RESOURCE_GROUP_GROUP, RESOURCE_GROUP_VERSION, self.namespace,
                RESOURCE_GROUP_PLURAL, self.name, rg)
        logger.debug(f"Inventory {self.id} replaced with {len(resources)} objects")

    def check_size(self):
        """Warn when the ResourceGroup approaches the etcd request size limit"""
        try:
            rg = self.get()
        except ApiException as e:
            logger.warning(f"Failed to get ResourceGroup {self.namespace}/{self.name} to check its size: {e}")
            return
        if rg is None:
            return
        size = len(json.dumps(rg))
        if size > MAX_REQUEST_BYTES / 2:
            logger.warning(
                f"ResourceGroup {self.namespace}/{self.name} is close to the maximum object size limit "
                f"(size: {size}, max: {MAX_REQUEST_BYTES_STR}). There are too many resources being synced "
                f"than the reconciler can handle! Please split your repo into smaller repos to avoid future failure.")
