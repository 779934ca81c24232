"""
Labels and annotations the reconciler places on the objects it manages,
and helpers to read, detect and strip them.
"""

from typing import Dict, Optional, Tuple

# Management annotation
RESOURCE_MANAGEMENT_KEY = "configmanagement.gke.io/managed"
RESOURCE_MANAGEMENT_ENABLED = "enabled"
RESOURCE_MANAGEMENT_DISABLED = "disabled"

# Scope of the reconciler which declared the object
RESOURCE_MANAGER_KEY = "configsync.gke.io/manager"

SYNC_TOKEN_KEY = "configmanagement.gke.io/token"
SOURCE_PATH_KEY = "configmanagement.gke.io/source-path"
CLUSTER_NAME_KEY = "configmanagement.gke.io/cluster-name"
RESOURCE_ID_KEY = "configsync.gke.io/resource-id"
GIT_CONTEXT_KEY = "configsync.gke.io/git-context"
DECLARED_VERSION_LABEL = "configsync.gke.io/declared-version"

# Inventory bookkeeping shared with the apply engine
OWNING_INVENTORY_KEY = "config.k8s.io/owning-inventory"
INVENTORY_LABEL = "cli-utils.sigs.k8s.io/inventory-id"
DEPENDS_ON_KEY = "config.kubernetes.io/depends-on"

LIFECYCLE_DELETE_KEY = "client.lifecycle.config.k8s.io/deletion"
PREVENT_DELETION = "detach"

MANAGED_BY_KEY = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "configmanagement.gke.io"

SYNC_NAMESPACE_LABEL = "configsync.gke.io/sync-namespace"
SYNC_NAME_LABEL = "configsync.gke.io/sync-name"

CONFIG_SYNC_PREFIXES = ("configmanagement.gke.io/", "configsync.gke.io/")

CONFIG_SYNC_ANNOTATIONS = {OWNING_INVENTORY_KEY}
CONFIG_SYNC_LABELS = {MANAGED_BY_KEY, DECLARED_VERSION_LABEL}


def labels_of(obj: dict) -> Dict[str, str]:
    return dict((obj.get("metadata") or {}).get("labels") or {})


def annotations_of(obj: dict) -> Dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def get_annotation(obj: Optional[dict], key: str) -> str:
    if not obj:
        return ""
    return annotations_of(obj).get(key, "")


def set_annotation(obj: dict, key: str, value: str):
    metadata = obj.setdefault("metadata", {})
    if metadata.get("annotations") is None:
        metadata["annotations"] = {}
    metadata["annotations"][key] = value


def set_label(obj: dict, key: str, value: str):
    metadata = obj.setdefault("metadata", {})
    if metadata.get("labels") is None:
        metadata["labels"] = {}
    metadata["labels"][key] = value


def is_management_disabled(obj: dict) -> bool:
    return get_annotation(obj, RESOURCE_MANAGEMENT_KEY) == RESOURCE_MANAGEMENT_DISABLED


def _is_config_sync_annotation(key: str) -> bool:
    return key in CONFIG_SYNC_ANNOTATIONS or key.startswith(CONFIG_SYNC_PREFIXES)


def _is_config_sync_label(key: str, value: str) -> bool:
    if key == MANAGED_BY_KEY:
        return value == MANAGED_BY_VALUE
    return key in CONFIG_SYNC_LABELS or key.startswith(CONFIG_SYNC_PREFIXES)


def has_config_sync_metadata(obj: dict) -> bool:
    for key in annotations_of(obj):
        if _is_config_sync_annotation(key):
            return True
    return any(_is_config_sync_label(k, v) for k, v in labels_of(obj).items())


def remove_config_sync_metadata(obj: dict) -> Tuple[Dict[str, str], Dict[str, str], bool]:
    """
    Compute the labels and annotations of obj with reconciler metadata removed

    The management annotation is kept and set to disabled so that a later
    cycle still recognizes the object as released.

    Returns:
        Tuple of (labels, annotations, updated) where updated tells whether
        anything differs from the object's current metadata
    """
    labels = labels_of(obj)
    annotations = annotations_of(obj)

    new_labels = {k: v for k, v in labels.items() if not _is_config_sync_label(k, v)}
    new_annotations = {k: v for k, v in annotations.items() if not _is_config_sync_annotation(k)}
    new_annotations[RESOURCE_MANAGEMENT_KEY] = RESOURCE_MANAGEMENT_DISABLED

    updated = new_labels != labels or new_annotations != annotations
    return new_labels, new_annotations, updated


def manager_for(scope: str, sync_name: str) -> str:
    """Value of the manager annotation for objects declared by this reconciler"""
    if scope.startswith(":"):
        return f"{scope}_{sync_name}" if sync_name and sync_name != "root-sync" else scope
    return scope
