"""
Identity of declared objects and the enabled/disabled partition.

Declared objects are plain manifest dicts as produced by the parser.
"""

import copy
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from reconciler import errors
from reconciler.metadata import is_management_disabled


@dataclass(frozen=True)
class GroupKind:
    group: str
    kind: str

    def __str__(self):
        return f"{self.kind}.{self.group}" if self.group else self.kind


@dataclass(frozen=True)
class GroupVersionKind:
    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group, version, kind)

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def __str__(self):
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class ObjectIdentity:
    """Key of an object in an inventory: group, kind, namespace and name"""
    group: str
    kind: str
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: dict) -> "ObjectIdentity":
        gvk = gvk_of(obj)
        metadata = obj.get("metadata") or {}
        return cls(gvk.group, gvk.kind, metadata.get("namespace") or "", metadata.get("name") or "")

    @classmethod
    def from_inventory(cls, entry: dict) -> "ObjectIdentity":
        return cls(entry.get("group", ""), entry.get("kind", ""),
                   entry.get("namespace", ""), entry.get("name", ""))

    def to_inventory(self) -> dict:
        return {"group": self.group, "kind": self.kind,
                "namespace": self.namespace, "name": self.name}

    def to_status(self) -> dict:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "gvk": {"group": self.group, "kind": self.kind},
        }

    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def __str__(self):
        return f"{self.group_kind()}, {self.namespace}/{self.name}"


def gvk_of(obj: dict) -> GroupVersionKind:
    return GroupVersionKind.from_api_version(obj.get("apiVersion") or "", obj.get("kind") or "")


def identities(objs: Iterable[dict]) -> Set[ObjectIdentity]:
    return {ObjectIdentity.of(obj) for obj in objs}


def index_by_identity(objs: Iterable[dict]) -> Dict[ObjectIdentity, dict]:
    return {ObjectIdentity.of(obj): obj for obj in objs}


def describe(objs: Iterable[dict]) -> List[str]:
    return [str(ObjectIdentity.of(obj)) for obj in objs]


def partition_objects(objs: Iterable[dict]) -> Tuple[List[dict], List[dict]]:
    """
    Split declared objects by their management annotation

    Args:
        objs: Declared objects

    Returns:
        Tuple of (enabled, disabled); the relative order of each list
        follows the input
    """
    enabled, disabled = [], []
    for obj in objs:
        if is_management_disabled(obj):
            disabled.append(obj)
        else:
            enabled.append(obj)
    return enabled, disabled


def to_unstructured(objs: Iterable[dict]) -> Tuple[List[dict], Optional[errors.MultiError]]:
    """
    Convert declared objects into the form sent to the apply engine

    Every object must carry apiVersion, kind and metadata.name. Objects are
    deep-copied so the engine never mutates the cached parser result.
    """
    result, errs = [], None
    for obj in objs:
        if not isinstance(obj, dict):
            errs = errors.append(errs, errors.internal_error(
                f"unable to convert {type(obj).__name__} to an unstructured object"))
            continue
        if not obj.get("apiVersion") or not obj.get("kind"):
            errs = errors.append(errs, errors.parse_error(
                errors.UNKNOWN_KIND_CODE,
                f"unable to convert object without apiVersion/kind: {(obj.get('metadata') or {}).get('name', '')}"))
            continue
        if not (obj.get("metadata") or {}).get("name"):
            errs = errors.append(errs, errors.parse_error(
                errors.MISSING_NAME_CODE, f"unable to convert {obj['kind']} without metadata.name"))
            continue
        result.append(copy.deepcopy(obj))
    return result, errs
