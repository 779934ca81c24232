"""
In-memory stand-ins for the Kubernetes API used by the tests.

FakeKube mimics KubernetesClient: declared kinds live in a dict keyed by
ObjectIdentity and server-side apply keeps resourceVersion unchanged when a
patch does not change anything. FakeCustomObjects mimics CustomObjectsApi
for ResourceGroups and RootSync/RepoSync status.
"""

import copy
from typing import Dict, Iterable, Optional

from kubernetes.client.rest import ApiException

from reconciler.events import UnknownTypeError
from reconciler.objects import GroupKind, GroupVersionKind, ObjectIdentity


def manifest(api_version: str, kind: str, name: str, namespace: str = "",
             annotations: Optional[dict] = None, labels: Optional[dict] = None, **fields) -> dict:
    """Build a minimal declared object"""
    obj = {"apiVersion": api_version, "kind": kind, "metadata": {"name": name}}
    if namespace:
        obj["metadata"]["namespace"] = namespace
    if annotations:
        obj["metadata"]["annotations"] = dict(annotations)
    if labels:
        obj["metadata"]["labels"] = dict(labels)
    obj.update(fields)
    return obj


def _strip_version(obj: dict) -> dict:
    obj = copy.deepcopy(obj)
    obj.get("metadata", {}).pop("resourceVersion", None)
    return obj


class FakeCustomObjects:
    """Namespaced custom objects keyed by (group, version, namespace, plural, name)"""

    def __init__(self):
        self.objects: Dict[tuple, dict] = {}
        self.calls = []
        # method name -> exception raised on the next call(s)
        self.failures: Dict[str, Exception] = {}

    def _maybe_fail(self, method: str):
        self.calls.append(method)
        err = self.failures.get(method)
        if err is not None:
            raise err

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        self._maybe_fail("get")
        key = (group, version, namespace, plural, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.objects[key])

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        self._maybe_fail("create")
        key = (group, version, namespace, plural, body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self._maybe_fail("replace")
        self.objects[(group, version, namespace, plural, name)] = copy.deepcopy(body)
        return copy.deepcopy(body)

    def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        self._maybe_fail("replace_status")
        self.objects[(group, version, namespace, plural, name)] = copy.deepcopy(body)
        return copy.deepcopy(body)


class FakeKube:
    """Cluster state for arbitrary kinds plus a FakeCustomObjects"""

    def __init__(self, unknown_kinds: Iterable[GroupKind] = ()):
        self.objects: Dict[ObjectIdentity, dict] = {}
        self.unknown_kinds = set(unknown_kinds)
        self.custom = FakeCustomObjects()
        self.applied = []
        self.updated = []
        self.deleted = []
        # identity -> exception raised by apply_object
        self.apply_failures: Dict[ObjectIdentity, Exception] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _check_kind(self, identity: ObjectIdentity):
        if identity.group_kind() in self.unknown_kinds:
            raise UnknownTypeError(GroupVersionKind(identity.group, "", identity.kind))

    def add(self, obj: dict) -> dict:
        """Create obj directly in the fake cluster"""
        stored = copy.deepcopy(obj)
        stored.setdefault("metadata", {})["resourceVersion"] = self._next_version()
        self.objects[ObjectIdentity.of(obj)] = stored
        return copy.deepcopy(stored)

    def get_object(self, obj: dict) -> Optional[dict]:
        return self.get_by_identity(ObjectIdentity.of(obj))

    def get_by_identity(self, identity: ObjectIdentity) -> Optional[dict]:
        self._check_kind(identity)
        live = self.objects.get(identity)
        return copy.deepcopy(live) if live is not None else None

    def apply_object(self, obj: dict, field_manager: str, force_conflicts: bool = True) -> dict:
        identity = ObjectIdentity.of(obj)
        self._check_kind(identity)
        if identity in self.apply_failures:
            raise self.apply_failures[identity]
        self.applied.append(copy.deepcopy(obj))

        live = self.objects.get(identity)
        if live is None:
            return self.add(obj)

        merged = copy.deepcopy(live)
        for key, value in obj.items():
            if key != "metadata":
                merged[key] = copy.deepcopy(value)
        merged_metadata = merged.setdefault("metadata", {})
        for key in ("labels", "annotations"):
            if key in obj.get("metadata", {}):
                merged_metadata[key] = copy.deepcopy(obj["metadata"][key])
        if _strip_version(merged) != _strip_version(live):
            merged_metadata["resourceVersion"] = self._next_version()
            self.objects[identity] = merged
        return copy.deepcopy(self.objects[identity])

    def update_object(self, obj: dict) -> dict:
        identity = ObjectIdentity.of(obj)
        self._check_kind(identity)
        if identity not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.updated.append(copy.deepcopy(obj))
        stored = copy.deepcopy(obj)
        stored.setdefault("metadata", {})["resourceVersion"] = self._next_version()
        self.objects[identity] = stored
        return copy.deepcopy(stored)

    def delete_object(self, obj: dict):
        identity = ObjectIdentity.of(obj)
        self._check_kind(identity)
        if identity not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        self.deleted.append(identity)
        del self.objects[identity]
