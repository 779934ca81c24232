"""
Manifest parser for an unstructured repository.

Every .yaml/.yml/.json file under the policy directory is loaded with
PyYAML, List kinds are expanded, the objects are validated for the scope of
the reconciler, and finally annotated with the reconciler's management
metadata. Blocking problems are raised together as one MultiError.
"""

import os
import json
import logging
from typing import Dict, List, Optional, Set, Tuple

import yaml
from kubernetes.client.rest import ApiException

from reconciler import errors, metadata
from reconciler.config import Config
from reconciler.objects import GroupKind, ObjectIdentity, gvk_of
from reconciler.state import SourceState

logger = logging.getLogger("reconciler.parser")

MANIFEST_EXTENSIONS = (".yaml", ".yml", ".json")

# Built-in kinds which are not namespaced; CRDs in the source extend this
CLUSTER_SCOPED_KINDS = {
    GroupKind("", "Namespace"),
    GroupKind("", "Node"),
    GroupKind("", "PersistentVolume"),
    GroupKind("apiextensions.k8s.io", "CustomResourceDefinition"),
    GroupKind("apiregistration.k8s.io", "APIService"),
    GroupKind("admissionregistration.k8s.io", "MutatingWebhookConfiguration"),
    GroupKind("admissionregistration.k8s.io", "ValidatingWebhookConfiguration"),
    GroupKind("rbac.authorization.k8s.io", "ClusterRole"),
    GroupKind("rbac.authorization.k8s.io", "ClusterRoleBinding"),
    GroupKind("scheduling.k8s.io", "PriorityClass"),
    GroupKind("storage.k8s.io", "StorageClass"),
    GroupKind("storage.k8s.io", "CSIDriver"),
    GroupKind("policy", "PodSecurityPolicy"),
    GroupKind("networking.k8s.io", "IngressClass"),
    GroupKind("node.k8s.io", "RuntimeClass"),
}

NAMESPACE_GROUP_KIND = GroupKind("", "Namespace")
CRD_GROUP_KIND = GroupKind("apiextensions.k8s.io", "CustomResourceDefinition")


def resource_id(obj: dict) -> str:
    """group_kind_namespace_name, or group_kind_name for cluster-scoped objects"""
    identity = ObjectIdentity.of(obj)
    if identity.namespace:
        return f"{identity.group}_{identity.kind.lower()}_{identity.namespace}_{identity.name}"
    return f"{identity.group}_{identity.kind.lower()}_{identity.name}"


def read_manifests(path: str) -> Tuple[List[dict], Optional[errors.MultiError]]:
    """Load every object of one manifest file, expanding List kinds"""
    try:
        with open(path) as f:
            documents = list(yaml.safe_load_all(f))
    except (OSError, yaml.YAMLError) as e:
        return [], errors.append(None, errors.parse_error(
            errors.OBJECT_PARSE_ERROR_CODE, f"unable to parse {path}: {e}"))

    objs, errs = [], None
    for doc in documents:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            errs = errors.append(errs, errors.parse_error(
                errors.OBJECT_PARSE_ERROR_CODE, f"{path} contains a document which is not an object"))
            continue
        if (doc.get("kind") or "").endswith("List") and isinstance(doc.get("items"), list):
            for item in doc["items"]:
                if isinstance(item, dict):
                    objs.append(item)
                else:
                    errs = errors.append(errs, errors.parse_error(
                        errors.OBJECT_PARSE_ERROR_CODE, f"{path} contains a list item which is not an object"))
            continue
        objs.append(doc)
    return objs, errs


class Parser:
    """Parses and validates the manifests of one scope"""

    def __init__(self, scope: str, sync_name: str, cluster_name: str = "",
                 git_repo: str = "", git_branch: str = "", git_rev: str = "", kube=None):
        self.scope = scope
        self.sync_name = sync_name
        self.cluster_name = cluster_name
        self.git_context = {"repo": git_repo, "branch": git_branch, "rev": git_rev}
        self.kube = kube

    def is_root(self) -> bool:
        return self.scope == Config.ROOT_SCOPE

    def parse(self, state: SourceState) -> List[dict]:
        """
        Parse the files of a source snapshot

        Args:
            state: Source state with files listed

        Returns:
            Validated objects annotated with reconciler metadata

        Raises:
            MultiError: All blocking errors found in the source
        """
        logger.info(f"Parsing files from source dir: {state.policy_dir}")
        objs, errs = [], None
        paths: Dict[int, str] = {}
        for path in state.files:
            if not path.endswith(MANIFEST_EXTENSIONS) or os.path.basename(path).startswith("."):
                continue
            file_objs, file_errs = read_manifests(path)
            errs = errors.append(errs, file_errs)
            for obj in file_objs:
                paths[id(obj)] = os.path.relpath(path, state.policy_dir)
                objs.append(obj)

        objs, validate_errs = self.validate(objs)
        errs = errors.append(errs, validate_errs)
        if errs is not None:
            raise errs

        if self.is_root():
            objs, ns_errs = self.add_implicit_namespaces(objs)
            if ns_errs is not None:
                raise ns_errs

        for obj in objs:
            self.annotate(obj, paths.get(id(obj), ""), state.commit)
        logger.info(f"Parsed {len(objs)} objects at commit {state.commit}")
        return objs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, objs: List[dict]) -> Tuple[List[dict], Optional[errors.MultiError]]:
        errs = None
        valid = []
        for obj in objs:
            err = self._validate_object(obj)
            if err is not None:
                errs = errors.append(errs, err)
            else:
                valid.append(obj)

        cluster_scoped = self._cluster_scoped_kinds(valid)
        for obj in valid:
            gk = gvk_of(obj).group_kind()
            obj_metadata = obj["metadata"]
            if gk in cluster_scoped:
                if obj_metadata.get("namespace"):
                    errs = errors.append(errs, errors.parse_error(
                        errors.BAD_SCOPE_CODE,
                        f"cluster-scoped {gk} must not declare metadata.namespace", [ObjectIdentity.of(obj)]))
                elif not self.is_root():
                    errs = errors.append(errs, errors.parse_error(
                        errors.BAD_SCOPE_CODE,
                        f"cluster-scoped {gk} cannot be declared in the repository of namespace {self.scope}",
                        [ObjectIdentity.of(obj)]))
                continue
            namespace = obj_metadata.get("namespace")
            if self.is_root():
                if not namespace:
                    obj_metadata["namespace"] = "default"
            elif not namespace:
                obj_metadata["namespace"] = self.scope
            elif namespace != self.scope:
                errs = errors.append(errs, errors.parse_error(
                    errors.BAD_SCOPE_CODE,
                    f"objects in the repository of namespace {self.scope} must not declare namespace {namespace}",
                    [ObjectIdentity.of(obj)]))

        seen: Set[ObjectIdentity] = set()
        for obj in valid:
            identity = ObjectIdentity.of(obj)
            if identity in seen:
                errs = errors.append(errs, errors.parse_error(
                    errors.NAME_COLLISION_CODE, f"{identity} is declared more than once", [identity]))
            seen.add(identity)
        return valid, errs

    @staticmethod
    def _validate_object(obj: dict) -> Optional[errors.ConfigSyncError]:
        if not obj.get("apiVersion") or not obj.get("kind"):
            return errors.parse_error(errors.OBJECT_PARSE_ERROR_CODE,
                                      f"object is missing apiVersion or kind: {obj.get('metadata')}")
        if not isinstance(obj.get("metadata"), dict) or not obj["metadata"].get("name"):
            return errors.parse_error(errors.MISSING_NAME_CODE,
                                      f"{obj['kind']} object is missing metadata.name")
        value = metadata.get_annotation(obj, metadata.RESOURCE_MANAGEMENT_KEY)
        if value and value != metadata.RESOURCE_MANAGEMENT_DISABLED:
            return errors.parse_error(
                errors.ILLEGAL_MANAGEMENT_ANNOTATION_CODE,
                f"{metadata.RESOURCE_MANAGEMENT_KEY} may only be set to "
                f"{metadata.RESOURCE_MANAGEMENT_DISABLED!r}, got {value!r}",
                [ObjectIdentity.of(obj)])
        return None

    @staticmethod
    def _cluster_scoped_kinds(objs: List[dict]) -> Set[GroupKind]:
        kinds = set(CLUSTER_SCOPED_KINDS)
        for obj in objs:
            if gvk_of(obj).group_kind() != CRD_GROUP_KIND:
                continue
            spec = obj.get("spec") or {}
            if spec.get("scope") == "Cluster":
                kinds.add(GroupKind(spec.get("group", ""), (spec.get("names") or {}).get("kind", "")))
        return kinds

    # ------------------------------------------------------------------
    # Implicit namespaces
    # ------------------------------------------------------------------

    def add_implicit_namespaces(self, objs: List[dict]) -> Tuple[List[dict], Optional[errors.MultiError]]:
        """
        Declare namespaces used by objects but missing from the source

        Implicit namespaces carry the detach lifecycle annotation so they are
        never deleted when the last object in them goes away.
        """
        declared, used = set(), set()
        for obj in objs:
            identity = ObjectIdentity.of(obj)
            if identity.group_kind() == NAMESPACE_GROUP_KIND:
                declared.add(identity.name)
            elif identity.namespace:
                used.add(identity.namespace)

        errs = None
        manager = metadata.manager_for(self.scope, self.sync_name)
        for namespace in sorted(used - declared - {Config.SYNC_NAMESPACE}):
            if self.kube is not None:
                try:
                    existing = self.kube.get_by_identity(ObjectIdentity("", "Namespace", "", namespace))
                except ApiException as e:
                    errs = errors.append(errs, errors.api_server_error(
                        e, f"unable to check the existence of the implicit namespace {namespace!r}"))
                    continue
                if existing is not None and metadata.get_annotation(existing, metadata.RESOURCE_MANAGER_KEY) != manager:
                    continue
            objs.append({
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {
                    "name": namespace,
                    "annotations": {metadata.LIFECYCLE_DELETE_KEY: metadata.PREVENT_DELETION},
                },
            })
        return objs, errs

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def annotate(self, obj: dict, source_path: str, commit: str):
        """Add the reconciler's management annotations and labels to obj"""
        if metadata.is_management_disabled(obj):
            return
        metadata.set_annotation(obj, metadata.RESOURCE_MANAGEMENT_KEY, metadata.RESOURCE_MANAGEMENT_ENABLED)
        metadata.set_annotation(obj, metadata.RESOURCE_MANAGER_KEY, metadata.manager_for(self.scope, self.sync_name))
        metadata.set_annotation(obj, metadata.SYNC_TOKEN_KEY, commit)
        metadata.set_annotation(obj, metadata.RESOURCE_ID_KEY, resource_id(obj))
        metadata.set_annotation(obj, metadata.GIT_CONTEXT_KEY, json.dumps(self.git_context, sort_keys=True))
        if source_path:
            metadata.set_annotation(obj, metadata.SOURCE_PATH_KEY, source_path)
        if self.cluster_name:
            metadata.set_annotation(obj, metadata.CLUSTER_NAME_KEY, self.cluster_name)
        metadata.set_label(obj, metadata.MANAGED_BY_KEY, metadata.MANAGED_BY_VALUE)
        metadata.set_label(obj, metadata.DECLARED_VERSION_LABEL, gvk_of(obj).version)
