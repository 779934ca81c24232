"""
Kubernetes API access for the reconciler.

Wraps the dynamic client for arbitrary declared kinds and the custom objects
API for the reconciler's own resources (ResourceGroup, RootSync, RepoSync).
"""

import time
import logging
from typing import Optional

from kubernetes import client, config, dynamic
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from reconciler.config import Config
from reconciler.events import UnknownTypeError
from reconciler.objects import GroupVersionKind, ObjectIdentity, gvk_of

logger = logging.getLogger("reconciler.kube")


def is_not_found(err: Exception) -> bool:
    return isinstance(err, NotFoundError) or getattr(err, "status", None) == 404


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        if api_client is None:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                logger.warning("Failed to load in-cluster config, trying local kubeconfig")
                config.load_kube_config()
            api_client = client.ApiClient()

        self.api_client = api_client
        self.custom = client.CustomObjectsApi(api_client)
        self._dynamic = None

    @property
    def dynamic(self) -> dynamic.DynamicClient:
        # Discovery runs on first use, not at construction
        if self._dynamic is None:
            self._dynamic = dynamic.DynamicClient(self.api_client)
        return self._dynamic

    # ------------------------------------------------------------------
    # Resource discovery
    # ------------------------------------------------------------------

    def resource_for(self, gvk: GroupVersionKind):
        """
        Look up the API resource serving a kind

        Raises:
            UnknownTypeError: if the API server does not serve the kind,
                typically because its CRD is not established yet
        """
        try:
            return self.dynamic.resources.get(api_version=gvk.api_version, kind=gvk.kind)
        except ResourceNotFoundError as e:
            self.dynamic.resources.invalidate_cache()
            raise UnknownTypeError(gvk, e)

    def resource_for_identity(self, identity: ObjectIdentity):
        """Find the preferred resource for an inventory identity, which has no version"""
        try:
            return self.dynamic.resources.get(group=identity.group, kind=identity.kind)
        except ResourceNotFoundError as e:
            raise UnknownTypeError(GroupVersionKind(identity.group, "", identity.kind), e)

    # ------------------------------------------------------------------
    # Object operations
    # ------------------------------------------------------------------

    def get_object(self, obj: dict, retry_count: int = 0) -> Optional[dict]:
        """
        Fetch the live state of a declared object with exponential backoff retry logic

        Args:
            obj: Declared object (apiVersion, kind, metadata.name/namespace)
            retry_count: Current retry attempt

        Returns:
            The live object as a dict, or None if it does not exist
        """
        resource = self.resource_for(gvk_of(obj))
        metadata = obj.get("metadata") or {}
        return self._get(resource, metadata.get("name"), metadata.get("namespace"), retry_count)

    def get_by_identity(self, identity: ObjectIdentity) -> Optional[dict]:
        resource = self.resource_for_identity(identity)
        return self._get(resource, identity.name, identity.namespace or None, 0)

    def _get(self, resource, name: str, namespace: Optional[str], retry_count: int) -> Optional[dict]:
        kwargs = {"name": name}
        if resource.namespaced:
            kwargs["namespace"] = namespace
        try:
            return self.dynamic.get(resource, **kwargs).to_dict()
        except NotFoundError:
            return None
        except ApiException as e:
            status = getattr(e, "status", None) or 500
            if retry_count < Config.MAX_RETRIES and (status >= 500 or status == 429):
                sleep_time = Config.RETRY_BACKOFF_BASE ** retry_count
                logger.warning(f"Error fetching {resource.kind} {namespace}/{name} "
                               f"(attempt {retry_count + 1}/{Config.MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e}")
                time.sleep(sleep_time)
                return self._get(resource, name, namespace, retry_count + 1)
            raise

    def apply_object(self, obj: dict, field_manager: str, force_conflicts: bool = True) -> dict:
        """Server-side apply obj under field_manager"""
        resource = self.resource_for(gvk_of(obj))
        metadata = obj.get("metadata") or {}
        kwargs = {"body": obj, "name": metadata.get("name"),
                  "field_manager": field_manager, "force_conflicts": force_conflicts}
        if resource.namespaced:
            kwargs["namespace"] = metadata.get("namespace")
        return self.dynamic.server_side_apply(resource, **kwargs).to_dict()

    def update_object(self, obj: dict) -> dict:
        """Replace obj with a regular (client-side) update"""
        resource = self.resource_for(gvk_of(obj))
        metadata = obj.get("metadata") or {}
        kwargs = {"body": obj, "name": metadata.get("name")}
        if resource.namespaced:
            kwargs["namespace"] = metadata.get("namespace")
        return self.dynamic.replace(resource, **kwargs).to_dict()

    def delete_object(self, obj: dict):
        resource = self.resource_for(gvk_of(obj))
        metadata = obj.get("metadata") or {}
        kwargs = {"name": metadata.get("name")}
        if resource.namespaced:
            kwargs["namespace"] = metadata.get("namespace")
        self.dynamic.delete(resource, **kwargs)
