"""
Kubernetes API access

Everything the controller reads or writes in the cluster goes through
KubernetesClient: ManagedDatabase objects (watch/get/patch-status), their
finalizer, and the credential secrets. Writes to ManagedDatabase objects carry
the last observed resourceVersion so the API server rejects stale updates.
"""

import base64
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import ConflictError
from .log import get_logger
from .models import FINALIZER, GROUP, PLURAL, VERSION, DatabaseStatus, ManagedDatabase

logger = get_logger("kube")

MAX_RETRIES = 5
RETRY_BACKOFF_BASE = 2.0


@dataclass
class StoredSecret:
    """A decoded Secret"""
    namespace: str
    name: str
    data: Dict[str, str]
    annotations: Dict[str, str] = field(default_factory=dict)


class KubernetesClient:
    """Handles all Kubernetes API interactions"""

    def __init__(self, kubeconfig: Optional[str] = None, context: Optional[str] = None):
        if kubeconfig or context:
            config.load_kube_config(config_file=kubeconfig, context=context)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                logger.warning("Failed to load in-cluster config, trying local kubeconfig")
                config.load_kube_config()

        self.api_client = client.ApiClient()
        self.v1 = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self.apiextensions = client.ApiextensionsV1Api(self.api_client)
        self._watch: Optional[watch.Watch] = None

    # ------------------------------------------------------- ManagedDatabase

    def get(self, namespace: str, name: str) -> Optional[ManagedDatabase]:
        """Fetch a ManagedDatabase, None if it no longer exists"""
        try:
            obj = self.custom.get_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL, name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return ManagedDatabase.from_object(obj)

    def list(self, namespace: str = "", retry_count: int = 0) -> Tuple[List[ManagedDatabase], str]:
        """
        List ManagedDatabase objects with exponential backoff retry logic

        Args:
            namespace: Namespace to list, empty for all namespaces
            retry_count: Current retry attempt

        Returns:
            The objects and the list's resourceVersion to start a watch from
        """
        try:
            if namespace:
                result = self.custom.list_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL)
            else:
                result = self.custom.list_cluster_custom_object(GROUP, VERSION, PLURAL)
        except ApiException as e:
            if retry_count < MAX_RETRIES and e.status not in (401, 403, 404):
                sleep_time = RETRY_BACKOFF_BASE ** retry_count
                logger.warning(f"Error listing ManagedDatabases (attempt {retry_count + 1}/{MAX_RETRIES}), "
                               f"retrying in {sleep_time}s: {e.reason}")
                time.sleep(sleep_time)
                return self.list(namespace, retry_count + 1)
            logger.error(f"Failed to list ManagedDatabases after {retry_count} retries: {e.reason}")
            raise

        items = [ManagedDatabase.from_object(obj) for obj in result.get("items", [])]
        return items, (result.get("metadata") or {}).get("resourceVersion", "")

    def watch(self, namespace: str, resource_version: str,
              timeout_seconds: int) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """
        Stream watch events starting after resource_version

        The stream ends after timeout_seconds or when stop_watch() is called.
        Yields (event type, raw object) pairs; ERROR events are raised as
        ApiException so callers can relist on 410 Gone.
        """
        self._watch = watch.Watch()
        kwargs = {
            "resource_version": resource_version,
            "timeout_seconds": timeout_seconds,
            "allow_watch_bookmarks": True,
        }
        if namespace:
            func = self.custom.list_namespaced_custom_object
            args = (GROUP, VERSION, namespace, PLURAL)
        else:
            func = self.custom.list_cluster_custom_object
            args = (GROUP, VERSION, PLURAL)

        try:
            for event in self._watch.stream(func, *args, **kwargs):
                obj = event["raw_object"] if "raw_object" in event else event["object"]
                if event["type"] == "ERROR":
                    raise ApiException(status=obj.get("code", 500), reason=obj.get("message", "watch error"))
                yield event["type"], obj
        finally:
            self._watch.stop()

    def stop_watch(self):
        if self._watch is not None:
            self._watch.stop()

    def _merge_patch(self, resource: ManagedDatabase, body: Dict[str, Any], status: bool) -> ManagedDatabase:
        body.setdefault("metadata", {})["resourceVersion"] = resource.resource_version
        try:
            if status:
                obj = self.custom.patch_namespaced_custom_object_status(
                    GROUP, VERSION, resource.namespace, PLURAL, resource.name, body)
            else:
                obj = self.custom.patch_namespaced_custom_object(
                    GROUP, VERSION, resource.namespace, PLURAL, resource.name, body)
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"{resource.key} was modified concurrently (resourceVersion "
                                    f"{resource.resource_version} is stale)") from e
            raise
        return ManagedDatabase.from_object(obj)

    def patch_status(self, resource: ManagedDatabase, status: DatabaseStatus) -> ManagedDatabase:
        """
        Write the status subresource, checked against resource.resource_version

        Raises:
            ConflictError: the object changed since it was read
        """
        return self._merge_patch(resource, {"status": status.to_dict()}, status=True)

    def add_finalizer(self, resource: ManagedDatabase) -> ManagedDatabase:
        if FINALIZER in resource.finalizers:
            return resource
        updated = self._merge_patch(resource, {"metadata": {"finalizers": resource.finalizers + [FINALIZER]}},
                                    status=False)
        logger.info(f"Added finalizer to {resource.key}")
        return updated

    def remove_finalizer(self, resource: ManagedDatabase) -> Optional[ManagedDatabase]:
        """Clear the finalizer; the API server may then erase the object"""
        if FINALIZER not in resource.finalizers:
            return resource
        remaining = [f for f in resource.finalizers if f != FINALIZER]
        try:
            updated = self._merge_patch(resource, {"metadata": {"finalizers": remaining}}, status=False)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        logger.info(f"Removed finalizer from {resource.key}")
        return updated

    # ---------------------------------------------------------------- Secrets

    def read_secret(self, namespace: str, name: str) -> Optional[StoredSecret]:
        """
        Read and decode a secret

        Returns:
            StoredSecret or None if the secret does not exist
        """
        try:
            secret = self.v1.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

        decoded = {}
        for key, value in (secret.data or {}).items():
            try:
                decoded[key] = base64.b64decode(value).decode()
            except (ValueError, UnicodeDecodeError):
                logger.warning(f"Secret {namespace}/{name} key {key} is not valid base64/UTF-8")
        return StoredSecret(
            namespace=namespace,
            name=name,
            data=decoded,
            annotations=dict(secret.metadata.annotations or {}),
        )

    def write_secret(self, namespace: str, name: str, data: Dict[str, str], labels: Dict[str, str],
                     annotations: Dict[str, str], owner: Optional[Dict[str, Any]] = None,
                     remove_keys: Sequence[str] = ()):
        """
        Create the secret, or merge new contents into it in place if it exists

        The object keeps its name, so consumers bound to it see the new value.
        Keys written by others are left alone; remove_keys are deleted.
        """
        metadata = client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            owner_references=[owner] if owner else None,
        )
        body = client.V1Secret(metadata=metadata, type="Opaque", string_data=data)
        try:
            self.v1.create_namespaced_secret(namespace, body)
            logger.info(f"Created secret {namespace}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise
            patch = {
                "metadata": {"labels": labels, "annotations": annotations},
                "stringData": data,
            }
            if remove_keys:
                patch["data"] = {key: None for key in remove_keys}
            self.v1.patch_namespaced_secret(name, namespace, patch)
            logger.info(f"Updated secret {namespace}/{name}")

    def delete_secret(self, namespace: str, name: str):
        try:
            self.v1.delete_namespaced_secret(name, namespace)
            logger.info(f"Deleted secret {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # -------------------------------------------------------------------- CRD

    def apply_crd(self, manifest: Dict[str, Any]):
        """Create or update the ManagedDatabase CustomResourceDefinition"""
        name = manifest["metadata"]["name"]
        try:
            self.apiextensions.create_custom_resource_definition(manifest)
            logger.info(f"Created CRD: {name}")
        except ApiException as e:
            if e.status != 409:
                raise
            self.apiextensions.patch_custom_resource_definition(name, manifest)
            logger.info(f"CRD {name} already exists, updated")
