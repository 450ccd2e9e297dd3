"""Thin wrapper over the Kubernetes API used by the cache and both controllers.

Every object handed back is a plain dict with the API's camelCase keys, so the
parsers never depend on the generated model classes.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from cache.models import format_timestamp
from cluster.constants import (
    DEPLOYMENT,
    DEPLOYMENT_CONFIG,
    IDLED_AT_ANNOTATION,
    POD,
    PREVIOUS_SCALE_ANNOTATION,
    REPLICATION_CONTROLLER,
    RESOURCE_QUOTA,
    STATEFUL_SET,
)
from cluster.discovery import KINDS, ResourceKind

logger = logging.getLogger(__name__)


class ClusterError(Exception):
    """Base exception for cluster API failures"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class KindNotServedError(ClusterError):
    """The API server does not serve the requested resource kind"""
    pass


# Raised below the generated client on connection timeouts and resets
_TRANSPORT_ERRORS = (TransportError, OSError)


def _transport_error(description: str, e: Exception) -> ClusterError:
    return ClusterError(f"{description} failed: {e.__class__.__name__}: {e}")


def create_api_client() -> client.ApiClient:
    """Build an API client from the in-cluster service account, falling back to kubeconfig.

    Raises:
        ClusterError: if neither source yields a usable configuration
    """
    try:
        k8s_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except k8s_config.ConfigException:
        try:
            k8s_config.load_kube_config()
            logger.info("Loaded kubeconfig for Kubernetes client")
        except (k8s_config.ConfigException, OSError) as e:
            raise ClusterError(f"Unable to configure Kubernetes client: {e}")
    return client.ApiClient()


# kind -> (api attribute, method) for the typed clients
_LIST_METHODS = {
    POD: ('core', 'list_namespaced_pod'),
    RESOURCE_QUOTA: ('core', 'list_namespaced_resource_quota'),
    REPLICATION_CONTROLLER: ('core', 'list_namespaced_replication_controller'),
    DEPLOYMENT: ('apps', 'list_namespaced_deployment'),
    STATEFUL_SET: ('apps', 'list_namespaced_stateful_set'),
}

_SCALE_METHODS = {
    REPLICATION_CONTROLLER: ('core', 'patch_namespaced_replication_controller_scale'),
    DEPLOYMENT: ('apps', 'patch_namespaced_deployment_scale'),
    STATEFUL_SET: ('apps', 'patch_namespaced_stateful_set_scale'),
}

_PATCH_METHODS = {
    REPLICATION_CONTROLLER: ('core', 'patch_namespaced_replication_controller'),
    DEPLOYMENT: ('apps', 'patch_namespaced_deployment'),
    STATEFUL_SET: ('apps', 'patch_namespaced_stateful_set'),
}

_CUSTOM_SCALABLES = (DEPLOYMENT_CONFIG,)


class ClusterClient:
    """Read and write operations keyed by project (namespace) and resource name."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.apis = client.ApisApi(api_client)

    # -- helpers ---------------------------------------------------------

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            raise ClusterError(f"{description} failed: {e.status} {e.reason}", status=e.status)
        except _TRANSPORT_ERRORS as e:
            raise _transport_error(description, e)

    def _method(self, table: Dict[str, tuple], kind: str):
        api_name, method = table[kind]
        return getattr(getattr(self, api_name), method)

    # -- reads -----------------------------------------------------------

    def served_group_versions(self) -> List[str]:
        """Group/versions served by the API server, core "v1" included."""
        versions = ['v1']
        group_list = self._call("API group discovery", self.apis.get_api_versions)
        for group in group_list.groups or []:
            for version in group.versions or []:
                versions.append(version.group_version)
        return versions

    def list_namespaces(self) -> List[Dict[str, Any]]:
        result = self._call("listing namespaces", self.core.list_namespace)
        return [self._to_dict(ns) for ns in result.items]

    def list_objects(self, namespace: str, kind: ResourceKind) -> List[Dict[str, Any]]:
        """List every object of ``kind`` in ``namespace``.

        Raises:
            KindNotServedError: the server answered 404 for the kind
            ClusterError: any other API failure
        """
        try:
            if kind.kind in _LIST_METHODS:
                result = self._method(_LIST_METHODS, kind.kind)(namespace)
                return [self._to_dict(obj) for obj in result.items]
            result = self.custom.list_namespaced_custom_object(
                kind.group, kind.version, namespace, kind.plural
            )
            return list(result.get('items') or [])
        except ApiException as e:
            if e.status == 404:
                raise KindNotServedError(f"{kind.api_version} {kind.plural} is not served", status=404)
            raise ClusterError(
                f"listing {kind.plural} in {namespace} failed: {e.status} {e.reason}", status=e.status
            )
        except _TRANSPORT_ERRORS as e:
            raise _transport_error(f"listing {kind.plural} in {namespace}", e)

    # -- writes ----------------------------------------------------------

    def scale(self, namespace: str, kind: str, name: str, replicas: int) -> None:
        body = {'spec': {'replicas': int(replicas)}}
        description = f"scaling {kind} {namespace}/{name} to {replicas}"
        if kind in _CUSTOM_SCALABLES:
            resource = KINDS[kind]
            self._call(description, self.custom.patch_namespaced_custom_object_scale,
                       resource.group, resource.version, namespace, resource.plural, name, body)
            return
        self._call(description, self._method(_SCALE_METHODS, kind), name, namespace, body)

    def annotate(self, namespace: str, kind: str, name: str, annotations: Dict[str, Optional[str]]) -> None:
        """Merge annotations into a scalable; a None value removes the key."""
        body = {'metadata': {'annotations': annotations}}
        description = f"annotating {kind} {namespace}/{name}"
        if kind in _CUSTOM_SCALABLES:
            resource = KINDS[kind]
            self._call(description, self.custom.patch_namespaced_custom_object,
                       resource.group, resource.version, namespace, resource.plural, name, body)
            return
        self._call(description, self._method(_PATCH_METHODS, kind), name, namespace, body)

    def annotate_namespace(self, namespace: str, annotations: Dict[str, Optional[str]]) -> None:
        body = {'metadata': {'annotations': annotations}}
        self._call(f"annotating namespace {namespace}", self.core.patch_namespace, namespace, body)

    def idle_scalable(self, namespace: str, kind: str, name: str,
                      previous_replicas: int, idled_at: datetime) -> None:
        """Record the wake-up annotations, then scale the resource to zero."""
        self.annotate(namespace, kind, name, {
            IDLED_AT_ANNOTATION: format_timestamp(idled_at),
            PREVIOUS_SCALE_ANNOTATION: str(previous_replicas),
        })
        self.scale(namespace, kind, name, 0)

    def apply_quota(self, namespace: str, name: str, hard: Dict[str, str]) -> None:
        """Create the quota object, replacing it if it already exists."""
        body = {
            'apiVersion': 'v1',
            'kind': 'ResourceQuota',
            'metadata': {'name': name, 'namespace': namespace},
            'spec': {'hard': dict(hard)},
        }
        try:
            self.core.create_namespaced_resource_quota(namespace, body)
            return
        except ApiException as e:
            if e.status != 409:
                raise ClusterError(
                    f"creating quota {namespace}/{name} failed: {e.status} {e.reason}", status=e.status
                )
        except _TRANSPORT_ERRORS as e:
            raise _transport_error(f"creating quota {namespace}/{name}", e)
        self._call(f"replacing quota {namespace}/{name}",
                   self.core.replace_namespaced_resource_quota, name, namespace, body)

    def delete_quota(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_resource_quota(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise ClusterError(
                f"deleting quota {namespace}/{name} failed: {e.status} {e.reason}", status=e.status
            )
        except _TRANSPORT_ERRORS as e:
            raise _transport_error(f"deleting quota {namespace}/{name}", e)

    def delete_pod(self, namespace: str, name: str) -> None:
        try:
            self.core.delete_namespaced_pod(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise ClusterError(
                f"deleting pod {namespace}/{name} failed: {e.status} {e.reason}", status=e.status
            )
        except _TRANSPORT_ERRORS as e:
            raise _transport_error(f"deleting pod {namespace}/{name}", e)
