"""
Kubernetes service layer — all API access for App and PackageRepository CRs.

Design principles:
  - Kubeconfig loaded lazily, exactly once
  - Callers see raw ApiException so they can react to 404/409
"""

import logging
from dataclasses import dataclass
from typing import Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from appctrl.config import settings

logger = logging.getLogger("kubernetes_service")

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    if settings.IN_CLUSTER:
        config.load_incluster_config()
    else:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def kube_config_status() -> str:
    """'loaded' once a cluster config is usable, 'unavailable' otherwise."""
    try:
        _ensure_k8s()
    except config.ConfigException as e:
        logger.warning(f"Kubernetes config unavailable: {e}")
        return "unavailable"
    return "loaded"


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


def is_conflict(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 409


def is_not_found(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 404


@dataclass(frozen=True)
class CustomResource:
    """Group/version/plural coordinates of a namespaced custom resource."""
    group: str
    version: str
    plural: str
    kind: str


APP_RESOURCE = CustomResource(settings.APP_GROUP, settings.APP_VERSION, settings.APP_PLURAL, "App")
PKGR_RESOURCE = CustomResource(settings.PKGR_GROUP, settings.PKGR_VERSION, settings.PKGR_PLURAL, "PackageRepository")


class CustomResourceClient:
    """Thin wrapper over CustomObjectsApi bound to one resource type."""

    def __init__(self, resource: CustomResource, api: Optional[client.CustomObjectsApi] = None):
        self.resource = resource
        self._api = api

    @property
    def api(self) -> client.CustomObjectsApi:
        if self._api is None:
            self._api = custom_api()
        return self._api

    def get(self, namespace: str, name: str) -> dict:
        r = self.resource
        return self.api.get_namespaced_custom_object(r.group, r.version, namespace, r.plural, name)

    def replace(self, obj: dict) -> dict:
        r, meta = self.resource, obj["metadata"]
        return self.api.replace_namespaced_custom_object(
            r.group, r.version, meta["namespace"], r.plural, meta["name"], obj
        )

    def replace_status(self, obj: dict) -> dict:
        r, meta = self.resource, obj["metadata"]
        return self.api.replace_namespaced_custom_object_status(
            r.group, r.version, meta["namespace"], r.plural, meta["name"], obj
        )

    def list(self, namespace: Optional[str] = None) -> list[dict]:
        r = self.resource
        if namespace:
            result = self.api.list_namespaced_custom_object(r.group, r.version, namespace, r.plural)
        else:
            result = self.api.list_cluster_custom_object(r.group, r.version, r.plural)
        return result.get("items", [])

    def find(self, namespace: str, name: str) -> Optional[dict]:
        """Like get(), but returns None when the object does not exist."""
        try:
            return self.get(namespace, name)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
