"""
Controller and status API settings, read once from the environment.

CRD coordinates are fixed; reconcile pacing, kapp invocation, the event
stream and API serving can be tuned per deployment.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")
    IN_CLUSTER: bool = os.environ.get("IN_CLUSTER", "false").lower() == "true"

    # App CRD
    APP_GROUP: str = "kappctrl.k14s.io"
    APP_VERSION: str = "v1alpha1"
    APP_PLURAL: str = "apps"

    # PackageRepository CRD
    PKGR_GROUP: str = "packaging.carvel.dev"
    PKGR_VERSION: str = "v1alpha1"
    PKGR_PLURAL: str = "packagerepositories"

    # Reconcile pacing (seconds)
    APP_SYNC_PERIOD: int = int(os.environ.get("APP_SYNC_PERIOD", "1800"))
    RECONCILING_REQUEUE: int = int(os.environ.get("RECONCILING_REQUEUE", "5"))
    STATUS_UPDATE_ATTEMPTS: int = int(os.environ.get("STATUS_UPDATE_ATTEMPTS", "5"))
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "10"))

    # Deploy tool
    KAPP_BINARY: str = os.environ.get("KAPP_BINARY", "kapp")
    KAPP_TIMEOUT: int = int(os.environ.get("KAPP_TIMEOUT", "900"))

    # Status event stream
    REDIS_URL: str = os.environ.get("REDIS_URL", "")

    # API
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    CORS_ORIGINS: str = os.environ.get("CORS_ORIGINS", "*")
    RATE_LIMIT: str = os.environ.get("RATE_LIMIT", "60/minute")


settings = Settings()

# Finalizer attached to every reconciled resource. The previous name was
# used by older controller versions and is still removed on unblock.
DELETE_FINALIZER = "finalizers.kapp-ctrl.k14s.io/delete"
DELETE_PREV_FINALIZER = "kapp-ctrl.k14s.io/delete"
