"""
PackageRepository adapter.

A PackageRepository is reconciled by the same engine as an App: the
repository spec is translated into an in-memory App (fetch the repo
bundle, template its packages/ directory, deploy with kapp), and the
engine's status is written back onto the PackageRepository.
"""
from typing import Optional

from appctrl.crd_app import CustomResourceApp
from appctrl.services.kubernetes_service import PKGR_RESOURCE, CustomResourceClient
from appctrl.stages import Deployer, Fetcher, Templater

# Repositories are resynced more often than Apps by default
PKGR_DEFAULT_SYNC_PERIOD = "5m"

PKGR_KAPP_RAW_OPTIONS = [
    "--wait-timeout=30s",
    "--kube-api-qps=20",
    "--kube-api-burst=30",
]


def new_package_repo_app(pkgr: dict) -> dict:
    """Build the App model that reconciles a PackageRepository."""
    meta = pkgr["metadata"]
    spec = pkgr.get("spec") or {}

    app_meta = {
        "name": meta["name"],
        "namespace": meta["namespace"],
        "generation": meta.get("generation", 0),
        "finalizers": list(meta.get("finalizers") or []),
    }
    if meta.get("deletionTimestamp"):
        app_meta["deletionTimestamp"] = meta["deletionTimestamp"]

    return {
        "apiVersion": "kappctrl.k14s.io/v1alpha1",
        "kind": "App",
        "metadata": app_meta,
        "spec": {
            "syncPeriod": spec.get("syncPeriod") or PKGR_DEFAULT_SYNC_PERIOD,
            "paused": bool(spec.get("paused")),
            "fetch": [spec["fetch"]] if spec.get("fetch") else [],
            "template": [
                {"ytt": {"ignoreUnknownComments": True, "paths": ["packages"]}},
                {"kbld": {"paths": ["-", ".imgpkg/images.yml"]}},
            ],
            "deploy": [{"kapp": {"rawOptions": list(PKGR_KAPP_RAW_OPTIONS)}}],
        },
        "status": pkgr.get("status") or {},
    }


class PackageRepositoryApp(CustomResourceApp):
    """PackageRepository custom resource (packaging.carvel.dev/v1alpha1)."""

    def __init__(self, model: dict, fetcher: Fetcher, templater: Templater, deployer: Deployer,
                 client: Optional[CustomResourceClient] = None, **kwargs):
        super().__init__(model, client or CustomResourceClient(PKGR_RESOURCE),
                         fetcher, templater, deployer, **kwargs)

    def app_model(self) -> dict:
        return new_package_repo_app(self.model)
