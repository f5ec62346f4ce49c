"""
App Controller — kopf operator reconciling App and PackageRepository CRs.

Architecture:
  App / PackageRepository CR → Operator watches → Engine.reconcile():
    1. Block deletion (finalizer)
    2. Fetch → Template → Deploy (kapp, restricted flags)
    3. Persist per-stage status + ReconcileSucceeded / ReconcileFailed

  On Delete (finalizer held by the engine):
    kapp delete → finalizer removed by the engine

  Resync (Timer):
    Every RESYNC_INTERVAL the engine is asked to reconcile without force;
    it no-ops until the App's sync period (or failure backoff) is due.

  Referenced Secrets / ConfigMaps:
    A change marks every App depending on it for a forced reconcile on
    the next timer tick.

Concurrency:
  - At most one reconcile in flight per resource (per-key lock); the engine
    relies on this.
  - settings.MAX_WORKERS parallel reconciles across resources.
"""

import threading
from collections import defaultdict

import kopf
from kubernetes.client import ApiException

from appctrl.config import settings as ctrl_settings
from appctrl.crd_app import CRDApp, CustomResourceApp
from appctrl.errors import AppCtrlError
from appctrl.events import StatusEventPublisher, clear_events
from appctrl.kapp import KappDeployer
from appctrl.pkgrepository import PackageRepositoryApp
from appctrl.reftracker import AppRefTracker, CONFIGMAP_KIND, RefKey, SECRET_KIND
from appctrl.stages import InlineFetcher, PassthroughTemplater

APP = (ctrl_settings.APP_GROUP, ctrl_settings.APP_VERSION, ctrl_settings.APP_PLURAL)
PKGR = (ctrl_settings.PKGR_GROUP, ctrl_settings.PKGR_VERSION, ctrl_settings.PKGR_PLURAL)

RESYNC_INTERVAL = 30

fetcher = InlineFetcher()
templater = PassthroughTemplater()
app_deployer = KappDeployer(app_suffix="-ctrl")
pkgr_deployer = KappDeployer(app_suffix=".pkgr")

ref_tracker = AppRefTracker()

_locks: dict[RefKey, threading.Lock] = defaultdict(threading.Lock)
_locks_guard = threading.Lock()
_pending_force: set[RefKey] = set()
_publishers: dict[RefKey, StatusEventPublisher] = {}


def _key(kind: str, namespace: str, name: str) -> RefKey:
    return RefKey(kind, namespace, name)


def _lock_for(key: RefKey) -> threading.Lock:
    with _locks_guard:
        return _locks[key]


def _publisher_for(key: RefKey) -> StatusEventPublisher:
    with _locks_guard:
        if key not in _publishers:
            _publishers[key] = StatusEventPublisher(key.kind, key.namespace, key.name)
        return _publishers[key]


def _build(kind: str, body, logger) -> CustomResourceApp:
    meta = body["metadata"]
    publisher = _publisher_for(_key(kind, meta["namespace"], meta["name"]))
    if kind == "PackageRepository":
        return PackageRepositoryApp(dict(body), fetcher, templater, pkgr_deployer,
                                    logger=logger, publisher=publisher)
    return CRDApp(dict(body), fetcher, templater, app_deployer, logger=logger, publisher=publisher)


def _take_pending(key: RefKey) -> bool:
    with _locks_guard:
        if key in _pending_force:
            _pending_force.discard(key)
            return True
        return False


def _forget(key: RefKey):
    # The per-resource lock stays registered: other handlers may already be waiting on it
    ref_tracker.remove_refs_for_app(key)
    with _locks_guard:
        _pending_force.discard(key)
        _publishers.pop(key, None)
    clear_events(key.kind, key.namespace, key.name)


def reconcile_resource(kind: str, body, logger, force: bool) -> dict:
    """
    Reconcile one resource and translate the engine's requeue directive
    into kopf retry semantics.
    """
    meta = body["metadata"]
    key = _key(kind, meta["namespace"], meta["name"])

    with _lock_for(key):
        if _take_pending(key):
            force = True

        adapter = _build(kind, body, logger)
        try:
            directive = adapter.reconcile(force)
        except (AppCtrlError, ApiException) as e:
            logger.error(f"{kind} {key.namespace}/{key.name}: reconcile error: {e}")
            raise kopf.TemporaryError(f"Reconcile error: {e}", delay=ctrl_settings.RECONCILING_REQUEUE)

        if meta.get("deletionTimestamp") and not directive.failed:
            _forget(key)
            return {"deleted": True}

        added, removed = ref_tracker.reconcile_refs(adapter.resource_refs(), key)
        if added or removed:
            logger.info(
                f"{kind} {key.namespace}/{key.name}: watching {', '.join(map(str, sorted(added))) or '-'}, "
                f"unwatching {', '.join(map(str, sorted(removed))) or '-'}"
            )

    if directive.failed:
        raise kopf.TemporaryError(f"Reconcile failed: {directive.error}", delay=directive.requeue_after)
    return {"requeueAfter": directive.requeue_after}


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, logger, **kwargs):
    settings.posting.enabled = True
    # Deletion is blocked by the engine's own finalizer
    settings.persistence.finalizer = "appctrl.k14s.io/kopf-finalizer"
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix="appctrl.k14s.io")
    settings.execution.max_workers = ctrl_settings.MAX_WORKERS
    logger.info(
        f"App controller started (max_workers={ctrl_settings.MAX_WORKERS}, "
        f"sync_period={ctrl_settings.APP_SYNC_PERIOD}s)"
    )


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@kopf.on.create(*APP)
@kopf.on.resume(*APP)
@kopf.on.update(*APP, field="spec")
def reconcile_app(body, logger, **kwargs):
    return reconcile_resource("App", body, logger, force=True)


@kopf.timer(*APP, interval=RESYNC_INTERVAL, idle=RESYNC_INTERVAL)
def resync_app(body, logger, **kwargs):
    if body["metadata"].get("deletionTimestamp"):
        return
    return reconcile_resource("App", body, logger, force=False)


@kopf.on.delete(*APP, optional=True)
def delete_app(body, logger, **kwargs):
    return reconcile_resource("App", body, logger, force=True)


# ---------------------------------------------------------------------------
# PackageRepository
# ---------------------------------------------------------------------------

@kopf.on.create(*PKGR)
@kopf.on.resume(*PKGR)
@kopf.on.update(*PKGR, field="spec")
def reconcile_pkgr(body, logger, **kwargs):
    return reconcile_resource("PackageRepository", body, logger, force=True)


@kopf.timer(*PKGR, interval=RESYNC_INTERVAL, idle=RESYNC_INTERVAL)
def resync_pkgr(body, logger, **kwargs):
    if body["metadata"].get("deletionTimestamp"):
        return
    return reconcile_resource("PackageRepository", body, logger, force=False)


@kopf.on.delete(*PKGR, optional=True)
def delete_pkgr(body, logger, **kwargs):
    return reconcile_resource("PackageRepository", body, logger, force=True)


# ---------------------------------------------------------------------------
# Referenced Secrets / ConfigMaps
# ---------------------------------------------------------------------------

def mark_dependents(ref: RefKey, logger) -> set[RefKey]:
    """Schedule a forced reconcile for every App that depends on ref."""
    dependents = ref_tracker.apps_for_ref(ref)
    for app_key in dependents:
        logger.info(f"{ref} changed: {app_key.kind} {app_key.namespace}/{app_key.name} marked for reconcile")
        with _locks_guard:
            _pending_force.add(app_key)
    return dependents


@kopf.on.event("", "v1", "secrets")
def secret_changed(name, namespace, logger, **kwargs):
    mark_dependents(RefKey(SECRET_KIND, namespace, name), logger)


@kopf.on.event("", "v1", "configmaps")
def configmap_changed(name, namespace, logger, **kwargs):
    mark_dependents(RefKey(CONFIGMAP_KIND, namespace, name), logger)
