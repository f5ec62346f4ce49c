"""
Resource adapters: Hooks implementations backed by custom resources.

Status writes re-read the latest object and retry on 409 conflicts; finalizer
writes are read-modify-write without retry (the caller requeues).
"""
import copy
import logging
from typing import Callable, Optional

from kubernetes.client import ApiException

from appctrl.app import App, Hooks, Logger, RequeueDirective
from appctrl.config import DELETE_FINALIZER, DELETE_PREV_FINALIZER, settings
from appctrl.errors import FinalizerUpdateError, StatusUpdateError
from appctrl.events import StatusEventPublisher
from appctrl.metrics import ReconcileMetrics
from appctrl.reftracker import RefKey
from appctrl.services.kubernetes_service import APP_RESOURCE, CustomResourceClient, is_conflict
from appctrl.stages import Deployer, Fetcher, Templater


class CustomResourceApp:
    """Wraps one persisted resource and an App engine reconciling it."""

    def __init__(self, model: dict, client: CustomResourceClient, fetcher: Fetcher,
                 templater: Templater, deployer: Deployer, logger: Optional[Logger] = None,
                 metrics: Optional[ReconcileMetrics] = None,
                 publisher: Optional[StatusEventPublisher] = None,
                 sync_period: float = settings.APP_SYNC_PERIOD):
        self.model = copy.deepcopy(model)
        self.kind = client.resource.kind
        self._client = client
        self._log = logger or logging.getLogger("appctrl.crd_app")
        self._publisher = publisher
        hooks = Hooks(
            block_deletion=self.block_deletion,
            unblock_deletion=self.unblock_deletion,
            update_status=self.update_status,
        )
        self.app = App(self.app_model(), hooks, fetcher, templater, deployer,
                       logger=self._log, metrics=metrics, kind=self.kind, sync_period=sync_period)

    @property
    def name(self) -> str:
        return self.model["metadata"]["name"]

    @property
    def namespace(self) -> str:
        return self.model["metadata"]["namespace"]

    def app_model(self) -> dict:
        """App-shaped view of the wrapped resource handed to the engine."""
        return self.model

    def reconcile(self, force: bool = False) -> RequeueDirective:
        return self.app.reconcile(force)

    def resource_refs(self) -> set[RefKey]:
        return self.app.secret_refs()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def block_deletion(self):
        # Avoid doing unnecessary processing
        if DELETE_FINALIZER in (self.model["metadata"].get("finalizers") or []):
            return

        self._log.info("Blocking deletion")

        def add_finalizer(obj: dict):
            finalizers = obj["metadata"].setdefault("finalizers", [])
            if DELETE_FINALIZER not in finalizers:
                finalizers.append(DELETE_FINALIZER)

        self._update_resource(add_finalizer)

    def unblock_deletion(self):
        self._log.info("Unblocking deletion")

        def remove_finalizers(obj: dict):
            # Older controller versions added the previous finalizer name
            obj["metadata"]["finalizers"] = [
                f for f in obj["metadata"].get("finalizers") or []
                if f not in (DELETE_FINALIZER, DELETE_PREV_FINALIZER)
            ]

        self._update_resource(remove_finalizers)

    def update_status(self, desc: str):
        self._log.info(f"Updating status: {desc}")

        last_err = None
        for attempt in range(1, settings.STATUS_UPDATE_ATTEMPTS + 1):
            try:
                self._update_status_once()
                break
            except ApiException as e:
                if not is_conflict(e):
                    raise StatusUpdateError(f"Updating {self.kind} status: {e.reason}") from e
                self._log.info(f"Status update conflict (attempt {attempt}/{settings.STATUS_UPDATE_ATTEMPTS})")
                last_err = e
        else:
            raise last_err

        if self._publisher is not None:
            self._publisher.observe(self.app.status())

    def _update_status_once(self):
        existing = self._client.get(self.namespace, self.name)
        existing["status"] = self.app.status().to_dict()
        self._client.replace_status(existing)

    def _update_resource(self, update_func: Callable[[dict], None]):
        self._log.info(f"Updating {self.kind}")
        try:
            existing = self._client.get(self.namespace, self.name)
            update_func(existing)
            updated = self._client.replace(existing)
        except ApiException as e:
            raise FinalizerUpdateError(f"Updating {self.kind}: {e.reason}") from e

        self.model["metadata"]["finalizers"] = list(
            (updated or existing)["metadata"].get("finalizers") or []
        )


class CRDApp(CustomResourceApp):
    """App custom resource (kappctrl.k14s.io/v1alpha1)."""

    def __init__(self, model: dict, fetcher: Fetcher, templater: Templater, deployer: Deployer,
                 client: Optional[CustomResourceClient] = None, **kwargs):
        super().__init__(model, client or CustomResourceClient(APP_RESOURCE),
                         fetcher, templater, deployer, **kwargs)
