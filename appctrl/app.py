"""
App reconciliation engine.

Drives one App-shaped resource through fetch → template → deploy:

  Reconcile:
    1. Block deletion (attach finalizer) before doing any work
    2. Mark Reconciling, persist
    3. Fetch, Template, Deploy in strict order; each stage persists
       "started" and "completed" status; a failed stage stops the run
    4. Mark ReconcileSucceeded / ReconcileFailed, bump streak counters

  On Delete (deletionTimestamp set):
    1. Mark Deleting, persist
    2. kapp delete (through the flag gate)
    3. Unblock deletion (remove finalizers)

The engine never writes the resource itself; every persisted change goes
through Hooks, so the same engine serves App and PackageRepository.

Precondition: the caller runs at most one reconcile per resource at a time.
Stages are not retried here; the returned RequeueDirective tells the
scheduler when to come back.
"""
import copy
import logging
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from appctrl.config import settings
from appctrl.flags import Operation, build_invocation
from appctrl.kapp import kapp_raw_options
from appctrl.metrics import ReconcileMetrics, metrics as default_metrics
from appctrl.models import (
    AppStatus, Condition, ConditionType, DeployStatus, StageStatus, utcnow,
)
from appctrl.reftracker import RefKey, compute_refs
from appctrl.stages import Deployer, Fetcher, StageResult, Templater

Logger = Union[logging.Logger, logging.LoggerAdapter]

# Keep persisted stage output within etcd object size limits
STAGE_OUTPUT_MAX = 10000


@dataclass
class Hooks:
    """Persistence capabilities the engine needs from a concrete resource kind."""
    block_deletion: Callable[[], None]
    unblock_deletion: Callable[[], None]
    update_status: Callable[[str], None]


@dataclass(frozen=True)
class RequeueDirective:
    """When the scheduler should reconcile again; None means do not requeue."""
    requeue_after: Optional[float]
    failed: bool = False
    error: str = ""


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: str) -> float:
    """Parse a duration such as '30s', '10m' or '1h30m' into seconds."""
    value = value.strip()
    parts = _DURATION_RE.findall(value)
    if not parts or "".join(n + u for n, u in parts) != value:
        raise ValueError(f"Invalid duration '{value}'")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def has_condition(status: AppStatus, ctype: ConditionType) -> bool:
    return any(c.type == ctype and c.status == "True" for c in status.conditions)


class ReconcileTimer:
    """Decides when an App is due for its next reconcile."""

    def __init__(self, app: dict, status: AppStatus, default_sync_period: float = settings.APP_SYNC_PERIOD):
        self.app = app
        self.status = status
        self.default_sync_period = default_sync_period

    def sync_period(self) -> float:
        period = (self.app.get("spec") or {}).get("syncPeriod")
        if isinstance(period, (int, float)) and not isinstance(period, bool) and period > 0:
            # Untyped manifests may carry a bare number of seconds
            return max(float(period), 1.0)
        if isinstance(period, str) and period:
            try:
                return max(parse_duration(period), 1.0)
            except ValueError:
                pass
        return float(self.default_sync_period)

    def failure_sync_period(self) -> float:
        # Exponential backoff on consecutive failures, capped at the sync period
        failures = min(self.status.consecutiveReconcileFailures, 30)
        return min(float(2 ** failures), self.sync_period())

    def last_reconcile_time(self) -> Optional[datetime]:
        times = [
            stage.updatedAt
            for stage in (self.status.fetch, self.status.template, self.status.deploy)
            if stage is not None and stage.updatedAt is not None
        ]
        return max(times) if times else None

    def in_progress(self) -> bool:
        return (has_condition(self.status, ConditionType.RECONCILING)
                or has_condition(self.status, ConditionType.DELETING))

    def failed(self) -> bool:
        return (has_condition(self.status, ConditionType.RECONCILE_FAILED)
                or has_condition(self.status, ConditionType.DELETE_FAILED))

    def period(self) -> float:
        if self.in_progress():
            return float(settings.RECONCILING_REQUEUE)
        if self.failed():
            return self.failure_sync_period()
        return self.sync_period()

    def is_ready_at(self, t: datetime) -> bool:
        generation = self.app.get("metadata", {}).get("generation", 0)
        if generation != self.status.observedGeneration:
            return True
        # A run that never recorded completion (e.g. abandoned) is resumed
        if self.in_progress():
            return True
        last = self.last_reconcile_time()
        if last is None:
            return True
        return t >= last + timedelta(seconds=self.period())

    def duration_until_ready(self, t: datetime) -> float:
        last = self.last_reconcile_time()
        if last is None or self.in_progress():
            return self.period()
        remaining = (last + timedelta(seconds=self.period()) - t).total_seconds()
        return max(remaining, 1.0)


class App:
    def __init__(self, app: dict, hooks: Hooks, fetcher: Fetcher, templater: Templater,
                 deployer: Deployer, logger: Optional[Logger] = None,
                 metrics: Optional[ReconcileMetrics] = None, kind: str = "App",
                 sync_period: float = settings.APP_SYNC_PERIOD):
        self.app = copy.deepcopy(app)
        self.kind = kind
        self._status = AppStatus.from_resource(self.app)
        self._hooks = hooks
        self._fetcher = fetcher
        self._templater = templater
        self._deployer = deployer
        self._log = logger or logging.getLogger("appctrl.app")
        self._metrics = metrics or default_metrics
        self._sync_period = sync_period

    @property
    def name(self) -> str:
        return self.app["metadata"]["name"]

    @property
    def namespace(self) -> str:
        return self.app["metadata"].get("namespace", "")

    def status(self) -> AppStatus:
        return self._status

    def secret_refs(self) -> set[RefKey]:
        return compute_refs(self.app)

    def timer(self) -> ReconcileTimer:
        return ReconcileTimer(self.app, self._status, self._sync_period)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def reconcile(self, force: bool = False) -> RequeueDirective:
        """
        Run one reconcile. Stage failures are recorded in status and in the
        returned directive; hook failures (status/finalizer writes) raise.
        """
        meta = self.app["metadata"]
        spec = self.app.get("spec") or {}

        if meta.get("deletionTimestamp"):
            self._log.info("Started delete")
            result = self._reconcile_delete()
            self._log.info("Completed delete")
            if not result.failed:
                return RequeueDirective(None)
            return self._requeue(result)

        if spec.get("canceled") or spec.get("paused"):
            self._log.info("App is canceled or paused, not reconciling")
            self._mark_observed_latest()
            self._status.friendlyDescription = "Canceled/paused"
            self._update_status("app canceled/paused")
            return RequeueDirective(self.timer().sync_period())

        if not force and not self.timer().is_ready_at(utcnow()):
            self._log.info("Reconcile noop")
            return self._requeue(None)

        self._log.info("Started deploy")
        result = self._reconcile_deploy()
        self._log.info("Completed deploy")
        return self._requeue(result)

    def _requeue(self, result: Optional[StageResult]) -> RequeueDirective:
        timer = self.timer()
        if result is None:
            # Nothing ran; earlier failures are already reflected in the backoff
            return RequeueDirective(timer.duration_until_ready(utcnow()))
        if result.failed:
            return RequeueDirective(timer.failure_sync_period(), failed=True, error=_error_message(result))
        return RequeueDirective(timer.sync_period())

    # ------------------------------------------------------------------
    # Deploy path
    # ------------------------------------------------------------------

    def _reconcile_deploy(self) -> StageResult:
        self._hooks.block_deletion()
        self._metrics.register_attempt(self.kind, self.name, self.namespace)

        self._mark_observed_latest()
        self._set_reconciling()
        self._update_status("marking reconciling")

        result = self._reconcile_fetch_template_deploy()

        self._set_reconcile_completed(result)
        self._update_status("marking reconcile completed")
        return result

    def _reconcile_fetch_template_deploy(self) -> StageResult:
        with tempfile.TemporaryDirectory(prefix="appctrl-fetch-") as fetch_dir:
            self._status.fetch = StageStatus(startedAt=utcnow())
            self._update_status("marking fetch started")

            result = self._run_stage("fetch", lambda: self._fetcher.fetch(self.app, fetch_dir))
            self._status.fetch = _stage_status(StageStatus, result, self._status.fetch.startedAt)
            self._update_status("marking fetch completed")
            if result.failed:
                return result

            fetched = result.output or fetch_dir

            self._status.template = StageStatus(startedAt=utcnow())
            self._update_status("marking template started")

            result = self._run_stage("template", lambda: self._templater.template(self.app, fetched))
            # Templated output is the deploy input, not something to persist
            self._status.template = _stage_status(StageStatus, result, self._status.template.startedAt,
                                                  keep_stdout=False)
            self._update_status("marking template completed")
            if result.failed:
                return result

        templated = result.output or ""

        self._status.deploy = DeployStatus(startedAt=utcnow())
        self._update_status("marking deploy started")

        try:
            args = build_invocation(Operation.DEPLOY, kapp_raw_options(self.app, Operation.DEPLOY))
        except ValueError as e:
            self._log.error(f"Rejected deploy options: {e}")
            result = StageResult.from_error(e)
        else:
            result = self._run_stage("deploy", lambda: self._deployer.deploy(self.app, templated, args))

        self._status.deploy = _stage_status(DeployStatus, result, self._status.deploy.startedAt)
        self._status.deploy.finished = True
        self._update_status("marking deploy completed")
        return result

    # ------------------------------------------------------------------
    # Delete path
    # ------------------------------------------------------------------

    def _reconcile_delete(self) -> StageResult:
        self._metrics.register_delete_attempt(self.kind, self.name, self.namespace)

        self._mark_observed_latest()
        self._set_deleting()
        self._update_status("marking deleting")

        if (self.app.get("spec") or {}).get("noopDelete"):
            self._log.info("Skipping deploy delete (noopDelete)")
            result = StageResult(updated_at=utcnow())
        else:
            result = self._delete()

        if result.failed:
            self._metrics.register_delete_failure(self.kind, self.name, self.namespace)
            self._set_delete_failed(result)
            self._update_status("marking delete failed")
            return result

        # Resource is going away; status is not updated after this point
        self._hooks.unblock_deletion()
        return result

    def _delete(self) -> StageResult:
        started_at = utcnow()
        self._status.deploy = DeployStatus(startedAt=started_at)
        self._update_status("marking delete started")

        try:
            args = build_invocation(Operation.DELETE, kapp_raw_options(self.app, Operation.DELETE))
        except ValueError as e:
            self._log.error(f"Rejected delete options: {e}")
            result = StageResult.from_error(e)
        else:
            result = self._run_stage("delete", lambda: self._deployer.delete(self.app, args))

        self._status.deploy = _stage_status(DeployStatus, result, started_at)
        self._status.deploy.finished = True
        return result

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def _run_stage(self, stage: str, run: Callable[[], StageResult]) -> StageResult:
        try:
            result = run()
        except Exception as e:
            self._log.error(f"{stage.capitalize()} failed: {e}")
            return StageResult.from_error(e)
        if result.failed:
            self._log.warning(f"{stage.capitalize()} failed (exit code {result.exit_code})")
        return result

    def _update_status(self, desc: str):
        self._hooks.update_status(desc)

    def _mark_observed_latest(self):
        self._status.observedGeneration = self.app["metadata"].get("generation", 0)

    def _set_reconciling(self):
        self._status.conditions = [Condition(type=ConditionType.RECONCILING)]
        self._status.friendlyDescription = "Reconciling"

    def _set_reconcile_completed(self, result: StageResult):
        if result.failed:
            err = _error_message(result)
            self._status.conditions = [Condition(type=ConditionType.RECONCILE_FAILED, message=err)]
            self._status.consecutiveReconcileFailures += 1
            self._status.consecutiveReconcileSuccesses = 0
            self._status.friendlyDescription = f"Reconcile failed: {err}"
            self._status.usefulErrorMessage = _tail(result.stderr)
            self._metrics.register_failure(self.kind, self.name, self.namespace)
        else:
            self._status.conditions = [Condition(type=ConditionType.RECONCILE_SUCCEEDED)]
            self._status.consecutiveReconcileSuccesses += 1
            self._status.consecutiveReconcileFailures = 0
            self._status.friendlyDescription = "Reconcile succeeded"
            self._status.usefulErrorMessage = ""
            self._metrics.register_success(self.kind, self.name, self.namespace)

    def _set_deleting(self):
        self._status.conditions = [Condition(type=ConditionType.DELETING)]
        self._status.friendlyDescription = "Deleting"

    def _set_delete_failed(self, result: StageResult):
        err = _error_message(result)
        self._status.conditions = [Condition(type=ConditionType.DELETE_FAILED, message=err)]
        self._status.consecutiveReconcileFailures += 1
        self._status.consecutiveReconcileSuccesses = 0
        self._status.friendlyDescription = f"Delete failed: {err}"
        self._status.usefulErrorMessage = _tail(result.stderr)


def _error_message(result: StageResult) -> str:
    if result.error:
        return result.error
    return f"Error (exit status {result.exit_code})"


def _tail(s: str, limit: int = STAGE_OUTPUT_MAX) -> str:
    return s if len(s) <= limit else s[-limit:]


def _stage_status(cls, result: StageResult, started_at: datetime, keep_stdout: bool = True):
    updated_at = utcnow()
    if result.updated_at is not None and result.updated_at >= started_at:
        updated_at = result.updated_at
    exit_code = result.exit_code
    if result.failed and exit_code == 0:
        # Readers detect failure from exitCode alone
        exit_code = -1
    return cls(
        exitCode=exit_code,
        startedAt=started_at,
        updatedAt=updated_at,
        stdout=_tail(result.stdout) if keep_stdout else "",
        stderr=_tail(result.stderr),
        error=result.error or "",
    )
