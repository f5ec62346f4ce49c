"""
Status read model for App-shaped resources.

Consumers (CLI tailers, the status API, the event stream) derive stage
progress only from these helpers, which read exitCode and each stage's own
startedAt/updatedAt. Timestamps are compared at whole-second resolution,
the precision persisted on the CRD.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from appctrl.models import AppStatus, ConditionType, DeployStatus, StageStatus, StatusEvent

FETCH_STAGE = "fetch"
TEMPLATE_STAGE = "template"
DEPLOY_STAGE = "deploy"
RECONCILED = "reconciled"


def _sec(t: Optional[datetime]) -> Optional[int]:
    return int(t.timestamp()) if t is not None else None


def stage_failed(stage: Optional[StageStatus]) -> bool:
    """Failed iff exitCode != 0 and the failure was recorded in this run (updatedAt >= startedAt)."""
    if stage is None or stage.exitCode == 0 or stage.updatedAt is None:
        return False
    if stage.startedAt is None:
        return True
    return _sec(stage.updatedAt) >= _sec(stage.startedAt)


def stage_in_progress(stage: Optional[StageStatus]) -> bool:
    """Started, with no terminal updatedAt recorded for this run yet."""
    if stage is None or stage.startedAt is None:
        return False
    if isinstance(stage, DeployStatus) and not stage.finished:
        return True
    if stage.updatedAt is None:
        return True
    return _sec(stage.updatedAt) < _sec(stage.startedAt)


def has_reconciled(status: AppStatus) -> bool:
    return any(
        c.type == ConditionType.RECONCILE_SUCCEEDED and c.status == "True"
        for c in status.conditions
    )


def _in_same_run(stage: Optional[StageStatus], prev: Optional[StageStatus]) -> bool:
    """A later stage belongs to the current run only if it started after its predecessor finished."""
    if stage is None or stage.startedAt is None:
        return False
    if prev is None or prev.updatedAt is None:
        return True
    return _sec(stage.startedAt) >= _sec(prev.updatedAt)


@dataclass
class StageReport:
    """Walk of a status snapshot up to the stage that is current."""
    stage: str = ""
    events: list[StatusEvent] = field(default_factory=list)
    error: Optional[str] = None


def current_stage(status: AppStatus) -> StageReport:
    """
    Describe a snapshot from the first stage up to the current one.

    Stops at the first stage that failed or is still running; a later
    stage left over from a previous run is never reported as current.
    """
    report = StageReport()
    pipeline = (
        ("Fetch", FETCH_STAGE, status.fetch, None),
        ("Template", TEMPLATE_STAGE, status.template, status.fetch),
    )

    for label, name, stage, prev in pipeline:
        if stage is None:
            continue
        if prev is not None and not _in_same_run(stage, prev):
            report.stage = name
            return report
        report.stage = name
        if stage_failed(stage):
            report.events.append(StatusEvent(message=f"{label} failed", block=stage.stderr, error=True))
            report.error = stage.error or stage.stderr
            return report
        if stage_in_progress(stage):
            report.events.append(StatusEvent(message=f"{label} started", at=stage.startedAt))
            return report
        block = stage.stdout if name == FETCH_STAGE else ""
        report.events.append(StatusEvent(message=f"{label} succeeded", block=block, at=stage.updatedAt))

    deploy = status.deploy
    if deploy is None:
        return report
    if not _in_same_run(deploy, status.template or status.fetch):
        report.stage = DEPLOY_STAGE
        return report

    report.stage = DEPLOY_STAGE
    if stage_failed(deploy):
        report.events.append(StatusEvent(message="Deploy failed", block=deploy.stderr, error=True))
        report.error = deploy.error or deploy.stderr
        return report
    if has_reconciled(status):
        report.events.append(StatusEvent(message="Deploy succeeded", block=deploy.stdout, at=deploy.updatedAt))
        report.stage = RECONCILED
        return report
    report.events.append(StatusEvent(message="Deploy started", block=deploy.stdout, at=deploy.startedAt))
    return report


def _changed(old: Optional[datetime], new: Optional[datetime]) -> bool:
    return _sec(old) != _sec(new)


def status_transitions(old: Optional[AppStatus], new: AppStatus) -> list[StatusEvent]:
    """Events describing what changed between two snapshots, in pipeline order."""
    old = old or AppStatus()
    events = []

    for label, name in (("Fetch", FETCH_STAGE), ("Template", TEMPLATE_STAGE)):
        prev, cur = getattr(old, name), getattr(new, name)
        if cur is None:
            continue
        if (prev is None or _changed(prev.startedAt, cur.startedAt)) and stage_in_progress(cur):
            events.append(StatusEvent(message=f"{label} started", at=cur.startedAt))
        if (prev is None or _changed(prev.updatedAt, cur.updatedAt)) and not stage_in_progress(cur) \
                and cur.updatedAt is not None:
            if stage_failed(cur):
                events.append(StatusEvent(message=f"{label} failed", block=cur.stderr, error=True, at=cur.updatedAt))
            else:
                block = cur.stdout if name == FETCH_STAGE else ""
                events.append(StatusEvent(message=f"{label} succeeded", block=block, at=cur.updatedAt))

    prev, cur = old.deploy, new.deploy
    if cur is not None:
        if (prev is None or _changed(prev.startedAt, cur.startedAt)) and cur.startedAt is not None:
            events.append(StatusEvent(message="Deploy started", at=cur.startedAt))
        if (prev is None or _changed(prev.updatedAt, cur.updatedAt) or prev.finished != cur.finished) \
                and cur.updatedAt is not None:
            if stage_failed(cur):
                events.append(StatusEvent(message="Deploy failed", block=cur.stderr, error=True, at=cur.updatedAt))
            elif stage_in_progress(cur):
                events.append(StatusEvent(message="Deploy progressing", block=cur.stdout, at=cur.updatedAt))
            else:
                events.append(StatusEvent(message="Deploy succeeded", block=cur.stdout, at=cur.updatedAt))

    if has_reconciled(new) and not has_reconciled(old):
        events.append(StatusEvent(message="App reconciled"))

    return events


_STATUS_STRINGS = {
    ConditionType.RECONCILING: "Reconciling",
    ConditionType.RECONCILE_SUCCEEDED: "Reconcile succeeded",
    ConditionType.RECONCILE_FAILED: "Reconcile failed",
    ConditionType.DELETING: "Deleting",
    ConditionType.DELETE_FAILED: "Deletion failed",
}


def status_string(status: AppStatus) -> str:
    if not status.conditions:
        return status.friendlyDescription
    return _STATUS_STRINGS.get(status.conditions[0].type, status.friendlyDescription)


def metric_string(status: AppStatus) -> str:
    if status.consecutiveReconcileFailures != 0:
        return f"{status.consecutiveReconcileFailures} consecutive failures"
    if status.consecutiveReconcileSuccesses != 0:
        return f"{status.consecutiveReconcileSuccesses} consecutive successes"
    return "0 consecutive failures | 0 consecutive successes"
