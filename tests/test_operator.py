import logging

import kopf
import pytest

from appctrl import operator as op
from appctrl.app import RequeueDirective
from appctrl.config import DELETE_FINALIZER
from appctrl.crd_app import CRDApp
from appctrl.errors import StatusUpdateError
from appctrl.models import utcnow
from appctrl.reftracker import RefKey
from tests.helpers import FakeCustomResourceClient, FakeDeployer, FakeFetcher, FakeTemplater, make_app

logger = logging.getLogger("test-operator")


class FakeAdapter:
    def __init__(self, directive=None, exc=None, refs=()):
        self.directive = directive or RequeueDirective(30.0)
        self.exc = exc
        self.refs = set(refs)
        self.forced = []

    def reconcile(self, force=False):
        self.forced.append(force)
        if self.exc is not None:
            raise self.exc
        return self.directive

    def resource_refs(self):
        return self.refs


@pytest.fixture
def adapter(monkeypatch) -> FakeAdapter:
    fake = FakeAdapter(refs={RefKey("Secret", "default", "creds")})
    monkeypatch.setattr(op, "_build", lambda kind, body, log: fake)
    monkeypatch.setattr(op, "clear_events", lambda *args: None)
    monkeypatch.setattr(op, "ref_tracker", op.AppRefTracker())
    monkeypatch.setattr(op, "_pending_force", set())
    return fake


APP_KEY = RefKey("App", "default", "simple-app")


def test_successful_reconcile_records_refs(adapter) -> None:
    result = op.reconcile_resource("App", make_app(), logger, force=True)

    assert result == {"requeueAfter": 30.0}
    assert adapter.forced == [True]
    assert op.ref_tracker.refs_for_app(APP_KEY) == {RefKey("Secret", "default", "creds")}


def test_failed_directive_becomes_temporary_error(adapter) -> None:
    adapter.directive = RequeueDirective(4.0, failed=True, error="Fetching resources: boom")

    with pytest.raises(kopf.TemporaryError) as exc:
        op.reconcile_resource("App", make_app(), logger, force=False)

    assert exc.value.delay == 4.0
    assert "boom" in str(exc.value)


def test_hook_error_is_retried_shortly(adapter) -> None:
    adapter.exc = StatusUpdateError("status write failed")

    with pytest.raises(kopf.TemporaryError) as exc:
        op.reconcile_resource("App", make_app(), logger, force=False)

    assert exc.value.delay == op.ctrl_settings.RECONCILING_REQUEUE


def test_delete_forgets_resource(adapter) -> None:
    op.ref_tracker.reconcile_refs({RefKey("Secret", "default", "creds")}, APP_KEY)
    adapter.directive = RequeueDirective(None)
    body = make_app()
    body["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    assert op.reconcile_resource("App", body, logger, force=True) == {"deleted": True}
    assert op.ref_tracker.refs_for_app(APP_KEY) == set()


def test_changed_secret_forces_dependent_reconcile(adapter) -> None:
    op.reconcile_resource("App", make_app(), logger, force=True)

    dependents = op.mark_dependents(RefKey("Secret", "default", "creds"), logger)
    assert dependents == {APP_KEY}
    assert op.mark_dependents(RefKey("Secret", "default", "unrelated"), logger) == set()

    op.reconcile_resource("App", make_app(), logger, force=False)
    op.reconcile_resource("App", make_app(), logger, force=False)

    assert adapter.forced == [True, True, False]


def test_timer_skips_deleting_resource(adapter) -> None:
    body = make_app()
    body["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    assert op.resync_app(body=body, logger=logger) is None
    assert adapter.forced == []


def test_idle_reconcile_after_failure_is_not_retried_as_error(monkeypatch, metrics) -> None:
    body = make_app()
    body["metadata"]["finalizers"] = [DELETE_FINALIZER]
    now = utcnow().isoformat()
    body["status"] = {
        "conditions": [{"type": "ReconcileFailed", "status": "True", "message": "kapp failed"}],
        "observedGeneration": 1,
        "deploy": {"exitCode": 1, "startedAt": now, "updatedAt": now, "finished": True},
        "consecutiveReconcileFailures": 10,
    }
    fetcher = FakeFetcher()
    crd_app = CRDApp(body, fetcher, FakeTemplater(), FakeDeployer(),
                     client=FakeCustomResourceClient(body), metrics=metrics)
    monkeypatch.setattr(op, "_build", lambda kind, b, log: crd_app)
    monkeypatch.setattr(op, "_pending_force", set())
    monkeypatch.setattr(op, "ref_tracker", op.AppRefTracker())

    result = op.reconcile_resource("App", body, logger, force=False)

    assert fetcher.calls == 0
    assert 1 <= result["requeueAfter"] <= 1024


def test_delete_keeps_per_resource_lock(adapter) -> None:
    lock = op._lock_for(APP_KEY)
    adapter.directive = RequeueDirective(None)
    body = make_app()
    body["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    op.reconcile_resource("App", body, logger, force=True)

    assert op._lock_for(APP_KEY) is lock
    assert not lock.locked()


def test_reference_changes_are_logged(adapter, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="test-operator"):
        op.reconcile_resource("App", make_app(), logger, force=True)
        op.reconcile_resource("App", make_app(), logger, force=True)

    watched = [r.getMessage() for r in caplog.records if "watching" in r.getMessage()]
    assert watched == ["App default/simple-app: watching Secret/default/creds, unwatching -"]
