from appctrl.config import DELETE_FINALIZER
from appctrl.kapp import kapp_raw_options
from appctrl.flags import Operation
from appctrl.pkgrepository import PKGR_KAPP_RAW_OPTIONS, PackageRepositoryApp, new_package_repo_app
from appctrl.services.kubernetes_service import PKGR_RESOURCE
from tests.helpers import FakeCustomResourceClient


def _pkgr(**spec) -> dict:
    return {
        "apiVersion": "packaging.carvel.dev/v1alpha1",
        "kind": "PackageRepository",
        "metadata": {"name": "tce-repo", "namespace": "kapp-controller-packaging-global", "generation": 3},
        "spec": dict({"fetch": {"imgpkgBundle": {"image": "registry.example.com/repo:1.0"}}}, **spec),
    }


def test_repo_spec_becomes_app_spec() -> None:
    app = new_package_repo_app(_pkgr())

    assert app["kind"] == "App"
    assert app["metadata"]["generation"] == 3
    assert app["spec"]["fetch"] == [{"imgpkgBundle": {"image": "registry.example.com/repo:1.0"}}]
    assert app["spec"]["template"][0]["ytt"]["paths"] == ["packages"]
    assert app["spec"]["syncPeriod"] == "5m"
    assert kapp_raw_options(app, Operation.DEPLOY) == PKGR_KAPP_RAW_OPTIONS


def test_repo_sync_period_and_deletion_are_carried_over() -> None:
    pkgr = _pkgr(syncPeriod="2m")
    pkgr["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    app = new_package_repo_app(pkgr)

    assert app["spec"]["syncPeriod"] == "2m"
    assert app["metadata"]["deletionTimestamp"] == "2024-01-01T00:00:00Z"


def test_repository_reconcile_writes_status_onto_repository(fetcher, templater, deployer, metrics) -> None:
    pkgr = _pkgr()
    client = FakeCustomResourceClient(pkgr, resource=PKGR_RESOURCE)
    repo_app = PackageRepositoryApp(pkgr, fetcher, templater, deployer, client=client, metrics=metrics)

    directive = repo_app.reconcile(force=True)

    assert not directive.failed
    assert directive.requeue_after == 300
    assert client.obj["kind"] == "PackageRepository"
    assert client.obj["metadata"]["finalizers"] == [DELETE_FINALIZER]
    assert client.obj["status"]["friendlyDescription"] == "Reconcile succeeded"
    assert client.obj["status"]["observedGeneration"] == 3
    assert deployer.deploy_calls[0][1] == PKGR_KAPP_RAW_OPTIONS
    assert metrics.attempts.labels("PackageRepository", "tce-repo", "kapp-controller-packaging-global")._value.get() == 1


def test_repository_delete_unblocks_repository(fetcher, templater, deployer, metrics) -> None:
    pkgr = _pkgr()
    pkgr["metadata"]["finalizers"] = [DELETE_FINALIZER]
    pkgr["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    client = FakeCustomResourceClient(pkgr, resource=PKGR_RESOURCE)
    repo_app = PackageRepositoryApp(pkgr, fetcher, templater, deployer, client=client, metrics=metrics)

    repo_app.reconcile()

    assert deployer.delete_calls == [[]]
    assert client.obj["metadata"]["finalizers"] == []
