"""Fakes shared by the test modules."""
import copy
from typing import Optional

from kubernetes.client import ApiException

from appctrl.services.kubernetes_service import APP_RESOURCE, CustomResource
from appctrl.stages import StageResult


class FakeCustomResourceClient:
    """In-memory stand-in for CustomResourceClient holding a single object."""

    def __init__(self, obj: dict, resource: CustomResource = APP_RESOURCE):
        self.resource = resource
        self.obj = copy.deepcopy(obj)
        self.status_conflicts = 0
        self.status_error: Optional[ApiException] = None
        self.replace_error: Optional[ApiException] = None
        self.status_writes = []
        self.replace_count = 0
        self.raised = []

    def get(self, namespace: str, name: str) -> dict:
        return copy.deepcopy(self.obj)

    def replace(self, obj: dict) -> dict:
        if self.replace_error is not None:
            raise self.replace_error
        self.replace_count += 1
        self.obj = copy.deepcopy(obj)
        return copy.deepcopy(self.obj)

    def replace_status(self, obj: dict) -> dict:
        if self.status_error is not None:
            raise self.status_error
        if self.status_conflicts > 0:
            self.status_conflicts -= 1
            err = ApiException(status=409, reason="Conflict")
            self.raised.append(err)
            raise err
        self.obj["status"] = copy.deepcopy(obj["status"])
        self.status_writes.append(copy.deepcopy(obj["status"]))
        return copy.deepcopy(self.obj)


class FakeFetcher:
    def __init__(self, result: Optional[StageResult] = None, exc: Optional[Exception] = None):
        self.result = result or StageResult(stdout="fetched")
        self.exc = exc
        self.calls = 0

    def fetch(self, app, dst_dir):
        self.calls += 1
        if self.exc:
            raise self.exc
        return self.result


class FakeTemplater:
    def __init__(self, result: Optional[StageResult] = None):
        self.result = result or StageResult(output="kind: ConfigMap\n")
        self.calls = 0

    def template(self, app, fetched_dir):
        self.calls += 1
        return self.result


class FakeDeployer:
    def __init__(self, result: Optional[StageResult] = None, delete_result: Optional[StageResult] = None):
        self.result = result or StageResult(stdout="Succeeded")
        self.delete_result = delete_result or StageResult(stdout="Deleted")
        self.deploy_calls = []
        self.delete_calls = []

    def deploy(self, app, templated, args):
        self.deploy_calls.append((templated, list(args)))
        return self.result

    def delete(self, app, args):
        self.delete_calls.append(list(args))
        return self.delete_result


def make_app(name: str = "simple-app", namespace: str = "default", **spec) -> dict:
    app_spec = {
        "fetch": [{"inline": {"paths": {"config.yml": "kind: ConfigMap"}}}],
        "template": [{"ytt": {}}],
        "deploy": [{"kapp": {}}],
    }
    app_spec.update(spec)
    return {
        "apiVersion": "kappctrl.k14s.io/v1alpha1",
        "kind": "App",
        "metadata": {"name": name, "namespace": namespace, "generation": 1},
        "spec": app_spec,
    }
