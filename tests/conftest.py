import pytest
from prometheus_client import CollectorRegistry

from appctrl.metrics import ReconcileMetrics
from tests.helpers import FakeDeployer, FakeFetcher, FakeTemplater, make_app


@pytest.fixture
def metrics() -> ReconcileMetrics:
    return ReconcileMetrics(CollectorRegistry())


@pytest.fixture
def app_model() -> dict:
    return make_app()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def templater() -> FakeTemplater:
    return FakeTemplater()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()
