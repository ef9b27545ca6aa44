# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.container import build_container  # noqa: E402
from app.infra.fake_backend import FakeBackendClient  # noqa: E402
from app.infra.metrics import get_metrics_collector  # noqa: E402
from tests.factories import RecordingPush, make_settings  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-wide; start every test from zero"""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def backend():
    return FakeBackendClient()


@pytest.fixture
def push():
    return RecordingPush()


@pytest.fixture
def container(backend, push):
    """Fresh dispatch core per test; the dispatcher is not started, tests drain it."""
    return build_container(make_settings(), backend=backend, push=push)


@pytest.fixture
def engine(container):
    return container.engine


@pytest.fixture
def registry(container):
    return container.registry


@pytest.fixture
def tracker(container):
    return container.tracker


@pytest.fixture
def dispatcher(container):
    return container.notifications
