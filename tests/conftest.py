"""
Test configuration and fixtures for pytest.

Fixtures include: an in-memory fake cluster, fast manager configuration,
preset/compute managers wired to the fake, and mocked kubernetes API objects
for client-level tests.
"""

import sys
import os
import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

# Make the package and the test helpers importable without installation
tests_dir = Path(__file__).parent
sys.path.insert(0, str(tests_dir.parent))
sys.path.insert(0, str(tests_dir))

from fake_cluster import FakeCluster  # noqa: E402


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    os.environ["K8S_NAMESPACE"] = "default"
    os.environ["K8S_DEFAULT_TIMEOUT_SECONDS"] = "5"
    os.environ["INITIALIZE_DEFAULT_PRESETS"] = "false"

    # Import and clear settings cache after env vars are set
    from compute_orchestrator.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture
def cluster():
    """Fake cluster whose pods become ready as soon as the controller creates them."""
    return FakeCluster()


@pytest.fixture
def manager_config():
    """Manager configuration with timings shrunk for tests."""
    from compute_orchestrator.managers.types import ManagerConfig

    return ManagerConfig(
        namespace="default",
        logger=logging.getLogger("tests.managers"),
        claim_timeout=0.5,
        claim_poll_interval=0.01,
        cache_refresh_interval=0,
        replica_update_max_attempts=5,
    )


@pytest.fixture
def preset_manager(cluster, manager_config):
    from compute_orchestrator.managers.presets import DefaultPresetManager

    return DefaultPresetManager(cluster, manager_config)


@pytest_asyncio.fixture
async def compute_manager(cluster, preset_manager, manager_config):
    from compute_orchestrator.managers.computes import DefaultComputeManager

    manager = DefaultComputeManager(cluster, cluster, preset_manager, manager_config)
    yield manager
    await manager.close()


@pytest.fixture
def web_server_spec():
    """The nginx preset used by the end-to-end scenarios."""
    from compute_orchestrator.managers.types import ContainerPort, PresetSpec, PresetTemplate

    return PresetSpec(
        preset_id="web-server",
        name="Web Server",
        description="Nginx web server",
        version="1.0.0",
        template=PresetTemplate(
            image="nginx:latest",
            ports=[ContainerPort(name="http", container_port=80)],
        ),
    )


@pytest.fixture
def mock_core_v1():
    """Mock CoreV1Api."""
    return MagicMock()


@pytest.fixture
def mock_apps_v1():
    """Mock AppsV1Api."""
    return MagicMock()


@pytest.fixture
def k8s_client(mock_core_v1, mock_apps_v1):
    """KubernetesClient over mocked API objects (no kubeconfig is loaded)."""
    from compute_orchestrator.kubernetes.client import KubernetesClient

    return KubernetesClient(
        namespace="default",
        default_timeout=2.0,
        core_v1=mock_core_v1,
        apps_v1=mock_apps_v1,
        pod_ready_poll_interval=0.01,
    )
