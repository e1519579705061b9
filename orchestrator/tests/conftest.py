"""
Test configuration and fixtures for pytest.

Fixtures include: an in-memory SQLite datastore, sample kubeconfigs, an
encryption service, fake cluster clients and a retry policy that never sleeps.
"""

import sys
import os
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

# Add the orchestrator directory to sys.path (maintenance scripts live there)
orchestrator_dir = Path(__file__).parent.parent
sys.path.insert(0, str(orchestrator_dir))

TEST_SECRET_KEY = "test-secret-key-for-testing-only-0123456789"


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # CRITICAL: Set test environment variables BEFORE any devpocket imports
    os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
    os.environ["SECRET_KEY"] = TEST_SECRET_KEY
    os.environ["INTERNAL_API_TOKEN"] = ""
    os.environ["K8S_RETRY_DELAY_SECONDS"] = "0"

    # Import and clear settings cache after env vars are set
    from devpocket.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as requiring Kubernetes")


SAMPLE_KUBECONFIG = """\
apiVersion: v1
kind: Config
current-context: ovh-prod
preferences: {}
clusters:
- name: ovh-cluster
  cluster:
    server: https://51.79.10.20:6443
    insecure-skip-tls-verify: true
- name: eks-cluster
  cluster:
    server: https://abc123.gr7.us-west-2.eks.amazonaws.com
    certificate-authority-data: Y2VydGlmaWNhdGU=
users:
- name: ovh-admin
  user:
    token: ovh-token
- name: eks-user
  user:
    client-certificate-data: Y2xpZW50LWNlcnQ=
    client-key-data: Y2xpZW50LWtleQ==
contexts:
- name: ovh-prod
  context:
    cluster: ovh-cluster
    user: ovh-admin
    namespace: apps
- name: eks-dev
  context:
    cluster: eks-cluster
    user: eks-user
"""


@pytest.fixture
def sample_kubeconfig():
    """Two resolvable contexts: ovh-prod (current) and eks-dev."""
    return SAMPLE_KUBECONFIG


@pytest.fixture
def test_settings():
    from devpocket.config import get_settings
    return get_settings()


@pytest.fixture
def encryption_service():
    from devpocket.services.encryption import EncryptionService
    return EncryptionService(TEST_SECRET_KEY)


@pytest.fixture
def no_sleep():
    """Replacement for asyncio.sleep that records requested delays."""
    return AsyncMock()


@pytest.fixture
def retry_policy(no_sleep):
    from devpocket.services.retry import RetryPolicy
    return RetryPolicy(max_attempts=3, delay_seconds=1.0, sleep=no_sleep)


@pytest_asyncio.fixture
async def session_factory():
    """Async session factory bound to a fresh in-memory SQLite database."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool
    from devpocket.database import create_tables

    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await create_tables(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def datastore(session_factory):
    from devpocket.services.datastore import Datastore
    return Datastore(session_factory)


@pytest.fixture
def seed(session_factory):
    """Insert ORM objects: ``await seed(cluster, environment)``."""
    async def _seed(*objects):
        async with session_factory() as session:
            session.add_all(objects)
            await session.commit()
        return objects
    return _seed


@pytest.fixture
def make_cluster(encryption_service, sample_kubeconfig):
    from devpocket.models import Cluster, ClusterStatus

    def _make(**overrides):
        values = {
            "id": "cluster-1",
            "name": "ovh-prod",
            "provider": "ovh",
            "region": "eu-west-1",
            "kubeconfig": encryption_service.encrypt(sample_kubeconfig),
            "status": ClusterStatus.ACTIVE.value,
            "node_count": 3,
        }
        values.update(overrides)
        return Cluster(**values)
    return _make


@pytest.fixture
def make_environment():
    from devpocket.models import Environment, EnvironmentStatus

    def _make(cluster_id, **overrides):
        values = {
            "id": "env-1",
            "name": "my-env",
            "user_id": "user-1",
            "cluster_id": cluster_id,
            "status": EnvironmentStatus.CREATING.value,
            "docker_image": "ubuntu:22.04",
            "port": 8080,
        }
        values.update(overrides)
        return Environment(**values)
    return _make


def make_pod(name="env-pod-0", phase="Running", ready=True, deleting=False):
    """Minimal V1Pod look-alike."""
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, deletion_timestamp="2026-01-01T00:00:00Z" if deleting else None),
        status=SimpleNamespace(phase=phase, container_statuses=[SimpleNamespace(ready=ready)]),
    )


@pytest.fixture
def fake_cluster_client():
    """ClusterClient stand-in whose API objects are MagicMocks."""
    cluster_client = MagicMock()
    cluster_client.context = "ovh-prod"
    cluster_client.core_v1.list_namespaced_pod.return_value = SimpleNamespace(items=[make_pod()])
    cluster_client.core_v1.read_namespaced_pod_log.return_value = "line 1\nline 2\n"
    return cluster_client


@pytest.fixture
def pod_factory():
    return make_pod
