"""
Tests for the SQLAlchemy datastore and the environment state machine.
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from devpocket.database import create_tables
from devpocket.errors import DatabaseError
from devpocket.models import EnvironmentStatus, can_transition
from devpocket.services.datastore import Datastore


class TestDatastore:

    @pytest.mark.asyncio
    async def test_get_cluster(self, datastore, seed, make_cluster):
        await seed(make_cluster())

        cluster = await datastore.get_cluster("cluster-1")

        assert cluster.name == "ovh-prod"
        assert cluster.status == "ACTIVE"
        assert await datastore.get_cluster("missing") is None

    @pytest.mark.asyncio
    async def test_list_clusters(self, datastore, seed, make_cluster):
        await seed(make_cluster(), make_cluster(id="cluster-2", name="aws-dev"))

        clusters = await datastore.list_clusters()

        assert [c.name for c in clusters] == ["aws-dev", "ovh-prod"]

    @pytest.mark.asyncio
    async def test_get_environment(self, datastore, seed, make_cluster, make_environment):
        await seed(make_cluster(), make_environment("cluster-1"))

        environment = await datastore.get_environment("env-1")

        assert environment.cluster_id == "cluster-1"
        assert environment.status == EnvironmentStatus.CREATING.value
        assert environment.resources_cpu == "500m"
        assert await datastore.get_environment("missing") is None

    @pytest.mark.asyncio
    async def test_update_environment_stores_enum_values(self, datastore, seed, make_cluster, make_environment):
        await seed(make_cluster(), make_environment("cluster-1"))

        await datastore.update_environment(
            "env-1",
            status=EnvironmentStatus.ERROR,
            last_error="ClusterUnavailableError: Cluster cluster-1 not found or inactive",
        )

        environment = await datastore.get_environment("env-1")
        assert environment.status == "ERROR"
        assert environment.last_error.startswith("ClusterUnavailableError")

    @pytest.mark.asyncio
    async def test_update_cluster_kubeconfig(self, datastore, seed, make_cluster):
        await seed(make_cluster())

        await datastore.update_cluster_kubeconfig("cluster-1", "aa:bb:cc")

        assert (await datastore.get_cluster("cluster-1")).kubeconfig == "aa:bb:cc"

    @pytest.mark.asyncio
    async def test_sqlalchemy_errors_become_database_errors(self):
        def broken_session():
            raise OperationalError("SELECT", {}, Exception("database is down"))

        datastore = Datastore(MagicMock(side_effect=broken_session))

        with pytest.raises(DatabaseError):
            await datastore.get_environment("env-1")
        with pytest.raises(DatabaseError):
            await datastore.update_environment("env-1", status=EnvironmentStatus.RUNNING)


class TestStateMachine:

    @pytest.mark.parametrize("current,target", [
        ("CREATING", "RUNNING"),
        ("RUNNING", "STOPPED"),
        ("STOPPED", "RUNNING"),
        ("ERROR", "RUNNING"),
        ("DELETING", "TERMINATED"),
        ("RUNNING", "ERROR"),
        ("CREATING", "ERROR"),
        ("STOPPED", "DELETING"),
        ("ERROR", "DELETING"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        ("CREATING", "STOPPED"),
        ("STOPPED", "STOPPED"),
        ("TERMINATED", "RUNNING"),
        ("TERMINATED", "DELETING"),
        ("TERMINATED", "ERROR"),
        ("DELETING", "RUNNING"),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)


@pytest.mark.asyncio
async def test_create_tables_is_idempotent():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    try:
        await create_tables(engine)
        await create_tables(engine)

        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    finally:
        await engine.dispose()

    assert {"clusters", "environments"} <= set(tables)
