"""
Database access for clusters and environments.

The orchestrator only reads clusters and updates environment rows; creating
rows belongs to the user-facing API. Every SQLAlchemy failure is re-raised as
DatabaseError so callers deal with one taxonomy.
"""
import logging
from typing import Any, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DatabaseError
from ..models import Cluster, Environment

logger = logging.getLogger(__name__)


class Datastore:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Cluster).where(Cluster.id == cluster_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to load cluster {cluster_id}: {e}")
            raise DatabaseError(f"Failed to load cluster {cluster_id}: {e}") from e

    async def list_clusters(self) -> List[Cluster]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(Cluster).order_by(Cluster.name))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to list clusters: {e}")
            raise DatabaseError(f"Failed to list clusters: {e}") from e

    async def get_environment(self, environment_id: str) -> Optional[Environment]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Environment).where(Environment.id == environment_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to load environment {environment_id}: {e}")
            raise DatabaseError(f"Failed to load environment {environment_id}: {e}") from e

    async def update_environment(self, environment_id: str, **values: Any) -> None:
        """
        Update columns of one environment row.

        Enum values are stored by value, e.g. ``status=EnvironmentStatus.RUNNING``
        is written as ``"RUNNING"``.
        """
        values = {key: getattr(value, "value", value) for key, value in values.items()}
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Environment).where(Environment.id == environment_id).values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to update environment {environment_id}: {e}")
            raise DatabaseError(f"Failed to update environment {environment_id}: {e}") from e

        logger.debug(f"[DB] Environment {environment_id} updated: {sorted(values)}")

    async def update_cluster_kubeconfig(self, cluster_id: str, kubeconfig: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Cluster).where(Cluster.id == cluster_id).values(kubeconfig=kubeconfig)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"[DB] Failed to update kubeconfig of cluster {cluster_id}: {e}")
            raise DatabaseError(f"Failed to update cluster {cluster_id}: {e}") from e
