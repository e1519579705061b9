from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
import uuid
from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class ClusterStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"


class EnvironmentStatus(str, enum.Enum):
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    DELETING = "DELETING"
    TERMINATED = "TERMINATED"


# Lifecycle transitions the orchestrator may perform.
# ERROR and DELETING are reachable from every non-terminal state.
ENVIRONMENT_TRANSITIONS = {
    EnvironmentStatus.CREATING: {EnvironmentStatus.RUNNING},
    EnvironmentStatus.RUNNING: {EnvironmentStatus.STOPPED},
    EnvironmentStatus.STOPPED: {EnvironmentStatus.RUNNING},
    EnvironmentStatus.ERROR: {EnvironmentStatus.RUNNING},
    EnvironmentStatus.DELETING: {EnvironmentStatus.TERMINATED},
    EnvironmentStatus.TERMINATED: set(),
}


def can_transition(current: str, target: str) -> bool:
    """Check whether an environment may move from ``current`` to ``target``."""
    current = EnvironmentStatus(current)
    target = EnvironmentStatus(target)
    if current == EnvironmentStatus.TERMINATED:
        return False
    if target in (EnvironmentStatus.ERROR, EnvironmentStatus.DELETING):
        return True
    return target in ENVIRONMENT_TRANSITIONS[current]


class Cluster(Base):
    """Registered Kubernetes cluster with its (encrypted) kubeconfig."""
    __tablename__ = "clusters"

    id = Column(String(36), primary_key=True, default=_new_id, index=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    provider = Column(String(50), nullable=False, default="kubernetes")
    region = Column(String(50), nullable=False)

    # iv:authTag:cipher (hex) or legacy iv:cipher; very old rows hold plaintext YAML
    kubeconfig = Column(Text, nullable=False)

    status = Column(String(20), nullable=False, default=ClusterStatus.ACTIVE.value)
    node_count = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    environments = relationship("Environment", back_populates="cluster")


class Environment(Base):
    """A user development environment hosted on a cluster."""
    __tablename__ = "environments"

    id = Column(String(36), primary_key=True, default=_new_id, index=True)
    name = Column(String(100), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    cluster_id = Column(String(36), ForeignKey("clusters.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=EnvironmentStatus.CREATING.value)

    # Workload parameters (copied from the template when the row is created)
    docker_image = Column(String(500), nullable=False)
    port = Column(Integer, nullable=False, default=8080)
    resources_cpu = Column(String(20), nullable=False, default="500m")
    resources_memory = Column(String(20), nullable=False, default="1Gi")
    resources_storage = Column(String(20), nullable=False, default="10Gi")
    environment_variables = Column(JSON, nullable=True)

    # Remote resources, set once provisioning succeeded
    kubernetes_namespace = Column(String(63), nullable=True)
    kubernetes_deployment_name = Column(String(63), nullable=True)
    kubernetes_service_name = Column(String(63), nullable=True)
    external_url = Column(String(500), nullable=True)

    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    cluster = relationship("Cluster", back_populates="environments")
