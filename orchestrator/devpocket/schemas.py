from pydantic import BaseModel, Field
from typing import Annotated, Dict, List, Literal, Optional, Union


# ============================================================================
# Kubeconfig
# ============================================================================

class ParsedClusterContext(BaseModel):
    """One resolved kubeconfig context (cluster + user + namespace)."""
    name: str
    description: str
    provider: str
    region: str
    server: str
    namespace: str = "default"
    is_current_context: bool = False
    insecure_skip_tls_verify: bool = False

    # Credential material, excluded from repr so it never ends up in logs
    certificate_authority: Optional[str] = Field(None, repr=False)
    client_certificate: Optional[str] = Field(None, repr=False)
    client_key: Optional[str] = Field(None, repr=False)
    token: Optional[str] = Field(None, repr=False)
    username: Optional[str] = Field(None, repr=False)
    password: Optional[str] = Field(None, repr=False)

    # The complete source document; it is persisted/encrypted as one unit
    kubeconfig: str = Field(..., repr=False)


class ContextConnected(BaseModel):
    status: Literal["connected"] = "connected"
    connected: Literal[True] = True
    name: str
    node_count: int
    namespace_count: int


class ContextDisconnected(BaseModel):
    status: Literal["disconnected"] = "disconnected"
    connected: Literal[False] = False
    name: str
    error: str


ContextConnectivity = Annotated[
    Union[ContextConnected, ContextDisconnected],
    Field(discriminator="status"),
]


class ConnectivityReport(BaseModel):
    valid: bool
    contexts: List[ContextConnectivity]


# ============================================================================
# Environments
# ============================================================================

class EnvironmentResources(BaseModel):
    cpu: str = "500m"
    memory: str = "1Gi"
    storage: str = "10Gi"


class EnvironmentCreateOptions(BaseModel):
    """Parameters for provisioning an existing environment row on its cluster."""
    environment_id: str
    user_id: str
    name: str
    docker_image: str
    port: int = Field(8080, ge=1, le=65535)
    resources: EnvironmentResources = Field(default_factory=EnvironmentResources)
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    startup_commands: List[str] = Field(default_factory=list)


class EnvironmentInfo(BaseModel):
    status: str
    namespace: str
    deployment_name: Optional[str] = None
    pod_name: Optional[str] = None
    service_name: Optional[str] = None
    internal_url: Optional[str] = None
    ready: bool = False


class CommandSucceeded(BaseModel):
    status: Literal["succeeded"] = "succeeded"
    success: Literal[True] = True
    exit_code: int = 0
    output: str = ""


class CommandFailed(BaseModel):
    status: Literal["failed"] = "failed"
    success: Literal[False] = False
    exit_code: Optional[int] = None  # None when the command timed out
    output: str = ""
    error: str = ""
    timed_out: bool = False


CommandResult = Annotated[
    Union[CommandSucceeded, CommandFailed],
    Field(discriminator="status"),
]


class LogsAvailable(BaseModel):
    status: Literal["available"] = "available"
    pod_name: str
    content: str


class LogsUnavailable(BaseModel):
    status: Literal["unavailable"] = "unavailable"
    reason: str


LogsResult = Annotated[
    Union[LogsAvailable, LogsUnavailable],
    Field(discriminator="status"),
]
