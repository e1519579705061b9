"""
Kubernetes API clients bound to one kubeconfig context.

Clusters are remote and registered at runtime, so the process-wide
``config.load_kube_config()`` is never used: every cluster gets its own
``client.Configuration`` built from the stored kubeconfig document.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

import yaml
from kubernetes import client, config

from ..errors import FormatError

logger = logging.getLogger(__name__)


@dataclass
class ClusterClient:
    """API handles for one cluster context."""
    context: str
    configuration: client.Configuration
    api_client: client.ApiClient
    core_v1: client.CoreV1Api = field(init=False)
    apps_v1: client.AppsV1Api = field(init=False)

    def __post_init__(self):
        self.core_v1 = client.CoreV1Api(self.api_client)
        self.apps_v1 = client.AppsV1Api(self.api_client)

    def stream_core_v1(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api for stream (exec) operations.

        ``kubernetes.stream.stream()`` temporarily patches the api_client request
        method to use WebSocket; a dedicated client keeps concurrent regular
        calls on ``core_v1`` unaffected.
        """
        return client.CoreV1Api(client.ApiClient(self.configuration))

    def close(self) -> None:
        try:
            self.api_client.close()
        except Exception as e:
            logger.debug(f"[K8S] Error closing API client for context {self.context}: {e}")


def load_kubeconfig_document(document: str) -> Dict[str, Any]:
    """Parse kubeconfig YAML into a dict, raising FormatError on anything else."""
    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise FormatError(f"Invalid kubeconfig format: {e}") from e
    if not isinstance(data, dict):
        raise FormatError("Invalid kubeconfig format: document is not a mapping")
    return data


def resolve_context_name(config_dict: Dict[str, Any], context: Optional[str] = None) -> str:
    """Pick the requested context, else current-context, else the first declared one."""
    if context:
        return context
    current = config_dict.get("current-context")
    if current:
        return current
    contexts = config_dict.get("contexts") or []
    for entry in contexts:
        if isinstance(entry, dict) and entry.get("name"):
            return entry["name"]
    raise FormatError("No contexts found in kubeconfig")


def build_cluster_client(document: str, context: Optional[str] = None) -> ClusterClient:
    """
    Build API clients for one context of a kubeconfig document.

    Args:
        document: Kubeconfig YAML (already decrypted)
        context: Context name; defaults to current-context

    Raises:
        FormatError: If the document cannot be loaded by the kubernetes client
    """
    config_dict = load_kubeconfig_document(document)
    context_name = resolve_context_name(config_dict, context)

    configuration = client.Configuration()
    try:
        config.load_kube_config_from_dict(
            config_dict=config_dict,
            context=context_name,
            client_configuration=configuration,
            persist_config=False,
        )
    except (config.ConfigException, KeyError, TypeError, ValueError) as e:
        logger.error(f"[K8S] Failed to load kubeconfig for context {context_name}: {e}")
        raise FormatError(f"Invalid kubeconfig format: {e}") from e

    logger.debug(f"[K8S] Built API client for context {context_name} ({configuration.host})")
    return ClusterClient(
        context=context_name,
        configuration=configuration,
        api_client=client.ApiClient(configuration),
    )
