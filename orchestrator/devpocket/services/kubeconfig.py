"""
Kubeconfig parsing, provider/region inference and connectivity checks.

A kubeconfig may declare many contexts. Each context whose cluster and user
entries resolve becomes one ParsedClusterContext carrying the complete source
document, because the full document is what gets encrypted and stored.
"""
import asyncio
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from ..errors import FormatError, serialize_error
from ..schemas import (
    ConnectivityReport,
    ContextConnected,
    ContextDisconnected,
    ParsedClusterContext,
)
from .cluster_client import ClusterClient, build_cluster_client, load_kubeconfig_document

logger = logging.getLogger(__name__)


# Provider-specific address ranges, checked before hostname patterns
IP_PREFIX_REGIONS = (
    ("51.79.", "eu-west-1"),      # OVH Europe
    ("51.178.", "eu-central-1"),  # OVH Germany
    ("54.", "us-east-1"),         # AWS
    ("3.", "us-east-1"),          # AWS
    ("35.", "us-central1"),       # GCP
    ("34.", "us-central1"),       # GCP
)

REGION_PATTERNS = (
    re.compile(r"(\w+-\w+-\d+)\."),  # us-west-1.eks.amazonaws.com
    re.compile(r"([a-z]+\d+)\."),     # gra7.k8s.ovh.net
    re.compile(r"\.(\w+-\w+)\."),     # cluster.eu-west.example.com
)


def _find_named(entries: Any, name: Optional[str]) -> Optional[Dict[str, Any]]:
    if not name or not isinstance(entries, list):
        return None
    for entry in entries:
        if isinstance(entry, dict) and entry.get("name") == name:
            return entry
    return None


class KubeconfigParser:
    """Parses kubeconfig documents into per-context cluster records."""

    def __init__(
        self,
        default_region: str = "eu-west-1",
        default_provider: str = "kubernetes",
        unknown_node_count: int = 1,
        client_factory: Callable[[str, Optional[str]], ClusterClient] = build_cluster_client,
    ):
        self.default_region = default_region
        self.default_provider = default_provider
        self.unknown_node_count = unknown_node_count
        self.client_factory = client_factory

    @classmethod
    def from_settings(cls, settings) -> "KubeconfigParser":
        return cls(
            default_region=settings.k8s_default_region,
            default_provider=settings.k8s_default_provider,
            unknown_node_count=settings.k8s_unknown_node_count,
        )

    # =========================================================================
    # PARSING
    # =========================================================================

    def parse_file(self, path: str) -> List[ParsedClusterContext]:
        """Read a kubeconfig file from disk and parse it."""
        file_path = Path(path).expanduser().resolve()
        if not file_path.is_file():
            raise FormatError(f"Kubeconfig file not found: {file_path}")
        return self.parse_content(file_path.read_text(encoding="utf-8"))

    def parse_content(self, content: str) -> List[ParsedClusterContext]:
        """
        Parse kubeconfig content into one record per resolvable context.

        Contexts referencing a missing cluster or user are skipped and logged.

        Raises:
            FormatError: If the document is not a kubeconfig (kind != Config, bad YAML)
        """
        data = load_kubeconfig_document(content)
        if data.get("kind") != "Config":
            raise FormatError("Invalid kubeconfig format: kind must be 'Config'")

        contexts = data.get("contexts") or []
        if not isinstance(contexts, list):
            raise FormatError("Invalid kubeconfig format: contexts must be a list")

        current_context = data.get("current-context")
        parsed: List[ParsedClusterContext] = []

        for entry in contexts:
            context_name = entry.get("name") if isinstance(entry, dict) else None
            context = entry.get("context") if isinstance(entry, dict) else None
            if not context_name or not isinstance(context, dict):
                logger.warning(f"[KUBECONFIG] Skipping malformed context entry: {context_name or '<unnamed>'}")
                continue

            cluster_entry = _find_named(data.get("clusters"), context.get("cluster"))
            user_entry = _find_named(data.get("users"), context.get("user"))

            if not cluster_entry or not user_entry:
                logger.warning(
                    f"[KUBECONFIG] Incomplete context configuration: context={context_name} "
                    f"cluster={context.get('cluster')} (found={bool(cluster_entry)}) "
                    f"user={context.get('user')} (found={bool(user_entry)})"
                )
                continue

            cluster = cluster_entry.get("cluster") or {}
            user = user_entry.get("user") or {}
            server = cluster.get("server") or ""

            parsed.append(ParsedClusterContext(
                name=context_name,
                description=f"Kubernetes cluster: {context_name}",
                provider=self.extract_provider(cluster_entry.get("name", ""), server),
                region=self.extract_region(server),
                server=server,
                namespace=context.get("namespace") or "default",
                is_current_context=context_name == current_context,
                insecure_skip_tls_verify=bool(cluster.get("insecure-skip-tls-verify", False)),
                certificate_authority=cluster.get("certificate-authority-data"),
                client_certificate=user.get("client-certificate-data"),
                client_key=user.get("client-key-data"),
                token=user.get("token"),
                username=user.get("username"),
                password=user.get("password"),
                kubeconfig=content,
            ))

        logger.info(
            f"[KUBECONFIG] Kubeconfig parsed: {len(parsed)} of {len(contexts)} contexts resolved "
            f"(current context: {current_context})"
        )
        return parsed

    # =========================================================================
    # INFERENCE
    # =========================================================================

    def extract_region(self, server: str) -> str:
        """Infer the cluster region from its API server URL."""
        try:
            hostname = urlparse(server).hostname or ""
        except ValueError:
            return self.default_region

        for prefix, region in IP_PREFIX_REGIONS:
            if hostname.startswith(prefix):
                return region

        for pattern in REGION_PATTERNS:
            match = pattern.search(hostname)
            if match and not match.group(1)[0].isdigit():
                return match.group(1)

        return self.default_region

    def extract_provider(self, cluster_name: str, server: str) -> str:
        """Infer the hosting provider from the cluster name or server URL."""
        name = (cluster_name or "").lower()
        server_lower = (server or "").lower()

        if "ovh" in name or "ovh" in server_lower or "51.79." in server_lower:
            return "ovh"
        if "aws" in name or "eks" in name or "eks" in server_lower or "amazonaws" in server_lower:
            return "aws"
        if "gcp" in name or "gke" in name or "googleapis" in server_lower:
            return "gcp"
        if "azure" in name or "aks" in name or "azure" in server_lower:
            return "azure"
        if "digitalocean" in name or name.startswith("do-") or "digitalocean" in server_lower:
            return "digitalocean"
        if "linode" in name or "linode" in server_lower:
            return "linode"

        return self.default_provider

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    async def validate_connectivity(self, document: str) -> ConnectivityReport:
        """
        Check every context of a kubeconfig against its live cluster.

        Listing namespaces decides whether a context is connected. Listing nodes
        only feeds the reported node count; without node permissions the count
        falls back to ``unknown_node_count`` and the context stays connected.
        """
        try:
            data = load_kubeconfig_document(document)
            context_names = [
                entry["name"] for entry in data.get("contexts") or []
                if isinstance(entry, dict) and entry.get("name")
            ]
        except FormatError as e:
            logger.error(f"[KUBECONFIG] Kubeconfig validation failed: {e}")
            return ConnectivityReport(
                valid=False,
                contexts=[ContextDisconnected(name="unknown", error=str(e))],
            )

        results = []
        for context_name in context_names:
            results.append(await self._check_context(document, context_name))

        return ConnectivityReport(
            valid=bool(results) and all(result.connected for result in results),
            contexts=results,
        )

    async def _check_context(self, document: str, context_name: str):
        cluster_client: Optional[ClusterClient] = None
        try:
            cluster_client = self.client_factory(document, context_name)
            namespaces = await asyncio.to_thread(cluster_client.core_v1.list_namespace)

            try:
                nodes = await asyncio.to_thread(cluster_client.core_v1.list_node)
                node_count = len(nodes.items or [])
            except Exception as node_error:
                logger.debug(
                    f"[KUBECONFIG] Cannot list nodes for {context_name}, possibly due to permissions: {node_error}"
                )
                node_count = self.unknown_node_count

            namespace_count = len(namespaces.items or [])
            logger.info(
                f"[KUBECONFIG] Cluster connectivity validated: context={context_name} "
                f"nodes={node_count} namespaces={namespace_count}"
            )
            return ContextConnected(
                name=context_name,
                node_count=node_count,
                namespace_count=namespace_count,
            )
        except Exception as e:
            logger.warning(f"[KUBECONFIG] Cluster connectivity failed: context={context_name} error={serialize_error(e)['message']}")
            return ContextDisconnected(name=context_name, error=str(e) or type(e).__name__)
        finally:
            if cluster_client is not None:
                cluster_client.close()

    # =========================================================================
    # EXPORT
    # =========================================================================

    def create_context_kubeconfig(self, full_kubeconfig: str, context_name: str) -> str:
        """
        Create a minimal kubeconfig holding only one context's cluster/user/context.

        Raises:
            FormatError: If the context is unknown or its cluster/user is missing
        """
        data = load_kubeconfig_document(full_kubeconfig)

        context = _find_named(data.get("contexts"), context_name)
        if not context or not isinstance(context.get("context"), dict):
            raise FormatError(f"Context {context_name} not found")

        cluster = _find_named(data.get("clusters"), context["context"].get("cluster"))
        user = _find_named(data.get("users"), context["context"].get("user"))
        if not cluster or not user:
            raise FormatError(f"Incomplete configuration for context {context_name}")

        minimal_config = {
            "apiVersion": data.get("apiVersion", "v1"),
            "kind": data.get("kind", "Config"),
            "clusters": [cluster],
            "users": [user],
            "contexts": [context],
            "current-context": context_name,
            "preferences": data.get("preferences") or {},
        }
        return yaml.safe_dump(minimal_config, sort_keys=False, default_flow_style=False)
