"""
Cluster Connection Manager

Turns a cluster id into a live Kubernetes API client:

    cluster row -> decrypt kubeconfig (fall back to plaintext rows) -> validate -> client

Clients are cached per cluster together with a fingerprint of the stored
kubeconfig column. A lookup whose fingerprint differs (credential rotated)
closes the old client and builds a new one, so stale credentials are never
served.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..errors import ClusterUnavailableError, DecryptionError, FormatError
from ..models import ClusterStatus
from .cluster_client import ClusterClient, build_cluster_client, load_kubeconfig_document
from .datastore import Datastore
from .encryption import EncryptionService

logger = logging.getLogger(__name__)

REQUIRED_KUBECONFIG_MARKERS = ("apiVersion", "clusters", "contexts")


@dataclass(frozen=True)
class CredentialAttempt:
    """Outcome of one way of reading the stored kubeconfig column."""
    source: str  # "encrypted" or "plaintext"
    content: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.content is not None


@dataclass
class _CachedClient:
    fingerprint: str
    client: ClusterClient


class ClusterConnectionManager:
    """Resolves API clients for registered clusters."""

    def __init__(
        self,
        datastore: Datastore,
        encryption_service: EncryptionService,
        client_factory: Callable[[str, Optional[str]], ClusterClient] = build_cluster_client,
        allow_plaintext_fallback: bool = True,
    ):
        self.datastore = datastore
        self.encryption_service = encryption_service
        self.client_factory = client_factory
        self.allow_plaintext_fallback = allow_plaintext_fallback
        self._clients: Dict[str, _CachedClient] = {}

    async def get_client(self, cluster_id: str) -> ClusterClient:
        """
        Get an API client for an ACTIVE cluster.

        Raises:
            ClusterUnavailableError: Cluster row missing or not ACTIVE
            FormatError: Stored kubeconfig is neither decryptable nor valid plaintext
            DatabaseError: Cluster lookup failed
        """
        cluster = await self.datastore.get_cluster(cluster_id)
        if cluster is None or cluster.status != ClusterStatus.ACTIVE.value:
            self.invalidate(cluster_id)
            logger.warning(f"[CLUSTER] Cluster {cluster_id} not found or inactive")
            raise ClusterUnavailableError(f"Cluster {cluster_id} not found or inactive")

        fingerprint = self.encryption_service.hash(cluster.kubeconfig or "")
        cached = self._clients.get(cluster_id)
        if cached is not None:
            if cached.fingerprint == fingerprint:
                return cached.client
            logger.info(f"[CLUSTER] Credentials of cluster {cluster_id} changed, rebuilding client")
            self.invalidate(cluster_id)

        kubeconfig = self.resolve_kubeconfig(cluster_id, cluster.kubeconfig)
        cluster_client = await asyncio.to_thread(self.client_factory, kubeconfig, None)

        # Another caller may have built a client for the same credentials meanwhile
        current = self._clients.get(cluster_id)
        if current is not None and current.fingerprint == fingerprint:
            cluster_client.close()
            return current.client

        if current is not None:
            self.invalidate(cluster_id)
        self._clients[cluster_id] = _CachedClient(fingerprint=fingerprint, client=cluster_client)
        logger.info(f"[CLUSTER] API client ready for cluster {cluster_id} (context: {cluster_client.context})")
        return cluster_client

    def resolve_kubeconfig(self, cluster_id: str, stored: Optional[str]) -> str:
        """
        Recover plaintext kubeconfig from the stored column.

        Decryption is tried first; rows stored before encryption existed are
        accepted as plaintext when they pass the format check.
        """
        decrypted = self.try_decrypt(stored)
        if decrypted.ok:
            return decrypted.content

        if not self.allow_plaintext_fallback:
            raise FormatError(
                f"Failed to decrypt kubeconfig for cluster {cluster_id}: {decrypted.error}"
            ) from decrypted.error

        logger.warning(
            f"[CLUSTER] Kubeconfig of cluster {cluster_id} could not be decrypted "
            f"({type(decrypted.error).__name__}), trying plaintext"
        )
        plaintext = self.try_plaintext(stored)
        if plaintext.ok:
            logger.warning(
                f"[CLUSTER] Cluster {cluster_id} stores a plaintext kubeconfig; "
                f"run encrypt_cluster_credentials.py to encrypt it"
            )
            return plaintext.content

        raise FormatError(f"Invalid kubeconfig format for cluster {cluster_id}") from decrypted.error

    def try_decrypt(self, stored: Optional[str]) -> CredentialAttempt:
        try:
            content = self.encryption_service.decrypt(stored or "")
        except (FormatError, DecryptionError) as e:
            return CredentialAttempt(source="encrypted", error=e)
        if not self.validate_format(content):
            return CredentialAttempt(
                source="encrypted",
                error=FormatError("Decrypted content is not a valid kubeconfig"),
            )
        return CredentialAttempt(source="encrypted", content=content)

    def try_plaintext(self, stored: Optional[str]) -> CredentialAttempt:
        if not self.validate_format(stored):
            return CredentialAttempt(
                source="plaintext",
                error=FormatError("Stored content is not a valid kubeconfig"),
            )
        return CredentialAttempt(source="plaintext", content=stored)

    @staticmethod
    def validate_format(content: Optional[str]) -> bool:
        """Cheap structural check: required top-level keys, YAML mapping, kind Config."""
        if not content or not isinstance(content, str):
            return False
        if not all(marker in content for marker in REQUIRED_KUBECONFIG_MARKERS):
            return False
        try:
            data = load_kubeconfig_document(content)
        except FormatError:
            return False
        return data.get("kind") == "Config" and all(marker in data for marker in REQUIRED_KUBECONFIG_MARKERS)

    def invalidate(self, cluster_id: str) -> None:
        """Drop and close the cached client of one cluster (credential rotation, removal)."""
        cached = self._clients.pop(cluster_id, None)
        if cached is not None:
            cached.client.close()
            logger.debug(f"[CLUSTER] Cached client for cluster {cluster_id} invalidated")

    def close(self) -> None:
        for cluster_id in list(self._clients):
            self.invalidate(cluster_id)
