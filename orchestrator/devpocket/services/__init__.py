"""
Services Module

Cluster credential handling and environment orchestration.

Key Submodules:
- encryption: AES-GCM kubeconfig encryption (legacy AES-CBC decode)
- kubeconfig: kubeconfig parsing, provider/region inference, connectivity checks
- connection: cluster id -> Kubernetes API client
- retry: retry policy for remote calls
- environments: environment lifecycle on remote clusters

Only the credential services are re-exported here. They work without a
database, so command line tools can use them without DATABASE_URL.

Usage:
    # Credentials (no database needed)
    from devpocket.services import EncryptionService, KubeconfigParser

    # Orchestration (opens the database engine on import)
    from devpocket.services.connection import ClusterConnectionManager
    from devpocket.services.environments import EnvironmentOrchestrator
"""

from .encryption import EncryptionService
from .kubeconfig import KubeconfigParser
from .retry import RetryPolicy, classify_error, is_retryable_error

__all__ = [
    "EncryptionService",
    "KubeconfigParser",
    "RetryPolicy",
    "classify_error",
    "is_retryable_error",
]
