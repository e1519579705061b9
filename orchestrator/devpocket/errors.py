"""
Error taxonomy for cluster credential handling and environment orchestration.

Every error carries the HTTP status code the API layer should answer with.
Mutating operations re-raise these wrapped with an operation-specific message
(``raise AuthError("Failed to start environment: ...") from exc``) so the
original cause stays available to logs.
"""
import traceback
from typing import Any, Dict


class DevPocketError(Exception):
    """Base exception for orchestration errors."""
    status_code: int = 500


class FormatError(DevPocketError):
    """Malformed kubeconfig, YAML document or encrypted payload."""
    status_code = 400


class DecryptionError(DevPocketError):
    """Cipher or authentication tag failure while decrypting a payload."""
    status_code = 500


class EncryptionError(DevPocketError):
    """Encryption service misconfigured or unable to encrypt."""
    status_code = 500


class ClusterUnavailableError(DevPocketError):
    """Cluster is missing or not ACTIVE."""
    status_code = 503


class TransientNetworkError(DevPocketError):
    """Timeout, refused or reset connection to the cluster API."""
    status_code = 503


class AuthError(DevPocketError):
    """The cluster API rejected our credentials (401/403)."""
    status_code = 502


class DatabaseError(DevPocketError):
    """Datastore call failed."""
    status_code = 500


class KubernetesError(DevPocketError):
    """Any other failure reported by the cluster API."""
    status_code = 500


class EnvironmentNotFoundError(DevPocketError):
    status_code = 404


class EnvironmentStateError(DevPocketError):
    """Requested lifecycle transition is not allowed from the current status."""
    status_code = 409


def serialize_error(error: BaseException) -> Dict[str, Any]:
    """
    Flatten an exception for structured log output.

    Returns:
        Dict with name, message, stack and (if chained) the cause's name/message
    """
    details: Dict[str, Any] = {
        "name": type(error).__name__,
        "message": str(error),
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    cause = error.__cause__
    if cause is not None:
        details["cause"] = {"name": type(cause).__name__, "message": str(cause)}
    return details
