"""
Resource naming utilities for user environments.

Centralized functions for generating consistent Kubernetes identifiers:
- Namespaces (one per user)
- Deployments, Services, PVCs and ConfigMaps (one set per environment)
- In-cluster service URLs

All names are DNS-1123 labels: lowercase alphanumerics and hyphens,
at most 63 characters, starting and ending with an alphanumeric.
"""

import re
from typing import Dict, Union
from uuid import UUID

DNS_LABEL_MAX_LENGTH = 63

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")


def sanitize_dns_label(value: str) -> str:
    """
    Make an arbitrary string a valid DNS-1123 label.

    Examples:
        >>> sanitize_dns_label("User_42")
        "user-42"
    """
    label = _INVALID_CHARS.sub("-", value.lower())
    label = label[:DNS_LABEL_MAX_LENGTH].strip("-")
    if not label:
        raise ValueError(f"Cannot build a resource name from {value!r}")
    return label


def get_user_namespace(user_id: Union[UUID, str], prefix: str = "devpocket") -> str:
    """
    Get the namespace hosting all environments of one user.

    Examples:
        >>> get_user_namespace("550e8400-e29b-41d4-a716-446655440000")
        "devpocket-550e8400-e29b-41d4-a716-446655440000"
    """
    return sanitize_dns_label(f"{prefix}-{user_id}")


def get_environment_resource_names(
    user_id: Union[UUID, str],
    environment_id: Union[UUID, str],
    namespace_prefix: str = "devpocket",
) -> Dict[str, str]:
    """
    Get the names of every Kubernetes object backing one environment.

    Returns:
        Dict with namespace, deployment, service, pvc and configmap names

    Examples:
        >>> get_environment_resource_names(user_id, "7c9e6679-7425-40de-944b-e07fc1f90ae7")["service"]
        "svc-7c9e6679-7425-40de-944b-e07fc1f90ae7"
    """
    env = str(environment_id)
    return {
        "namespace": get_user_namespace(user_id, namespace_prefix),
        "deployment": sanitize_dns_label(f"env-{env}"),
        "service": sanitize_dns_label(f"svc-{env}"),
        "pvc": sanitize_dns_label(f"pvc-{env}"),
        "configmap": sanitize_dns_label(f"config-{env}"),
    }


def get_internal_url(service_name: str, namespace: str, port: int) -> str:
    """
    Get the in-cluster URL of an environment service.

    Example:
        >>> get_internal_url("svc-abc", "devpocket-42", 8080)
        "http://svc-abc.devpocket-42.svc.cluster.local:8080"
    """
    return f"http://{service_name}.{namespace}.svc.cluster.local:{port}"
