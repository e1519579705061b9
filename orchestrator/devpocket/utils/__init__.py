"""Utility modules for the orchestrator service."""

from .resource_naming import (
    sanitize_dns_label,
    get_user_namespace,
    get_environment_resource_names,
    get_internal_url,
)

__all__ = [
    'sanitize_dns_label',
    'get_user_namespace',
    'get_environment_resource_names',
    'get_internal_url',
]
