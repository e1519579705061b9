"""
FastAPI dependencies.

Services are created once at startup and stored on ``app.state``; these
providers hand them to route handlers (and are what tests override).
"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from .config import get_settings
from .services.encryption import EncryptionService
from .services.environments import EnvironmentOrchestrator
from .services.kubeconfig import KubeconfigParser

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> EnvironmentOrchestrator:
    return request.app.state.orchestrator


def get_kubeconfig_parser(request: Request) -> KubeconfigParser:
    return request.app.state.kubeconfig_parser


def get_encryption_service(request: Request) -> EncryptionService:
    return request.app.state.encryption_service


async def verify_internal_token(x_internal_token: Optional[str] = Header(None)) -> None:
    """
    Reject calls that do not carry the shared internal token.

    Only the user-facing API talks to this service; when no token is
    configured the check is disabled.
    """
    expected = get_settings().internal_api_token
    if not expected:
        return
    if not x_internal_token or not secrets.compare_digest(x_internal_token, expected):
        logger.warning("[AUTH] Rejected request with missing or invalid internal token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )
