"""
Kubeconfig API.

Used by the cluster registration flow of the user-facing API: parse an
uploaded kubeconfig, check it against the live clusters and cut
single-context documents. Parse results carry no credential material; the
document to persist is returned encrypted.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..dependencies import get_encryption_service, get_kubeconfig_parser, verify_internal_token
from ..schemas import ConnectivityReport
from ..services.encryption import EncryptionService
from ..services.kubeconfig import KubeconfigParser

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/kubeconfig",
    tags=["kubeconfig"],
    dependencies=[Depends(verify_internal_token)],
)


class KubeconfigRequest(BaseModel):
    kubeconfig: str = Field(..., min_length=1, description="Kubeconfig YAML document")


class ContextKubeconfigRequest(KubeconfigRequest):
    context: str = Field(..., min_length=1)


class ParsedContextResponse(BaseModel):
    """One kubeconfig context, without its credentials."""
    name: str
    description: str
    provider: str
    region: str
    server: str
    namespace: str
    is_current_context: bool
    insecure_skip_tls_verify: bool


class ParseKubeconfigResponse(BaseModel):
    contexts: List[ParsedContextResponse]
    encrypted_kubeconfig: str = Field(..., description="Whole document, encrypted for storage")


class ContextKubeconfigResponse(BaseModel):
    context: str
    kubeconfig: str


@router.post("/parse", response_model=ParseKubeconfigResponse)
async def parse_kubeconfig(
    request: KubeconfigRequest,
    parser: KubeconfigParser = Depends(get_kubeconfig_parser),
    encryption_service: EncryptionService = Depends(get_encryption_service),
):
    contexts = parser.parse_content(request.kubeconfig)
    return ParseKubeconfigResponse(
        contexts=[
            ParsedContextResponse(**context.model_dump(include=set(ParsedContextResponse.model_fields)))
            for context in contexts
        ],
        encrypted_kubeconfig=encryption_service.encrypt(request.kubeconfig),
    )


@router.post("/validate", response_model=ConnectivityReport)
async def validate_kubeconfig(
    request: KubeconfigRequest,
    parser: KubeconfigParser = Depends(get_kubeconfig_parser),
):
    report = await parser.validate_connectivity(request.kubeconfig)
    logger.info(f"[KUBECONFIG] Connectivity check: valid={report.valid} contexts={len(report.contexts)}")
    return report


@router.post("/context", response_model=ContextKubeconfigResponse)
async def export_context_kubeconfig(
    request: ContextKubeconfigRequest,
    parser: KubeconfigParser = Depends(get_kubeconfig_parser),
):
    kubeconfig = parser.create_context_kubeconfig(request.kubeconfig, request.context)
    return ContextKubeconfigResponse(context=request.context, kubeconfig=kubeconfig)
