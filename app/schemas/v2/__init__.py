"""
Schemas para API v2.
"""
from app.schemas.v2.generate import GenerateRequest, GenerateResponse, ExhaustedResponse, UsageInfo
from app.schemas.v2.router_status import CredentialStatus, RouterStatusResponse, ModelsResponse

__all__ = [
    "GenerateRequest",
    "GenerateResponse",
    "ExhaustedResponse",
    "UsageInfo",
    "CredentialStatus",
    "RouterStatusResponse",
    "ModelsResponse",
]
