"""
Schemas Pydantic para os endpoints de consulta do roteador.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class CredentialStatus(BaseModel):
    id: str
    name: str
    provider: str
    model: Optional[str] = None
    cooling_down: bool
    remaining_seconds: float = 0


class RouterStatusResponse(BaseModel):
    """Estado somente leitura do roteador."""
    tenant_id: Optional[str] = None
    default_provider: str
    enable_failover: bool
    config_version: Optional[int] = None
    credentials: List[CredentialStatus] = Field(default_factory=list)
    pending_usage: int = Field(0, description="Bindings com uso ainda não gravado")
    performance: Dict[str, Any] = Field(default_factory=dict)


class ModelsResponse(BaseModel):
    tenant_id: Optional[str] = None
    preferred_provider: Optional[str] = None
    models: List[str] = Field(default_factory=list, description="Ordenados por prioridade")
