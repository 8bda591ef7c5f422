"""
Endpoints somente leitura do roteador (status e modelos).
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query

from app.api.v2.deps import get_orchestrator
from app.core.security import get_api_key
from app.schemas.v2.router_status import ModelsResponse, RouterStatusResponse
from app.services.router import SelectionOrchestrator

router = APIRouter(dependencies=[Depends(get_api_key)])


@router.get("/status", response_model=RouterStatusResponse)
async def router_status(
    tenant_id: Optional[str] = Query(None),
    orchestrator: SelectionOrchestrator = Depends(get_orchestrator),
) -> RouterStatusResponse:
    """Cooldowns por credencial, uso pendente e métricas do processo."""
    return RouterStatusResponse(**await orchestrator.get_status(tenant_id))


@router.get("/models", response_model=ModelsResponse)
async def router_models(
    tenant_id: Optional[str] = Query(None),
    preferred_provider: Optional[str] = Query(None),
    orchestrator: SelectionOrchestrator = Depends(get_orchestrator),
) -> ModelsResponse:
    models = await orchestrator.get_models_ordered_by_priority(tenant_id, preferred_provider)
    return ModelsResponse(tenant_id=tenant_id, preferred_provider=preferred_provider, models=models)
