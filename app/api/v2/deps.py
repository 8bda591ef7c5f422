"""
Dependências dos endpoints v2.
"""
from fastapi import HTTPException, Request, status

from app.services.router import SelectionOrchestrator


def get_orchestrator(request: Request) -> SelectionOrchestrator:
    """Orquestrador criado no lifespan (um por processo)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Roteador ainda não inicializado",
        )
    return orchestrator
