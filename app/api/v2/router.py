"""
Router principal para API v2.
Agrupa todos os endpoints v2 em um único router.
"""
from fastapi import APIRouter
from app.api.v2 import generate, status

# Criar router principal
router = APIRouter()


# Endpoint de health check e documentação
@router.get("/")
async def v2_root():
    """Endpoint raiz da API v2 - lista endpoints disponíveis."""
    return {
        "version": "v2",
        "status": "ok",
        "endpoints": {
            "generate": "POST /api/v2/generate",
            "router_status": "GET /api/v2/router/status",
            "router_models": "GET /api/v2/router/models",
        },
        "docs": "/docs"
    }

# Incluir todos os routers v2
router.include_router(generate.router, tags=["v2-generate"])
router.include_router(status.router, prefix="/router", tags=["v2-router"])

__all__ = ["router"]
