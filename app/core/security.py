"""
Autenticação dos endpoints do roteador por header x-api-key.
"""
import logging
import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from app.core.config import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER_NAME = "x-api-key"

api_key_header = APIKeyHeader(name=API_KEY_HEADER_NAME, auto_error=False)


async def get_api_key(request: Request, api_key: str = Security(api_key_header)) -> str:
    """Valida o token de acesso; sem token configurado, nenhuma chamada passa."""
    expected = settings.API_ACCESS_TOKEN
    if expected and api_key and secrets.compare_digest(api_key.encode(), expected.encode()):
        return api_key

    client = request.client.host if request.client else "?"
    logger.warning(
        f"🔐 [AUTH] Acesso negado em {request.url.path} "
        f"(cliente={client}, header={'presente' if api_key else 'ausente'})"
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Credenciais inválidas ou ausentes ({API_KEY_HEADER_NAME})",
    )
