"""
Endpoint de geração: seleciona credencial, executa e faz failover.
"""
import logging
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.v2.deps import get_orchestrator
from app.core.security import get_api_key
from app.schemas.v2.generate import (
    ExhaustedResponse,
    GenerateRequest,
    GenerateResponse,
    UsageInfo,
)
from app.services.router import ExhaustedResult, SelectionOptions, SelectionOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/generate",
    response_model=GenerateResponse,
    responses={503: {"model": ExhaustedResponse}},
    dependencies=[Depends(get_api_key)],
)
async def generate(
    request: GenerateRequest,
    orchestrator: SelectionOrchestrator = Depends(get_orchestrator),
):
    """
    Gera resposta com a próxima credencial disponível.

    - 200: sucesso
    - 400: requisição rejeitada pelo provider (mensagem sanitizada)
    - 503: todas as credenciais em cooldown (header Retry-After)
    """
    options = SelectionOptions(
        preferred_provider=request.preferred_provider,
        strict_provider=request.strict_provider,
        temperature=request.temperature,
        max_output_tokens=request.max_output_tokens,
        system_prompt=request.system_prompt,
        locale=request.locale,
    )
    result = await orchestrator.select_and_execute(
        request.tenant_id,
        request.prompt,
        model_hint=request.model,
        options=options,
    )

    if isinstance(result, ExhaustedResult):
        payload = ExhaustedResponse(
            retry_after_seconds=result.retry_after_seconds,
            message=result.message,
            attempts=result.attempts,
        )
        headers = {}
        if result.retry_after_seconds is not None:
            headers["Retry-After"] = str(result.retry_after_seconds)
        return JSONResponse(status_code=503, content=payload.model_dump(), headers=headers)

    return GenerateResponse(
        content=result.content,
        usage=UsageInfo(
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            total_tokens=result.usage.total_tokens,
        ),
        model=result.model,
        provider=result.provider.value,
        credential_id=result.credential_id,
        attempts=result.attempts,
    )
