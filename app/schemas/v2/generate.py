"""
Schemas Pydantic para o endpoint de geração v2.
"""
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class GenerateRequest(BaseModel):
    """Request para gerar resposta com a próxima credencial disponível."""
    tenant_id: Optional[str] = Field(
        None,
        description="Empresa que origina a requisição (None = apenas chaves centrais)",
    )
    prompt: str = Field(..., description="Prompt já montado", min_length=1)
    model: Optional[str] = Field(None, description="Modelo desejado (opcional)")
    preferred_provider: Optional[str] = Field(
        None, description="GOOGLE, OPENAI, DEEPSEEK, OPENROUTER ou OLLAMA"
    )
    strict_provider: bool = Field(
        False, description="Se True, desativa failover para outros providers nesta chamada"
    )
    system_prompt: Optional[str] = Field(None, description="Instrução de sistema")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_output_tokens: int = Field(2048, ge=1, le=65536)
    locale: Optional[str] = Field(None, description="Idioma da mensagem de esgotamento (ar, en, pt)")
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "tenant_id": "empresa-123",
                "prompt": "Resuma a conversa em uma frase.",
                "preferred_provider": "GOOGLE",
                "strict_provider": False,
            }
        }
    )


class UsageInfo(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerateResponse(BaseModel):
    """Resposta de sucesso."""
    content: str = Field(..., description="Texto gerado")
    usage: UsageInfo
    model: str = Field(..., description="Modelo que atendeu")
    provider: str = Field(..., description="Provider que atendeu")
    credential_id: str = Field(..., description="Id da credencial usada (nunca o segredo)")
    attempts: int = Field(..., description="Tentativas até o sucesso")
    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "content": "O cliente pediu o orçamento atualizado.",
                "usage": {"prompt_tokens": 42, "completion_tokens": 9, "total_tokens": 51},
                "model": "gemini-2.0-flash",
                "provider": "GOOGLE",
                "credential_id": "6f1c...",
                "attempts": 1,
            }
        }
    )


class ExhaustedResponse(BaseModel):
    """Nenhuma credencial disponível agora (HTTP 503)."""
    exhausted: bool = True
    retry_after_seconds: Optional[int] = Field(None, description="Espera estimada")
    message: str = Field(..., description="Mensagem localizada para o usuário final")
    attempts: int = 0
