"""
Tipos do roteador de credenciais.

Credential (a "key"), ModelBinding, GlobalPolicy e os resultados
devolvidos ao chamador. Todos são dataclasses simples; a camada de
repositório converte linhas do asyncpg para estes tipos. Exclusões
temporárias não têm tipo próprio: o repositório devolve só os ids dos
bindings excluídos.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderType(str, Enum):
    """Backends de IA suportados."""
    GOOGLE = "GOOGLE"
    OPENAI = "OPENAI"
    DEEPSEEK = "DEEPSEEK"
    OPENROUTER = "OPENROUTER"
    OLLAMA = "OLLAMA"

    @classmethod
    def parse(cls, value: Optional[str], default: "ProviderType" = None) -> "ProviderType":
        if not value:
            return default or cls.GOOGLE
        try:
            return cls(value.strip().upper())
        except ValueError:
            return default or cls.GOOGLE


class KeyScope(str, Enum):
    """Escopo de uma credencial: compartilhada (central) ou da empresa."""
    CENTRAL = "CENTRAL"
    TENANT = "TENANT"


# Modelo usado quando a credencial não tem nenhum ModelBinding habilitado
DEFAULT_MODEL_BY_PROVIDER: Dict[ProviderType, str] = {
    ProviderType.GOOGLE: "gemini-2.0-flash",
    ProviderType.OPENAI: "gpt-4o-mini",
    ProviderType.DEEPSEEK: "deepseek-chat",
    ProviderType.OLLAMA: "llama3.2",
    ProviderType.OPENROUTER: "openai/gpt-4o-mini",
}


@dataclass
class UsageCounters:
    """Contadores de uso de um ModelBinding (registro tipado, sem blob JSON)."""
    request_count: int = 0
    token_count: int = 0
    window_start: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    exhausted_at: Optional[datetime] = None


@dataclass
class Credential:
    id: str
    name: str
    api_key: str
    provider: ProviderType
    scope: KeyScope = KeyScope.CENTRAL
    tenant_id: Optional[str] = None
    base_url: Optional[str] = None
    priority: int = 100
    is_active: bool = True

    def __repr__(self) -> str:
        # Nunca expor o segredo em logs/tracebacks
        return (
            f"Credential(id={self.id!r}, name={self.name!r}, provider={self.provider.value}, "
            f"scope={self.scope.value}, priority={self.priority}, active={self.is_active})"
        )


@dataclass
class ModelBinding:
    id: str
    credential_id: str
    model_name: str
    priority: int = 100
    is_enabled: bool = True
    usage: UsageCounters = field(default_factory=UsageCounters)


@dataclass
class GlobalPolicy:
    default_provider: ProviderType = ProviderType.GOOGLE
    enable_failover: bool = True
    version: int = 0


@dataclass
class TenantSettings:
    tenant_id: str
    # None = herdar da política global
    enable_failover: Optional[bool] = None


@dataclass
class Candidate:
    """Uma escolha possível: credencial + o modelo que ela vai servir."""
    credential: Credential
    model_name: str
    binding: Optional[ModelBinding] = None

    @property
    def id(self) -> str:
        return self.credential.id

    @property
    def provider(self) -> ProviderType:
        return self.credential.provider

    @property
    def binding_id(self) -> Optional[str]:
        return self.binding.id if self.binding else None


@dataclass
class SelectionOptions:
    """Opções por chamada de select_and_execute."""
    preferred_provider: Optional[str] = None
    strict_provider: bool = False
    temperature: float = 0.7
    max_output_tokens: int = 2048
    system_prompt: Optional[str] = None
    timeout: Optional[float] = None
    locale: Optional[str] = None


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class ProviderResponse:
    """Contrato normalizado devolvido por todo provider."""
    content: str
    usage: TokenUsage
    model: str
    raw: Any = None


@dataclass
class GenerationResult:
    content: str
    usage: TokenUsage
    model: str
    provider: ProviderType
    credential_id: str
    credential_name: str
    attempts: int = 1
    exhausted: bool = False


@dataclass
class ExhaustedResult:
    """Nenhuma credencial disponível agora. Resultado, não exceção."""
    retry_after_seconds: Optional[int] = None
    message: str = ""
    attempts: int = 0
    tried: List[str] = field(default_factory=list)
    exhausted: bool = True
