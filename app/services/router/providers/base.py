"""
Contrato comum dos providers de IA.

generate_response devolve ProviderResponse ou levanta uma subclasse de
ProviderError já classificada (retryable ou não). Cada provider traduz
o próprio formato de requisição/resposta e os próprios erros.
"""

import logging
import re
import time
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from typing import List, Mapping, Optional

from app.core.logging_utils import redact_secrets
from ..errors import (
    BadRequestError,
    ModelNotFoundError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitedError,
    ServerError,
    UnauthorizedError,
)
from ..models import Credential, ProviderResponse, SelectionOptions

logger = logging.getLogger(__name__)

_RETRY_IN_RE = re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")

_LEAKED_MARKERS = ("leaked", "reported as leaked")
_INVALID_KEY_MARKERS = (
    "api key not valid",
    "invalid api key",
    "incorrect api key",
    "api_key_invalid",
    "permission denied",
)
_QUOTA_MARKERS = ("quota", "resource_exhausted", "insufficient_quota", "billing")

MAX_ERROR_MESSAGE_CHARS = 500


def sanitize_message(message: Optional[str]) -> str:
    """Mensagem segura para devolver ao chamador (sem chaves, tamanho limitado)."""
    if not message:
        return ""
    return redact_secrets(str(message)).strip()[:MAX_ERROR_MESSAGE_CHARS]


def parse_retry_after(headers: Optional[Mapping[str, str]] = None, message: str = "") -> Optional[int]:
    """
    Extrai o tempo de espera sugerido pelo servidor, em ms.

    Ordem: header Retry-After (segundos ou HTTP-date), depois o texto
    "retry in 12.5s" que alguns providers colocam na mensagem.
    """
    if headers:
        value = headers.get("retry-after") or headers.get("Retry-After")
        if value:
            value = value.strip()
            try:
                return max(0, int(float(value) * 1000))
            except ValueError:
                try:
                    when = parsedate_to_datetime(value)
                    delta = when.timestamp() - time.time()
                    return max(0, int(delta * 1000))
                except (TypeError, ValueError):
                    pass
    if message:
        match = _RETRY_IN_RE.search(message)
        if match:
            return int(float(match.group(1)) * 1000)
    return None


def parse_duration_ms(value: Optional[str]) -> Optional[int]:
    """Converte durações do tipo '30s' / '1.5s' (google.rpc.RetryInfo) em ms."""
    if not value:
        return None
    match = _RETRY_DELAY_RE.match(value.strip())
    if not match:
        return None
    return int(float(match.group(1)) * 1000)


def classify_http_error(
    status: Optional[int],
    message: str = "",
    provider_code: Optional[str] = None,
    retry_after_ms: Optional[int] = None,
) -> ProviderError:
    """
    Mapeia status HTTP + mensagem para a taxonomia de erros.

    Autenticação é checada antes do status porque alguns providers
    devolvem 400 para chave inválida.
    """
    text = f"{message or ''} {provider_code or ''}".lower()
    clean = sanitize_message(message)
    kwargs = dict(http_status=status, provider_code=provider_code, retry_after_ms=retry_after_ms)

    leaked = any(marker in text for marker in _LEAKED_MARKERS)
    invalid_key = any(marker in text for marker in _INVALID_KEY_MARKERS)
    if status in (401, 403) or leaked or invalid_key:
        return UnauthorizedError(clean, leaked=leaked, **kwargs)

    if status == 429:
        if any(marker in text for marker in _QUOTA_MARKERS):
            return QuotaExceededError(clean, **kwargs)
        return RateLimitedError(clean, **kwargs)

    if status == 404:
        return ModelNotFoundError(clean, **kwargs)

    if status == 408:
        return ProviderTimeoutError(clean, **kwargs)

    if status is not None and status >= 500:
        return ServerError(clean, **kwargs)

    if status is not None and 400 <= status < 500:
        return BadRequestError(clean, **kwargs)

    return ServerError(clean, **kwargs)


class BaseProvider(ABC):
    """
    Provider de IA ligado a uma credencial.

    Args:
        credential: credencial usada em todas as chamadas
        timeout: timeout por chamada (segundos)
    """

    name: str = "base"
    default_base_url: str = ""

    def __init__(self, credential: Credential, timeout: float = 60.0):
        self.credential = credential
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return (self.credential.base_url or self.default_base_url).rstrip("/")

    @abstractmethod
    async def generate_response(
        self,
        prompt: str,
        model: str,
        options: Optional[SelectionOptions] = None,
    ) -> ProviderResponse:
        """Gera resposta ou levanta ProviderError classificado."""

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Modelos visíveis para a credencial."""

    async def test_connection(self, model: Optional[str] = None) -> bool:
        """
        Chamada mínima para validar a credencial. Só para ferramentas
        auxiliares, nunca no caminho da requisição.
        """
        from ..models import DEFAULT_MODEL_BY_PROVIDER

        target_model = model or DEFAULT_MODEL_BY_PROVIDER[self.credential.provider]
        try:
            await self.generate_response(
                'Say "OK" if you are working.',
                target_model,
                SelectionOptions(max_output_tokens=8, temperature=0.0),
            )
            return True
        except ProviderError as e:
            logger.warning(
                f"❌ [PROVIDER] test_connection falhou para {self.credential.name}: {e!r}"
            )
            return False

    async def close(self) -> None:
        """Libera clientes HTTP, se houver."""
