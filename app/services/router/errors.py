"""
Taxonomia de erros dos providers.

Cada provider traduz seus próprios erros para uma destas classes.
`retryable` decide se o orquestrador tenta a próxima credencial;
`reason` decide o cooldown aplicado pelo KeyRotator.
"""

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    LEAKED = "LEAKED"
    SERVER_ERROR = "SERVER_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class ProviderError(Exception):
    """Erro genérico de provider."""

    retryable: bool = True
    reason: FailureReason = FailureReason.UNKNOWN

    def __init__(
        self,
        message: str = "",
        http_status: Optional[int] = None,
        provider_code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.provider_code = provider_code
        self.retry_after_ms = retry_after_ms

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(http_status={self.http_status}, "
            f"provider_code={self.provider_code!r}, retryable={self.retryable})"
        )


class RateLimitedError(ProviderError):
    """429 por taxa (RPM/TPM)."""
    reason = FailureReason.RATE_LIMITED


class QuotaExceededError(ProviderError):
    """Cota esgotada (429 RESOURCE_EXHAUSTED / insufficient_quota)."""
    reason = FailureReason.QUOTA_EXCEEDED


class UnauthorizedError(ProviderError):
    """401/403, chave inválida ou reportada como vazada. Nunca retryable."""
    retryable = False
    reason = FailureReason.UNAUTHORIZED

    def __init__(self, message: str = "", leaked: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.leaked = leaked
        if leaked:
            self.reason = FailureReason.LEAKED


class BadRequestError(ProviderError):
    """Requisição malformada. Não é culpa da credencial."""
    retryable = False


class ModelNotFoundError(ProviderError):
    """404 do modelo: desabilita o ModelBinding, sem cooldown na credencial."""
    retryable = False


class ServerError(ProviderError):
    """5xx ou resposta vazia."""
    reason = FailureReason.SERVER_ERROR


class ProviderTimeoutError(ProviderError):
    """Timeout da chamada ao provider."""
    reason = FailureReason.TIMEOUT


class StoreUnavailableError(Exception):
    """Key/value store inacessível. Nunca sai do DistributedStateStore."""
