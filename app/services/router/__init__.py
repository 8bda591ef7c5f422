"""
Roteador de credenciais multi-provider.

Escolhe (chave, modelo, provider) para cada requisição de geração,
respeitando cooldowns distribuídos, política de failover e contabilidade
de uso com consistência eventual.
"""

from .errors import (
    BadRequestError,
    FailureReason,
    ModelNotFoundError,
    ProviderError,
    ProviderTimeoutError,
    QuotaExceededError,
    RateLimitedError,
    ServerError,
    StoreUnavailableError,
    UnauthorizedError,
)
from .key_rotator import CooldownConfig, KeyRotator
from .maintenance import MaintenanceSweeper
from .metrics import RouterMetrics
from .models import (
    Candidate,
    Credential,
    ExhaustedResult,
    GenerationResult,
    KeyScope,
    ModelBinding,
    ProviderType,
    SelectionOptions,
)
from .orchestrator import SelectionOrchestrator
from .policy_cache import PolicyCache
from .providers import ProviderFactory
from .repository import CredentialRepository
from .state_store import DistributedStateStore
from .usage_buffer import UsageBuffer

__all__ = [
    "BadRequestError",
    "Candidate",
    "CooldownConfig",
    "Credential",
    "CredentialRepository",
    "DistributedStateStore",
    "ExhaustedResult",
    "FailureReason",
    "GenerationResult",
    "KeyRotator",
    "KeyScope",
    "MaintenanceSweeper",
    "ModelBinding",
    "ModelNotFoundError",
    "PolicyCache",
    "ProviderError",
    "ProviderFactory",
    "ProviderTimeoutError",
    "ProviderType",
    "QuotaExceededError",
    "RateLimitedError",
    "RouterMetrics",
    "SelectionOptions",
    "SelectionOrchestrator",
    "ServerError",
    "StoreUnavailableError",
    "UnauthorizedError",
    "UsageBuffer",
]
