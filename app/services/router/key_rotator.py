"""
Rotação de credenciais com circuit breaker distribuído.

select_next filtra os candidatos com flag ativa no Redis e escolhe o
próximo pelo contador round-robin do escopo. mark_failed cria a flag com
o cooldown do motivo da falha. Todo caminho de seleção do orquestrador
passa por aqui.

Rate limit e cota valem para o par (credencial, modelo): a mesma chave
continua servindo os outros modelos. Nos demais motivos a credencial
inteira fica em cooldown.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from app.core.config import settings
from .errors import FailureReason
from .models import Candidate
from .state_store import DistributedStateStore

logger = logging.getLogger(__name__)


@dataclass
class CooldownConfig:
    """Durações de cooldown em ms."""
    rate_limit_ms: int = 30_000
    server_error_ms: int = 15_000
    timeout_ms: int = 10_000
    auth_ms: int = 24 * 60 * 60 * 1000
    max_ms: int = 60 * 60 * 1000

    @classmethod
    def from_settings(cls) -> "CooldownConfig":
        return cls(
            rate_limit_ms=settings.ROUTER_RATE_LIMIT_COOLDOWN_MS,
            server_error_ms=settings.ROUTER_SERVER_ERROR_COOLDOWN_MS,
            timeout_ms=settings.ROUTER_TIMEOUT_COOLDOWN_MS,
            auth_ms=settings.ROUTER_AUTH_COOLDOWN_MS,
            max_ms=settings.ROUTER_MAX_COOLDOWN_MS,
        )


MODEL_SCOPED_REASONS = frozenset({FailureReason.RATE_LIMITED, FailureReason.QUOTA_EXCEEDED})


def circuit_breaker_key(candidate: Candidate) -> str:
    """Flag por credencial: uma chave em cooldown não serve nenhum modelo."""
    return f"cb:{candidate.credential.id}"


def model_breaker_key(candidate: Candidate) -> str:
    """Flag por (credencial, modelo)."""
    return f"cb:{candidate.credential.id}:{candidate.model_name}"


def breaker_key_for(candidate: Candidate, reason: FailureReason) -> str:
    if reason in MODEL_SCOPED_REASONS:
        return model_breaker_key(candidate)
    return circuit_breaker_key(candidate)


class KeyRotator:
    """
    Seleção justa entre credenciais elegíveis.

    A ordem dos candidatos é responsabilidade de quem chama; o rotator só
    remove os que estão em cooldown e aplica `contador mod tamanho`.
    """

    def __init__(self, state_store: DistributedStateStore, cooldowns: CooldownConfig = None):
        self._store = state_store
        self._cooldowns = cooldowns or CooldownConfig.from_settings()

    @property
    def cooldowns(self) -> CooldownConfig:
        return self._cooldowns

    async def is_model_cooling(self, candidate: Candidate) -> bool:
        return await self._store.is_flagged(model_breaker_key(candidate))

    async def is_available(self, candidate: Candidate) -> bool:
        if await self._store.is_flagged(circuit_breaker_key(candidate)):
            return False
        return not await self.is_model_cooling(candidate)

    async def remaining_cooldown_ms(self, candidate: Candidate) -> Optional[int]:
        """Maior TTL entre a flag da credencial e a do modelo; None sem cooldown."""
        remaining = [
            ttl for ttl in (
                await self._store.remaining_ttl_ms(circuit_breaker_key(candidate)),
                await self._store.remaining_ttl_ms(model_breaker_key(candidate)),
            )
            if ttl is not None
        ]
        return max(remaining) if remaining else None

    async def filter_available(self, candidates: Sequence[Candidate]) -> List[Candidate]:
        """Candidatos sem circuit breaker ativo (revalidado a cada chamada)."""
        available = []
        for candidate in candidates:
            if await self.is_available(candidate):
                available.append(candidate)
        return available

    async def select_next(self, candidates: Sequence[Candidate], scope_id: str) -> Optional[Candidate]:
        """
        Próxima credencial do escopo, ou None se todas estão em cooldown.

        Args:
            candidates: candidatos já ordenados
            scope_id: escopo do contador round-robin compartilhado
        """
        available = await self.filter_available(candidates)
        if not available:
            logger.warning(
                f"⚠️ [ROTATOR] Todas as {len(candidates)} credenciais em cooldown (scope={scope_id})"
            )
            return None

        index = await self._store.next_round_robin_index(scope_id, len(available))
        selected = available[index]
        logger.debug(
            f"[ROTATOR] scope={scope_id} index={index}/{len(available)} -> "
            f"{selected.credential.name} ({selected.provider.value}/{selected.model_name})"
        )
        return selected

    def cooldown_for(self, reason: FailureReason, explicit_cooldown_ms: Optional[int] = None) -> int:
        """Duração do cooldown (ms) para o motivo informado."""
        cfg = self._cooldowns
        if explicit_cooldown_ms is not None and explicit_cooldown_ms > 0:
            return min(int(explicit_cooldown_ms), cfg.max_ms)

        if reason in (FailureReason.UNAUTHORIZED, FailureReason.LEAKED):
            return cfg.auth_ms
        if reason == FailureReason.SERVER_ERROR:
            return cfg.server_error_ms
        if reason == FailureReason.TIMEOUT:
            return cfg.timeout_ms
        # RATE_LIMITED, QUOTA_EXCEEDED, UNKNOWN
        return cfg.rate_limit_ms

    async def mark_failed(
        self,
        candidate: Candidate,
        reason: FailureReason,
        explicit_cooldown_ms: Optional[int] = None,
    ) -> int:
        """
        Coloca a credencial (ou só o modelo, em rate limit e cota) em cooldown.

        Returns:
            Cooldown aplicado em ms
        """
        cooldown_ms = self.cooldown_for(reason, explicit_cooldown_ms)
        await self._store.set_flag_with_ttl(breaker_key_for(candidate, reason), cooldown_ms)
        target = candidate.credential.name
        if reason in MODEL_SCOPED_REASONS:
            target = f"{candidate.model_name}@{target}"
        logger.warning(
            f"🔌 [ROTATOR] {target} ({candidate.provider.value}) em cooldown "
            f"por {cooldown_ms / 1000:.0f}s - motivo={reason.value}"
        )
        return cooldown_ms

    async def get_status(self, candidates: Sequence[Candidate]) -> List[Dict]:
        """Estado de cooldown por credencial, menor tempo restante primeiro."""
        status = []
        seen = set()
        for candidate in candidates:
            if candidate.credential.id in seen:
                continue
            seen.add(candidate.credential.id)
            remaining = await self.remaining_cooldown_ms(candidate)
            status.append({
                "id": candidate.credential.id,
                "name": candidate.credential.name,
                "provider": candidate.provider.value,
                "model": candidate.model_name,
                "cooling_down": remaining is not None,
                "remaining_seconds": round(remaining / 1000, 1) if remaining is not None else 0,
            })
        status.sort(key=lambda s: (not s["cooling_down"], s["remaining_seconds"]))
        return status

    async def shortest_cooldown_seconds(self, candidates: Sequence[Candidate]) -> Optional[int]:
        """Menor cooldown restante entre os candidatos (segundos, arredondado p/ cima)."""
        shortest = None
        for candidate in candidates:
            remaining = await self.remaining_cooldown_ms(candidate)
            if remaining is None:
                continue
            if shortest is None or remaining < shortest:
                shortest = remaining
        if shortest is None:
            return None
        return max(1, -(-shortest // 1000))
