"""
Estado distribuído do roteador sobre Redis (redis.asyncio).

Flags com TTL (circuit breakers), contadores atômicos de round-robin e
locks com lease. Todo processo que seleciona credenciais do mesmo pool
compartilha estas chaves; nenhum contador é local ao processo.

Política quando o Redis está inacessível (uma por operação):

    is_flagged               -> False   (fail-open: disponibilidade primeiro)
    set_flag_with_ttl        -> no-op, log de warning
    delete_flag              -> no-op, log de warning
    remaining_ttl_ms         -> None
    next_round_robin_index   -> índice pseudo-aleatório no intervalo
    acquire_lock             -> True    (fail-open: sem deadlock)
    release_lock             -> no-op, log de warning

StoreUnavailableError nunca sai desta classe.
"""

import logging
import random
import uuid
from typing import Dict, Optional

from redis.exceptions import RedisError

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Erros de infraestrutura tratados como "store fora do ar"
_STORE_ERRORS = (RedisError, OSError, StoreUnavailableError)


class DistributedStateStore:
    """
    Wrapper fino sobre o key/value compartilhado.

    Args:
        client: cliente redis.asyncio (decode_responses=True)
        prefix: namespace de todas as chaves
    """

    def __init__(self, client, prefix: str = "credrouter"):
        self._client = client
        self._prefix = prefix
        # resource_id -> token da lease adquirida por este processo
        self._lock_tokens: Dict[str, Optional[str]] = {}
        self._last_store_error: Optional[str] = None

    def _flag_key(self, key: str) -> str:
        return f"{self._prefix}:flag:{key}"

    def _rr_key(self, scope_id: str) -> str:
        return f"{self._prefix}:rr:{scope_id}"

    def _lock_key(self, resource_id: str) -> str:
        return f"{self._prefix}:lock:{resource_id}"

    def _on_store_error(self, operation: str, error: Exception) -> None:
        message = f"{type(error).__name__}: {error}"
        # Evita inundar o log com a mesma falha a cada requisição
        if message != self._last_store_error:
            logger.warning(f"⚠️ [STATE] Redis indisponível em {operation}: {message}")
            self._last_store_error = message

    def _on_store_ok(self) -> None:
        if self._last_store_error is not None:
            logger.info("✅ [STATE] Redis acessível novamente")
            self._last_store_error = None

    # ========== FLAGS (circuit breakers) ==========

    async def is_flagged(self, key: str) -> bool:
        """Existência da flag, sem efeito colateral. Fail-open (False)."""
        try:
            exists = await self._client.exists(self._flag_key(key))
        except _STORE_ERRORS as e:
            self._on_store_error("is_flagged", e)
            return False
        self._on_store_ok()
        return bool(exists)

    async def set_flag_with_ttl(self, key: str, ttl_ms: int) -> None:
        """
        Cria ou re-cria a flag com o TTL informado.
        Re-flag substitui o TTL anterior (não acumula).
        """
        ttl_ms = max(1, int(ttl_ms))
        try:
            await self._client.set(self._flag_key(key), "1", px=ttl_ms)
        except _STORE_ERRORS as e:
            self._on_store_error("set_flag_with_ttl", e)
            return
        self._on_store_ok()

    async def delete_flag(self, key: str) -> None:
        try:
            await self._client.delete(self._flag_key(key))
        except _STORE_ERRORS as e:
            self._on_store_error("delete_flag", e)
            return
        self._on_store_ok()

    async def remaining_ttl_ms(self, key: str) -> Optional[int]:
        """TTL restante da flag em ms, ou None se não existe / store fora."""
        try:
            ttl = await self._client.pttl(self._flag_key(key))
        except _STORE_ERRORS as e:
            self._on_store_error("remaining_ttl_ms", e)
            return None
        self._on_store_ok()
        if ttl is None or ttl < 0:
            return None
        return int(ttl)

    # ========== ROUND-ROBIN ==========

    async def next_round_robin_index(self, scope_id: str, modulus: int) -> int:
        """
        Incremento atômico do contador do escopo, resultado mod `modulus`.

        O primeiro incremento devolve 0, o segundo 1, e assim por diante.
        modulus <= 1 devolve 0 sem ir ao Redis.
        """
        if modulus <= 1:
            return 0
        try:
            value = await self._client.incr(self._rr_key(scope_id))
        except _STORE_ERRORS as e:
            self._on_store_error("next_round_robin_index", e)
            return random.randrange(modulus)
        self._on_store_ok()
        return (int(value) - 1) % modulus

    # ========== LOCKS ==========

    async def acquire_lock(self, resource_id: str, lease_ms: int) -> bool:
        """
        Tenta adquirir a lease (SET NX PX). Não bloqueia.
        Fail-open: com o Redis fora do ar devolve True.
        """
        token = uuid.uuid4().hex
        try:
            acquired = await self._client.set(
                self._lock_key(resource_id), token, nx=True, px=max(1, int(lease_ms))
            )
        except _STORE_ERRORS as e:
            self._on_store_error("acquire_lock", e)
            self._lock_tokens[resource_id] = None
            return True
        self._on_store_ok()
        if acquired:
            self._lock_tokens[resource_id] = token
            return True
        return False

    async def release_lock(self, resource_id: str) -> None:
        """
        Libera a lease se ela ainda pertence a este processo.
        Uma lease expirada e re-adquirida por outro processo não é apagada.
        """
        token = self._lock_tokens.pop(resource_id, None)
        if token is None:
            return
        key = self._lock_key(resource_id)
        try:
            current = await self._client.get(key)
            if current == token:
                await self._client.delete(key)
        except _STORE_ERRORS as e:
            self._on_store_error("release_lock", e)
            return
        self._on_store_ok()

    async def ping(self) -> bool:
        """True se o Redis responde."""
        try:
            return bool(await self._client.ping())
        except _STORE_ERRORS as e:
            self._on_store_error("ping", e)
            return False
