"""
Buffer de contadores de uso por ModelBinding.

record_usage só mexe no dicionário em memória (nunca no banco). flush()
troca o dicionário por um vazio sob mutex e grava cada entrada no banco
segurando a lease distribuída "usage:{binding_id}". Lease ocupada por
outro processo: a entrada é descartada com warning (perda limitada e
aceita em troca de disponibilidade).
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import asyncpg
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings
from .state_store import DistributedStateStore

logger = logging.getLogger(__name__)

# Erros de conexão que justificam nova tentativa enquanto a lease está ativa
_TRANSIENT_DB_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
)


@dataclass
class UsageDelta:
    requests: int = 0
    tokens: int = 0


class UsageBuffer:
    """
    Acumulador de uso com flush periódico.

    Args:
        repository: precisa de apply_usage_delta(binding_id, requests, tokens)
        state_store: locks distribuídos
        flush_interval: segundos entre flushes
        lease_ms: duração da lease por binding
    """

    def __init__(
        self,
        repository,
        state_store: DistributedStateStore,
        flush_interval: float = None,
        lease_ms: int = None,
    ):
        self._repo = repository
        self._store = state_store
        self.flush_interval = flush_interval if flush_interval is not None else settings.USAGE_FLUSH_INTERVAL_SECONDS
        self.lease_ms = lease_ms if lease_ms is not None else settings.USAGE_LOCK_LEASE_MS
        self._pending: Dict[str, UsageDelta] = {}
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def record_usage(self, binding_id: Optional[str], token_delta: int, request_delta: int = 1) -> None:
        """Soma ao acumulador em memória. Não bloqueia e não acessa o banco."""
        if not binding_id:
            return
        with self._lock:
            delta = self._pending.get(binding_id)
            if delta is None:
                delta = self._pending[binding_id] = UsageDelta()
            delta.requests += request_delta
            delta.tokens += max(0, int(token_delta or 0))

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def snapshot(self) -> Dict[str, UsageDelta]:
        """Troca atômica: devolve o mapa atual e deixa um vazio no lugar."""
        with self._lock:
            pending, self._pending = self._pending, {}
        return pending

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_DB_ERRORS),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        stop=stop_after_attempt(3),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _write(self, binding_id: str, delta: UsageDelta) -> None:
        await self._repo.apply_usage_delta(binding_id, delta.requests, delta.tokens)

    async def flush(self) -> Dict[str, int]:
        """
        Grava o snapshot atual.

        Returns:
            {"flushed", "dropped", "failed"}
        """
        async with self._flush_lock:
            pending = self.snapshot()
            result = {"flushed": 0, "dropped": 0, "failed": 0}
            if not pending:
                return result

            for binding_id, delta in pending.items():
                resource_id = f"usage:{binding_id}"
                if not await self._store.acquire_lock(resource_id, self.lease_ms):
                    result["dropped"] += 1
                    logger.warning(
                        f"⚠️ [USAGE-FLUSH] Lease ocupada para binding={binding_id}, "
                        f"descartando +{delta.requests} req / +{delta.tokens} tokens"
                    )
                    continue
                try:
                    await self._write(binding_id, delta)
                    result["flushed"] += 1
                except Exception as e:
                    result["failed"] += 1
                    logger.error(
                        f"❌ [USAGE-FLUSH] Erro ao gravar uso de binding={binding_id} "
                        f"(+{delta.requests} req perdidas): {e}"
                    )
                finally:
                    await self._store.release_lock(resource_id)

            logger.debug(f"[USAGE-FLUSH] {result}")
            return result

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop_event.is_set():
                break
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"❌ [USAGE-FLUSH] Erro no loop de flush: {e}", exc_info=True)

    def start(self) -> None:
        """Inicia o flush periódico (chamar no startup)."""
        if self._task is not None:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"📦 [USAGE-FLUSH] Iniciado (intervalo={self.flush_interval}s, lease={self.lease_ms}ms)")

    async def stop(self) -> None:
        """Para o loop e grava o que restou no buffer."""
        if self._task is not None:
            self._stop_event.set()
            try:
                await asyncio.wait_for(self._task, timeout=30.0)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None
        result = await self.flush()
        logger.info(f"📦 [USAGE-FLUSH] Encerrado, flush final: {result}")
