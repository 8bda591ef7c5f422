"""
Limpeza periódica: exclusões vencidas e marcadores de esgotamento antigos.

Garante que um processo que caiu ou reiniciou não deixe modelos banidos
para sempre.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


class MaintenanceSweeper:
    """
    Dois jobs independentes:
      - exclusion_records com retry_at no passado (a cada 5 min por padrão)
      - exhausted_at mais antigo que EXHAUSTED_MARKER_MAX_AGE_SECONDS (a cada 1 min)

    Cada execução que altera linhas incrementa o config_version.
    """

    def __init__(
        self,
        repository,
        exclusions_interval: float = None,
        exhausted_interval: float = None,
        exhausted_max_age: float = None,
    ):
        self._repo = repository
        self.exclusions_interval = exclusions_interval or settings.SWEEP_EXCLUSIONS_INTERVAL_SECONDS
        self.exhausted_interval = exhausted_interval or settings.SWEEP_EXHAUSTED_INTERVAL_SECONDS
        self.exhausted_max_age = exhausted_max_age or settings.EXHAUSTED_MARKER_MAX_AGE_SECONDS
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    async def _bump_if_changed(self, changed: int) -> None:
        if changed > 0:
            await self._repo.bump_config_version()

    async def sweep_exclusions(self) -> int:
        removed = await self._repo.clear_expired_exclusions()
        if removed:
            logger.info(f"🧹 [SWEEP] {removed} exclusões vencidas removidas")
        await self._bump_if_changed(removed)
        return removed

    async def sweep_exhausted(self) -> int:
        cleared = await self._repo.clear_stale_exhausted_markers(self.exhausted_max_age)
        if cleared:
            logger.info(f"🧹 [SWEEP] {cleared} marcadores de esgotamento limpos")
        await self._bump_if_changed(cleared)
        return cleared

    async def run_once(self) -> Dict[str, int]:
        return {
            "exclusions": await self.sweep_exclusions(),
            "exhausted": await self.sweep_exhausted(),
        }

    async def _periodic(self, name: str, job, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                await job()
            except Exception as e:
                logger.error(f"❌ [SWEEP] Erro em {name}: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._periodic("exclusions", self.sweep_exclusions, self.exclusions_interval)),
            asyncio.create_task(self._periodic("exhausted", self.sweep_exhausted, self.exhausted_interval)),
        ]
        logger.info(
            f"🧹 [SWEEP] Iniciado (exclusões a cada {self.exclusions_interval}s, "
            f"esgotamento a cada {self.exhausted_interval}s)"
        )

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("🧹 [SWEEP] Encerrado")

    async def wait(self) -> None:
        """Bloqueia até stop() (uso no worker standalone)."""
        if self._tasks:
            await asyncio.gather(*self._tasks)
