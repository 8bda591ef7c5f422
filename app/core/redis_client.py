"""
Cliente Redis assíncrono compartilhado (redis.asyncio).

Mesmo ciclo de vida do pool asyncpg: criado sob demanda, fechado no
shutdown com close_redis(). Timeouts de socket curtos para que uma queda
do Redis vire erro rápido (tratado pelo DistributedStateStore) em vez de
travar a requisição.
"""
import logging
from typing import Optional

from redis.asyncio import Redis

from app.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[Redis] = None


def get_redis() -> Redis:
    """Retorna o cliente Redis do processo (criado na primeira chamada)."""
    global _client
    if _client is None:
        _client = Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
        )
        logger.info(f"✅ Cliente Redis criado ({settings.REDIS_URL.split('@')[-1]})")
    return _client


async def close_redis() -> None:
    """Fecha o cliente Redis; não levanta exceção."""
    global _client
    if _client is not None:
        try:
            await _client.aclose()
            logger.info("🔌 Cliente Redis fechado")
        except Exception as e:
            logger.warning("Erro ao fechar cliente Redis: %s", e)
        finally:
            _client = None
