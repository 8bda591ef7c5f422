"""
Conexão assíncrona com PostgreSQL via asyncpg.

Uso: SEMPRE usar `async with pool.acquire() as conn:` para operações.
Ao sair do bloco (fim da operação ou exceção), a conexão é devolvida ao pool.
- min_size=0: não mantém conexões ociosas.
- No shutdown do processo, chamar close_pool() para fechar todas as conexões.
"""
import asyncpg
from typing import Optional
import logging
from app.core.config import settings

logger = logging.getLogger(__name__)

# Pool global de conexões
_pool: Optional[asyncpg.Pool] = None

# Schema padrão do banco de dados
DB_SCHEMA = "credential_router"


async def get_pool() -> asyncpg.Pool:
    """
    Retorna pool de conexões (singleton do processo).
    Cria pool na primeira chamada e configura o search_path.

    Raises:
        Exception: Se não conseguir criar o pool
    """
    global _pool
    if _pool is None:
        try:
            async def init_connection(conn):
                try:
                    await conn.execute(f'SET search_path TO {DB_SCHEMA}, public')
                except Exception as e:
                    logger.error(f"❌ Erro crítico ao configurar search_path no init_connection: {e}")
                    raise

            _pool = await asyncpg.create_pool(
                settings.DATABASE_URL,
                min_size=settings.DATABASE_POOL_MIN_SIZE,
                max_size=settings.DATABASE_POOL_MAX_SIZE,
                command_timeout=60,
                init=init_connection,
            )
            logger.info(
                f"✅ Pool asyncpg criado (min={settings.DATABASE_POOL_MIN_SIZE}, "
                f"max={settings.DATABASE_POOL_MAX_SIZE}, schema={DB_SCHEMA})"
            )
        except Exception as e:
            logger.error(f"❌ Erro ao criar pool asyncpg: {e}")
            raise
    return _pool


async def close_pool():
    """
    Fecha o pool de conexões (chamar no shutdown do processo).
    Não levanta exceção.
    """
    global _pool
    if _pool:
        try:
            await _pool.close()
            logger.info("🔌 Pool asyncpg fechado")
        except Exception as e:
            logger.warning("Erro ao fechar pool asyncpg: %s", e)
        finally:
            _pool = None


async def test_connection() -> bool:
    """Testa a conexão com o banco de dados."""
    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except Exception as e:
        logger.error(f"❌ Erro ao testar conexão: {e}")
        return False
