"""
Worker de manutenção do roteador (processo separado).
Remove exclusões vencidas e marcadores de esgotamento antigos.
Execute com: python -m app.workers.maintenance_worker
"""
import asyncio
import logging
import os
import signal
import socket

from dotenv import load_dotenv

load_dotenv()

from app.core.database import get_pool, close_pool
from app.core.logging_utils import setup_logging
from app.services.router import CredentialRepository, MaintenanceSweeper

setup_logging()
logger = logging.getLogger(__name__)

WORKER_ID = os.environ.get("WORKER_ID", f"{socket.gethostname()}-{os.getpid()}")


def main():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    sweeper = None

    def shutdown():
        if sweeper is not None:
            logger.info("Shutting down maintenance worker...")
            loop.create_task(sweeper.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass

    async def run():
        nonlocal sweeper
        logger.info("Maintenance worker connecting to database, worker_id=%s", WORKER_ID)
        pool = await get_pool()
        sweeper = MaintenanceSweeper(CredentialRepository(pool))
        sweeper.start()
        await sweeper.wait()

    try:
        loop.run_until_complete(run())
    except asyncio.CancelledError:
        logger.info("Maintenance worker cancelled")
    except Exception as e:
        logger.exception("Maintenance worker crashed: %s", e)
        raise
    finally:
        try:
            loop.run_until_complete(close_pool())
        except Exception as e:
            logger.warning("Erro ao fechar pool no shutdown: %s", e)
        loop.close()
        logger.info("Maintenance worker stopped.")


if __name__ == "__main__":
    main()
