import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.api.v2.router import router as v2_router
from app.core.config import settings
from app.core.database import close_pool, get_pool
from app.core.logging_utils import setup_logging
from app.core.redis_client import close_redis, get_redis
from app.services.router import (
    BadRequestError,
    CredentialRepository,
    DistributedStateStore,
    MaintenanceSweeper,
    ProviderFactory,
    SelectionOrchestrator,
)

# Configurar Logging
setup_logging()
logger = logging.getLogger(__name__)


def build_orchestrator(pool, redis_client) -> SelectionOrchestrator:
    """Monta o orquestrador do processo com suas dependências explícitas."""
    repository = CredentialRepository(pool)
    state_store = DistributedStateStore(redis_client, prefix=settings.REDIS_KEY_PREFIX)
    provider_factory = ProviderFactory(timeout=settings.ROUTER_PROVIDER_TIMEOUT_SECONDS)
    return SelectionOrchestrator(repository, state_store, provider_factory)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await get_pool()
    redis_client = get_redis()
    orchestrator = build_orchestrator(pool, redis_client)
    sweeper = MaintenanceSweeper(orchestrator.repository)

    if not await orchestrator.state_store.ping():
        logger.warning("⚠️ Redis inacessível no startup - seguindo em modo degradado")

    orchestrator.usage_buffer.start()
    sweeper.start()
    app.state.orchestrator = orchestrator
    logger.info("🚀 Credential Router pronto")
    try:
        yield
    finally:
        app.state.orchestrator = None
        await sweeper.stop()
        await orchestrator.usage_buffer.stop()
        await orchestrator.provider_factory.close()
        await close_redis()
        await close_pool()
        logger.info("👋 Credential Router encerrado")


app = FastAPI(title="Credential Router", lifespan=lifespan)

# --- Global Exception Handlers ---

@app.exception_handler(BadRequestError)
async def bad_request_handler(request: Request, exc: BadRequestError):
    return JSONResponse(
        status_code=400,
        content={"detail": exc.message or "Requisição rejeitada pelo provider"}
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global Error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"}
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


app.include_router(v2_router, prefix="/api/v2")


@app.get("/")
async def root():
    return {"status": "ok", "service": "Credential Router"}
