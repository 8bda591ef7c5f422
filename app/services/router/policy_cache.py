"""
Caches locais de configuração com TTL e invalidação por versão.

A única propagação entre processos é o watermark `config_version` da
política global: cada processo consulta o valor a cada
ROUTER_VERSION_CHECK_INTERVAL_SECONDS e limpa todos os caches locais
quando ele muda.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from app.core.config import settings
from .models import GlobalPolicy, ProviderType, TenantSettings

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """Dicionário com expiração por entrada, protegido por um mutex."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            stored_at, value = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._data[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock(), value)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
            return count

    def __len__(self) -> int:
        return len(self._data)


class PolicyCache:
    """
    Política global, settings por tenant e caches derivados (pool de
    candidatos, modelos ordenados) com TTL curto.

    Args:
        repository: fonte durável (CredentialRepository ou dublê de teste)
        clock: relógio monotônico (injetável nos testes)
    """

    def __init__(self, repository, clock: Callable[[], float] = time.monotonic, metrics=None):
        self._repo = repository
        self._clock = clock
        self._metrics = metrics
        self._policy = TTLCache(settings.ROUTER_POLICY_TTL_SECONDS, clock)
        self._tenant_settings = TTLCache(settings.ROUTER_TENANT_SETTINGS_TTL_SECONDS, clock)
        self._candidate_pools = TTLCache(settings.ROUTER_MODELS_CACHE_TTL_SECONDS, clock)
        self._models_ordered = TTLCache(settings.ROUTER_MODELS_CACHE_TTL_SECONDS, clock)
        self._version: Optional[int] = None
        self._last_version_check: Optional[float] = None

    @property
    def candidate_pools(self) -> TTLCache:
        return self._candidate_pools

    @property
    def models_ordered(self) -> TTLCache:
        return self._models_ordered

    @property
    def version(self) -> Optional[int]:
        return self._version

    def _record(self, hit: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_cache(hit)

    def lookup(self, cache: TTLCache, key: Hashable) -> Any:
        """get() que também contabiliza hit/miss. Devolve None se ausente."""
        value = cache.get(key, _MISSING)
        self._record(value is not _MISSING)
        return None if value is _MISSING else value

    @staticmethod
    def default_policy() -> GlobalPolicy:
        return GlobalPolicy(
            default_provider=ProviderType.parse(settings.ROUTER_DEFAULT_PROVIDER),
            enable_failover=settings.ROUTER_DEFAULT_FAILOVER,
        )

    async def check_version(self, force: bool = False) -> bool:
        """
        Consulta o watermark se o intervalo passou. Retorna True se os
        caches foram limpos por mudança de versão.
        """
        now = self._clock()
        if (
            not force
            and self._last_version_check is not None
            and now - self._last_version_check < settings.ROUTER_VERSION_CHECK_INTERVAL_SECONDS
        ):
            return False
        self._last_version_check = now

        try:
            version = await self._repo.get_config_version()
        except Exception as e:
            logger.warning(f"⚠️ [POLICY] Falha ao consultar config_version: {e}")
            return False

        previous = self._version
        self._version = version
        if previous is not None and version != previous:
            counts = self.clear_all()
            logger.info(f"🔄 [POLICY] config_version {previous} -> {version}, caches limpos: {counts}")
            return True
        return False

    async def get_global_policy(self) -> GlobalPolicy:
        """Política global do cache; em falha do banco, último valor ou defaults."""
        await self.check_version()

        cached = self.lookup(self._policy, "global")
        if cached is not None:
            return cached

        try:
            policy = await self._repo.get_global_policy()
        except Exception as e:
            logger.warning(f"⚠️ [POLICY] Falha ao carregar política global, usando defaults: {e}")
            return self.default_policy()

        if policy is None:
            policy = self.default_policy()
        self._policy.set("global", policy)
        return policy

    async def get_tenant_settings(self, tenant_id: Optional[str]) -> Optional[TenantSettings]:
        if not tenant_id:
            return None
        await self.check_version()

        cached = self.lookup(self._tenant_settings, tenant_id)
        if cached is not None:
            return cached

        try:
            tenant_settings = await self._repo.get_tenant_settings(tenant_id)
        except Exception as e:
            logger.warning(f"⚠️ [POLICY] Falha ao carregar settings do tenant {tenant_id}: {e}")
            return None

        if tenant_settings is None:
            tenant_settings = TenantSettings(tenant_id=tenant_id)
        self._tenant_settings.set(tenant_id, tenant_settings)
        return tenant_settings

    def clear_all(self) -> Dict[str, int]:
        """Limpa todos os caches locais. Retorna entradas removidas por cache."""
        return {
            "policy": self._policy.clear(),
            "tenant_settings": self._tenant_settings.clear(),
            "candidate_pools": self._candidate_pools.clear(),
            "models_ordered": self._models_ordered.clear(),
        }
