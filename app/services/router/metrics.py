"""
Métricas de performance do roteador (locais ao processo).
"""

import logging
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict

logger = logging.getLogger(__name__)


@dataclass
class _Totals:
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0
    requests_exhausted: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_latency_ms: float = 0.0
    recent_latencies: deque = field(default_factory=lambda: deque(maxlen=200))
    models: Counter = field(default_factory=Counter)
    credentials: Counter = field(default_factory=Counter)
    errors: Counter = field(default_factory=Counter)
    started_at: float = field(default_factory=time.time)


class RouterMetrics:
    """
    Contadores de requisições, cache e latência.

    Não há estado compartilhado entre processos: cada processo reporta
    apenas o próprio tráfego.
    """

    TOP_N = 5

    def __init__(self):
        self._totals = _Totals()

    def record_success(self, model: str, credential_name: str, latency_ms: float):
        t = self._totals
        t.requests_total += 1
        t.requests_success += 1
        t.total_latency_ms += latency_ms
        t.recent_latencies.append(latency_ms)
        t.models[model] += 1
        t.credentials[credential_name] += 1

    def record_failure(self, error_type: str):
        """Uma tentativa falha (uma requisição pode gerar várias)."""
        t = self._totals
        t.requests_total += 1
        t.requests_failed += 1
        t.errors[error_type] += 1

    def record_exhausted(self):
        self._totals.requests_exhausted += 1

    def record_cache(self, hit: bool):
        if hit:
            self._totals.cache_hits += 1
        else:
            self._totals.cache_misses += 1

    @property
    def avg_latency_ms(self) -> float:
        latencies = self._totals.recent_latencies
        if not latencies:
            return 0.0
        return sum(latencies) / len(latencies)

    def get_performance_metrics(self) -> Dict:
        t = self._totals
        cache_total = t.cache_hits + t.cache_misses
        success_rate = t.requests_success / t.requests_total if t.requests_total else 1.0
        return {
            "requests_total": t.requests_total,
            "requests_success": t.requests_success,
            "requests_failed": t.requests_failed,
            "requests_exhausted": t.requests_exhausted,
            "success_rate": round(success_rate, 4),
            "cache_hits": t.cache_hits,
            "cache_misses": t.cache_misses,
            "cache_hit_rate": round(t.cache_hits / cache_total, 4) if cache_total else 0.0,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "top_models": dict(t.models.most_common(self.TOP_N)),
            "top_credentials": dict(t.credentials.most_common(self.TOP_N)),
            "top_errors": dict(t.errors.most_common(self.TOP_N)),
            "uptime_seconds": round(time.time() - t.started_at, 1),
        }

    def reset(self):
        self._totals = _Totals()
        logger.info("📊 [METRICS] Métricas de performance zeradas")
