"""
Orquestrador de seleção: ponto de entrada por requisição.

RESOLVE_POLICY -> FETCH_CANDIDATES -> SELECT -> EXECUTE -> SUCCESS | RETRY | EXHAUSTED

Cada credencial entra com uma cadeia de bindings ordenada por prioridade e
disputa com o primeiro modelo fora de cooldown. Cada tentativa remove o
candidato; rate limit, cota ou 404 no modelo colocam no lugar o próximo
binding da mesma credencial. O loop termina em no máximo len(bindings)
iterações. Esgotamento é um resultado (ExhaustedResult), não uma exceção.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from app.core.config import settings
from .errors import (
    BadRequestError,
    FailureReason,
    ModelNotFoundError,
    ProviderError,
    QuotaExceededError,
    RateLimitedError,
    UnauthorizedError,
)
from .key_rotator import KeyRotator
from .messages import DEFAULT_RETRY_AFTER_SECONDS, exhausted_message
from .metrics import RouterMetrics
from .models import (
    DEFAULT_MODEL_BY_PROVIDER,
    Candidate,
    Credential,
    ExhaustedResult,
    GenerationResult,
    ModelBinding,
    ProviderType,
    SelectionOptions,
)
from .policy_cache import PolicyCache
from .providers.factory import ProviderFactory
from .state_store import DistributedStateStore
from .usage_buffer import UsageBuffer

logger = logging.getLogger(__name__)

# Modelos descontinuados pelos providers (as linhas continuam no banco)
BUILTIN_DISABLED_MODELS: FrozenSet[str] = frozenset({
    "gemini-2.0-flash-exp",
    "gemini-1.0-pro",
    "gemini-pro",
    "gemini-flash",
    "gemini-1.0-pro-001",
    "gemini-1.0-pro-latest",
    "gemini-1.0-pro-vision-latest",
    "gemini-pro-vision",
    "gemini-2.5-flash-live",
    "gemini-2.0-flash-live",
    "gemini-2.5-flash-native-audio-dialog",
    "gemini-2.5-flash-tts",
    "gemma-3-27b",
    "gemma-3-12b",
    "gemma-3-4b",
    "gemma-3-2b",
    "gemma-3-1b",
    "gemma-2-27b-it",
    "gemma-2-9b-it",
})

PREFERRED_PROVIDER_SCORE = 0
OTHER_PROVIDER_SCORE = 1000

CredentialPool = List[Tuple[Credential, List[ModelBinding]]]


class SelectionOrchestrator:
    """
    Um por processo. Recebe todas as dependências no construtor e é
    entregue aos handlers por injeção (app.state), sem singleton de módulo.
    """

    def __init__(
        self,
        repository,
        state_store: DistributedStateStore,
        provider_factory: ProviderFactory,
        rotator: KeyRotator = None,
        usage_buffer: UsageBuffer = None,
        policy_cache: PolicyCache = None,
        metrics: RouterMetrics = None,
        disabled_models: Iterable[str] = None,
    ):
        self.repository = repository
        self.state_store = state_store
        self.provider_factory = provider_factory
        self.metrics = metrics or RouterMetrics()
        self.rotator = rotator or KeyRotator(state_store)
        self.usage_buffer = usage_buffer or UsageBuffer(repository, state_store)
        self.policy_cache = policy_cache or PolicyCache(repository, metrics=self.metrics)
        extra = settings.ROUTER_DISABLED_MODELS if disabled_models is None else disabled_models
        self.disabled_models: FrozenSet[str] = BUILTIN_DISABLED_MODELS | frozenset(extra)

    # ========== RESOLVE_POLICY ==========

    async def resolve_policy(
        self, tenant_id: Optional[str], options: SelectionOptions
    ) -> Tuple[ProviderType, bool]:
        """
        Provider preferido e se failover entre providers é permitido.

        Precedência do failover: strict_provider da chamada, depois o
        override do tenant, depois a política global.
        """
        policy = await self.policy_cache.get_global_policy()
        preferred = ProviderType.parse(options.preferred_provider, policy.default_provider)

        if options.strict_provider:
            return preferred, False

        tenant_settings = await self.policy_cache.get_tenant_settings(tenant_id)
        if tenant_settings is not None and tenant_settings.enable_failover is not None:
            return preferred, tenant_settings.enable_failover
        return preferred, policy.enable_failover

    # ========== FETCH_CANDIDATES ==========

    async def _load_pool(self, tenant_id: Optional[str]) -> Tuple[CredentialPool, frozenset]:
        """Credenciais+bindings e exclusões ativas do tenant (cache curto)."""
        await self.policy_cache.check_version()
        cache_key = tenant_id or "central"
        cached = self.policy_cache.lookup(self.policy_cache.candidate_pools, cache_key)
        if cached is not None:
            return cached

        pool = await self.repository.fetch_credentials_with_bindings(tenant_id)
        exclusions = frozenset(await self.repository.fetch_active_exclusions(tenant_id))
        entry = (pool, exclusions)
        self.policy_cache.candidate_pools.set(cache_key, entry)
        return entry

    def _usable_bindings(self, bindings: Sequence[ModelBinding], exclusions: frozenset) -> List[ModelBinding]:
        return [
            b for b in bindings
            if b.is_enabled and b.model_name not in self.disabled_models and b.id not in exclusions
        ]

    def _candidate_chain(
        self,
        credential: Credential,
        bindings: Sequence[ModelBinding],
        exclusions: frozenset,
        model_hint: Optional[str],
    ) -> List[Candidate]:
        """Modelos utilizáveis da credencial, menor prioridade primeiro."""
        usable = self._usable_bindings(bindings, exclusions)
        if model_hint:
            usable = [b for b in usable if b.model_name == model_hint]
        if usable:
            return [
                Candidate(credential=credential, model_name=b.model_name, binding=b)
                for b in sorted(usable, key=lambda b: b.priority)
            ]

        # Credencial sem nenhum binding serve o modelo padrão do provider
        if bindings:
            return []
        default_model = DEFAULT_MODEL_BY_PROVIDER.get(credential.provider)
        if not default_model or default_model in self.disabled_models:
            return []
        if model_hint and model_hint != default_model:
            return []
        return [Candidate(credential=credential, model_name=default_model)]

    async def _skip_cooling_models(self, chain: Sequence[Candidate]) -> List[Candidate]:
        """Cadeia a partir do primeiro modelo sem cooldown próprio; vazia se todos estão."""
        for index, candidate in enumerate(chain):
            if not await self.rotator.is_model_cooling(candidate):
                return list(chain[index:])
        return []

    @staticmethod
    def _score(candidate: Candidate, preferred: ProviderType) -> Tuple[int, int, str]:
        offset = PREFERRED_PROVIDER_SCORE if candidate.provider == preferred else OTHER_PROVIDER_SCORE
        binding_priority = candidate.binding.priority if candidate.binding else candidate.credential.priority
        return offset + binding_priority, candidate.credential.priority, candidate.credential.id

    async def _candidate_chains(
        self,
        tenant_id: Optional[str],
        model_hint: Optional[str],
        preferred: ProviderType,
        failover: bool,
    ) -> List[List[Candidate]]:
        pool, exclusions = await self._load_pool(tenant_id)
        chains = []
        for credential, bindings in pool:
            if not credential.is_active:
                continue
            if not failover and credential.provider != preferred:
                continue
            chain = self._candidate_chain(credential, bindings, exclusions, model_hint)
            if not chain:
                continue
            # Todos os modelos em cooldown: a cabeça representa a credencial
            chains.append(await self._skip_cooling_models(chain) or chain[:1])
        chains.sort(key=lambda chain: self._score(chain[0], preferred))
        return chains

    async def fetch_candidates(
        self,
        tenant_id: Optional[str],
        model_hint: Optional[str],
        preferred: ProviderType,
        failover: bool,
    ) -> List[Candidate]:
        """
        Um candidato por credencial elegível, provider preferido primeiro.
        Sem failover, só o provider preferido.
        """
        chains = await self._candidate_chains(tenant_id, model_hint, preferred, failover)
        return [chain[0] for chain in chains]

    # ========== SELECT ==========

    @staticmethod
    def scope_id(tenant_id: Optional[str], candidates: Sequence[Candidate], model_hint: Optional[str]) -> str:
        providers = "+".join(sorted({c.provider.value for c in candidates}))
        return f"{tenant_id or 'central'}:{providers}:{model_hint or '*'}"

    async def _select(
        self,
        remaining: Sequence[Candidate],
        preferred: ProviderType,
        tenant_id: Optional[str],
        model_hint: Optional[str],
    ) -> Optional[Candidate]:
        """
        Provider preferido primeiro; os demais só quando nenhum candidato
        preferido está disponível. Cada grupo tem seu contador round-robin.
        """
        preferred_group = [c for c in remaining if c.provider == preferred]
        other_group = [c for c in remaining if c.provider != preferred]
        for group in (preferred_group, other_group):
            if not group:
                continue
            selected = await self.rotator.select_next(group, self.scope_id(tenant_id, group, model_hint))
            if selected is not None:
                return selected
        return None

    # ========== EXECUTE ==========

    async def select_and_execute(
        self,
        tenant_id: Optional[str],
        prompt: str,
        model_hint: Optional[str] = None,
        options: Optional[SelectionOptions] = None,
    ):
        """
        Seleciona credencial, executa e faz failover.

        Returns:
            GenerationResult em sucesso, ExhaustedResult sem capacidade agora.

        Raises:
            BadRequestError: requisição inválida (não é culpa da credencial)
        """
        options = options or SelectionOptions()
        preferred, failover = await self.resolve_policy(tenant_id, options)
        chains = await self._candidate_chains(tenant_id, model_hint, preferred, failover)
        candidates = [chain[0] for chain in chains]
        next_models = {chain[0].credential.id: chain[1:] for chain in chains}

        if not candidates:
            logger.error(
                f"❌ [SELECT] Nenhuma credencial elegível (tenant={tenant_id}, "
                f"model={model_hint}, provider={preferred.value}, failover={failover})"
            )

        remaining = list(candidates)
        attempts = 0
        tried: List[str] = []

        while remaining:
            candidate = await self._select(remaining, preferred, tenant_id, model_hint)
            if candidate is None:
                break
            remaining = [c for c in remaining if c is not candidate]
            attempts += 1
            tried.append(candidate.credential.name)

            provider = await self.provider_factory.get(candidate.credential)
            started = time.perf_counter()
            try:
                response = await provider.generate_response(prompt, candidate.model_name, options)
            except BadRequestError as e:
                self.metrics.record_failure(type(e).__name__)
                logger.warning(
                    f"⚠️ [SELECT] Requisição rejeitada por {candidate.provider.value} "
                    f"({candidate.model_name}): {e.message}"
                )
                raise
            except UnauthorizedError as e:
                self.metrics.record_failure(type(e).__name__)
                await self._handle_unauthorized(candidate, e)
                continue
            except ModelNotFoundError as e:
                self.metrics.record_failure(type(e).__name__)
                await self._handle_model_not_found(candidate, e)
                await self._fall_through(candidate, remaining, candidates, next_models)
                continue
            except (RateLimitedError, QuotaExceededError) as e:
                self.metrics.record_failure(type(e).__name__)
                await self._handle_rate_limited(candidate, tenant_id, e)
                await self._fall_through(candidate, remaining, candidates, next_models)
                continue
            except ProviderError as e:
                self.metrics.record_failure(type(e).__name__)
                await self.rotator.mark_failed(candidate, e.reason, e.retry_after_ms)
                logger.warning(
                    f"🔁 [SELECT] {candidate.credential.name} falhou ({e!r}), "
                    f"{len(remaining)} candidatos restantes"
                )
                continue
            except Exception as e:
                # Resposta que o provider não soube interpretar conta como falha da credencial
                self.metrics.record_failure(type(e).__name__)
                logger.error(
                    f"❌ [SELECT] Erro inesperado em {candidate.credential.name} "
                    f"({candidate.provider.value}/{candidate.model_name}): {e!r}",
                    exc_info=True,
                )
                await self.rotator.mark_failed(candidate, FailureReason.UNKNOWN)
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            self.usage_buffer.record_usage(candidate.binding_id, response.usage.total_tokens)
            self.metrics.record_success(candidate.model_name, candidate.credential.name, latency_ms)
            logger.info(
                f"✅ [SELECT] {candidate.credential.name} ({candidate.provider.value}/{candidate.model_name}) "
                f"em {latency_ms:.0f}ms, tentativa {attempts}"
            )
            return GenerationResult(
                content=response.content,
                usage=response.usage,
                model=response.model or candidate.model_name,
                provider=candidate.provider,
                credential_id=candidate.credential.id,
                credential_name=candidate.credential.name,
                attempts=attempts,
            )

        return await self._exhausted(candidates, attempts, tried, options)

    async def _fall_through(
        self,
        failed: Candidate,
        remaining: List[Candidate],
        candidates: List[Candidate],
        next_models: Dict[str, List[Candidate]],
    ) -> None:
        """Põe no lugar do modelo que falhou o próximo modelo da mesma credencial."""
        chain = await self._skip_cooling_models(next_models.pop(failed.credential.id, []))
        if not chain:
            return
        replacement, next_models[failed.credential.id] = chain[0], chain[1:]
        remaining.append(replacement)
        candidates.append(replacement)
        logger.info(
            f"↪️ [SELECT] {failed.credential.name}: {failed.model_name} -> {replacement.model_name}"
        )

    async def _exhausted(
        self,
        candidates: Sequence[Candidate],
        attempts: int,
        tried: List[str],
        options: SelectionOptions,
    ) -> ExhaustedResult:
        retry_after = await self.rotator.shortest_cooldown_seconds(candidates)
        if retry_after is None:
            retry_after = DEFAULT_RETRY_AFTER_SECONDS
        self.metrics.record_exhausted()
        logger.warning(
            f"🚫 [SELECT] Pool esgotado após {attempts} tentativas "
            f"({len(candidates)} candidatos), retry_after={retry_after}s"
        )
        return ExhaustedResult(
            retry_after_seconds=retry_after,
            message=exhausted_message(options.locale, settings.ROUTER_LOCALE),
            attempts=attempts,
            tried=tried,
        )

    # ========== TRATAMENTO DE FALHAS ==========

    async def _handle_unauthorized(self, candidate: Candidate, error: UnauthorizedError) -> None:
        credential = candidate.credential
        await self.rotator.mark_failed(candidate, error.reason)
        reason = f"{error.reason.value}: {error.message}"[:500]
        try:
            changed = await self.repository.deactivate_credential(credential.id, reason)
        except Exception as e:
            logger.error(f"❌ [SELECT] Falha ao desativar credencial {credential.name}: {e}")
            changed = False
        await self.provider_factory.evict(credential.id)
        logger.error(
            f"🔒 [SELECT] Credencial {credential.name} ({credential.provider.value}) desativada - "
            f"{'vazada' if error.leaked else 'não autorizada'}"
        )
        if changed:
            await self._bump_version()
        self.clear_all_caches()

    async def _handle_model_not_found(self, candidate: Candidate, error: ModelNotFoundError) -> None:
        if candidate.binding_id is None:
            logger.warning(
                f"⚠️ [SELECT] Modelo padrão {candidate.model_name} não encontrado em "
                f"{candidate.credential.name}"
            )
            return
        try:
            changed = await self.repository.disable_binding(candidate.binding_id)
        except Exception as e:
            logger.error(f"❌ [SELECT] Falha ao desabilitar binding {candidate.binding_id}: {e}")
            changed = False
        logger.warning(
            f"🚫 [SELECT] Modelo {candidate.model_name} desabilitado em {candidate.credential.name} (404)"
        )
        if changed:
            await self._bump_version()
        self.clear_all_caches()

    async def _handle_rate_limited(
        self, candidate: Candidate, tenant_id: Optional[str], error: ProviderError
    ) -> None:
        await self.rotator.mark_failed(candidate, error.reason, error.retry_after_ms)
        if candidate.binding_id is None:
            return

        hint_ms = error.retry_after_ms or 0
        exclusion_ms = max(hint_ms, int(settings.ROUTER_EXCLUSION_MINUTES * 60 * 1000))
        retry_at = datetime.now(timezone.utc) + timedelta(milliseconds=exclusion_ms)
        try:
            await self.repository.upsert_exclusion(
                candidate.binding_id,
                tenant_id,
                error.reason.value,
                retry_at,
            )
            await self.repository.mark_binding_exhausted(candidate.binding_id)
        except Exception as e:
            logger.error(f"❌ [SELECT] Falha ao registrar exclusão de {candidate.binding_id}: {e}")
            return
        logger.info(
            f"⏳ [SELECT] {candidate.model_name}@{candidate.credential.name} excluído até "
            f"{retry_at.isoformat()} ({error.reason.value})"
        )
        await self._bump_version()
        self.policy_cache.candidate_pools.clear()
        self.policy_cache.models_ordered.clear()

    async def _bump_version(self) -> None:
        try:
            await self.repository.bump_config_version()
        except Exception as e:
            logger.warning(f"⚠️ [POLICY] Falha ao incrementar config_version: {e}")

    # ========== CONSULTAS ==========

    async def get_models_ordered_by_priority(
        self, tenant_id: Optional[str] = None, preferred_provider: Optional[str] = None
    ) -> List[str]:
        """Nomes de modelos únicos, provider preferido primeiro, sem desativados."""
        policy = await self.policy_cache.get_global_policy()
        preferred = ProviderType.parse(preferred_provider, policy.default_provider)
        cache_key = (tenant_id or "central", preferred.value)
        cached = self.policy_cache.lookup(self.policy_cache.models_ordered, cache_key)
        if cached is not None:
            return list(cached)

        pool, _ = await self._load_pool(tenant_id)
        scores: Dict[str, int] = {}
        for credential, bindings in pool:
            if not credential.is_active:
                continue
            offset = PREFERRED_PROVIDER_SCORE if credential.provider == preferred else OTHER_PROVIDER_SCORE
            entries = [(b.model_name, b.priority) for b in bindings if b.is_enabled]
            if not bindings:
                default_model = DEFAULT_MODEL_BY_PROVIDER.get(credential.provider)
                if default_model:
                    entries = [(default_model, credential.priority)]
            for model_name, priority in entries:
                if model_name in self.disabled_models:
                    continue
                score = offset + priority
                if model_name not in scores or score < scores[model_name]:
                    scores[model_name] = score

        ordered = [name for name, _ in sorted(scores.items(), key=lambda item: (item[1], item[0]))]
        self.policy_cache.models_ordered.set(cache_key, tuple(ordered))
        return ordered

    async def get_status(self, tenant_id: Optional[str] = None) -> Dict:
        """Visão somente leitura: política, cooldowns, uso pendente, métricas."""
        policy = await self.policy_cache.get_global_policy()
        candidates = await self.fetch_candidates(tenant_id, None, policy.default_provider, True)
        return {
            "tenant_id": tenant_id,
            "default_provider": policy.default_provider.value,
            "enable_failover": policy.enable_failover,
            "config_version": self.policy_cache.version,
            "credentials": await self.rotator.get_status(candidates),
            "pending_usage": self.usage_buffer.pending_count(),
            "performance": self.metrics.get_performance_metrics(),
        }

    def get_performance_metrics(self) -> Dict:
        return self.metrics.get_performance_metrics()

    def reset_performance_metrics(self) -> None:
        self.metrics.reset()

    def clear_all_caches(self) -> Dict[str, int]:
        counts = self.policy_cache.clear_all()
        logger.info(f"🧹 [POLICY] Caches limpos: {counts}")
        return counts
