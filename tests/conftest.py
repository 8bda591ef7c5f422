"""
Dublês de teste do roteador: Redis em memória (com relógio controlável e
chave de indisponibilidade), repositório em memória e providers roteirizados.
"""

import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.router import (
    CooldownConfig,
    Credential,
    DistributedStateStore,
    KeyRotator,
    KeyScope,
    ModelBinding,
    PolicyCache,
    ProviderType,
    RouterMetrics,
    SelectionOrchestrator,
    UsageBuffer,
)
from app.services.router.models import GlobalPolicy, ProviderResponse, TenantSettings, TokenUsage


class FakeRedis:
    """Subconjunto do redis.asyncio usado pelo DistributedStateStore."""

    def __init__(self):
        self.now = 1_000.0
        self.available = True
        self._data: Dict[str, tuple] = {}
        self.calls: List[str] = []

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if not self.available:
            raise RedisConnectionError("Connection refused")

    def _alive(self, key: str):
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.now >= expires_at:
            del self._data[key]
            return None
        return entry

    async def exists(self, key):
        self._check("exists")
        return 1 if self._alive(key) else 0

    async def set(self, key, value, nx=False, px=None):
        self._check("set")
        if nx and self._alive(key):
            return None
        expires_at = self.now + px / 1000 if px else None
        self._data[key] = (str(value), expires_at)
        return True

    async def get(self, key):
        self._check("get")
        entry = self._alive(key)
        return entry[0] if entry else None

    async def delete(self, key):
        self._check("delete")
        return 1 if self._data.pop(key, None) else 0

    async def pttl(self, key):
        self._check("pttl")
        entry = self._alive(key)
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return int((entry[1] - self.now) * 1000)

    async def incr(self, key):
        self._check("incr")
        entry = self._alive(key)
        value = int(entry[0]) + 1 if entry else 1
        self._data[key] = (str(value), entry[1] if entry else None)
        return value

    async def ping(self):
        self._check("ping")
        return True

    async def aclose(self):
        pass


class FakeRepository:
    """Repositório em memória com a mesma interface do CredentialRepository."""

    def __init__(self):
        self.credentials: Dict[str, Credential] = {}
        self.bindings: Dict[str, ModelBinding] = {}
        self.exclusions: List[dict] = []
        self.policy: Optional[GlobalPolicy] = GlobalPolicy(default_provider=ProviderType.GOOGLE, enable_failover=True)
        self.tenant_settings: Dict[str, TenantSettings] = {}
        self.version = 0
        self.fetch_calls = 0
        self.usage_writes: List[tuple] = []
        self.deactivated: List[tuple] = []
        self.fail_usage_writes = 0

    def add_credential(self, credential: Credential, models: List[str] = None) -> Credential:
        self.credentials[credential.id] = credential
        for index, model_name in enumerate(models or []):
            binding_id = f"{credential.id}:{model_name}"
            self.bindings[binding_id] = ModelBinding(
                id=binding_id,
                credential_id=credential.id,
                model_name=model_name,
                priority=index + 1,
            )
        return credential

    async def fetch_credentials_with_bindings(self, tenant_id):
        self.fetch_calls += 1
        visible = [
            c for c in self.credentials.values()
            if c.is_active and (c.scope == KeyScope.CENTRAL or c.tenant_id == tenant_id)
        ]
        visible.sort(key=lambda c: c.priority)
        result = []
        for credential in visible:
            bindings = sorted(
                (b for b in self.bindings.values() if b.credential_id == credential.id and b.is_enabled),
                key=lambda b: b.priority,
            )
            result.append((copy.copy(credential), [copy.copy(b) for b in bindings]))
        return result

    async def list_credentials(self, include_inactive=False):
        return [c for c in self.credentials.values() if include_inactive or c.is_active]

    async def fetch_active_exclusions(self, tenant_id):
        now = datetime.now(timezone.utc)
        return {
            e["binding_id"] for e in self.exclusions
            if e["retry_at"] > now and (e["tenant_id"] is None or e["tenant_id"] == tenant_id)
        }

    async def upsert_exclusion(self, binding_id, tenant_id, reason, retry_at):
        for e in self.exclusions:
            if e["binding_id"] == binding_id and e["tenant_id"] == tenant_id:
                e.update(reason=reason, retry_at=max(e["retry_at"], retry_at), retry_count=e["retry_count"] + 1)
                return
        self.exclusions.append(
            {"binding_id": binding_id, "tenant_id": tenant_id, "reason": reason, "retry_at": retry_at, "retry_count": 0}
        )

    async def clear_expired_exclusions(self):
        now = datetime.now(timezone.utc)
        before = len(self.exclusions)
        self.exclusions = [e for e in self.exclusions if e["retry_at"] > now]
        return before - len(self.exclusions)

    async def deactivate_credential(self, credential_id, reason):
        credential = self.credentials.get(credential_id)
        if credential is None or not credential.is_active:
            return False
        credential.is_active = False
        self.deactivated.append((credential_id, reason))
        return True

    async def disable_binding(self, binding_id):
        binding = self.bindings.get(binding_id)
        if binding is None or not binding.is_enabled:
            return False
        binding.is_enabled = False
        return True

    async def mark_binding_exhausted(self, binding_id):
        binding = self.bindings.get(binding_id)
        if binding is not None:
            binding.usage.exhausted_at = datetime.now(timezone.utc)

    async def clear_stale_exhausted_markers(self, max_age_seconds):
        now = datetime.now(timezone.utc)
        cleared = 0
        for binding in self.bindings.values():
            marker = binding.usage.exhausted_at
            if marker is not None and (now - marker).total_seconds() > max_age_seconds:
                binding.usage.exhausted_at = None
                cleared += 1
        return cleared

    async def apply_usage_delta(self, binding_id, request_delta, token_delta):
        if self.fail_usage_writes > 0:
            self.fail_usage_writes -= 1
            raise ConnectionError("connection reset")
        self.usage_writes.append((binding_id, request_delta, token_delta))
        binding = self.bindings.get(binding_id)
        if binding is not None:
            binding.usage.request_count += request_delta
            binding.usage.token_count += token_delta

    async def get_global_policy(self):
        if self.policy is None:
            return None
        return GlobalPolicy(
            default_provider=self.policy.default_provider,
            enable_failover=self.policy.enable_failover,
            version=self.version,
        )

    async def get_config_version(self):
        return self.version

    async def bump_config_version(self):
        self.version += 1
        return self.version

    async def get_tenant_settings(self, tenant_id):
        return self.tenant_settings.get(tenant_id)


class FakeProvider:
    """Provider roteirizado: consome `script` em ordem; vazio = sucesso."""

    def __init__(self, credential: Credential, log: List[str]):
        self.credential = credential
        self.script: List = []
        self._log = log
        self.closed = False

    async def generate_response(self, prompt, model, options=None):
        self._log.append(self.credential.id)
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ProviderResponse(
            content=f"resposta de {self.credential.id}",
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5),
            model=model,
        )

    async def list_models(self):
        return []

    async def test_connection(self, model=None):
        return True

    async def close(self):
        self.closed = True


class FakeProviderFactory:
    def __init__(self):
        self.providers: Dict[str, FakeProvider] = {}
        self.calls: List[str] = []
        self.evicted: List[str] = []

    def for_credential(self, credential: Credential) -> FakeProvider:
        if credential.id not in self.providers:
            self.providers[credential.id] = FakeProvider(credential, self.calls)
        return self.providers[credential.id]

    async def get(self, credential):
        return self.for_credential(credential)

    async def evict(self, credential_id):
        self.evicted.append(credential_id)
        return 1

    async def close(self):
        for provider in self.providers.values():
            await provider.close()


def make_credential(
    credential_id: str,
    provider: ProviderType = ProviderType.GOOGLE,
    priority: int = 100,
    tenant_id: str = None,
) -> Credential:
    return Credential(
        id=credential_id,
        name=f"key-{credential_id}",
        api_key=f"secret-{credential_id}",
        provider=provider,
        scope=KeyScope.TENANT if tenant_id else KeyScope.CENTRAL,
        tenant_id=tenant_id,
        priority=priority,
    )


@pytest.fixture
def credential_factory():
    return make_credential


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def state_store(fake_redis):
    return DistributedStateStore(fake_redis, prefix="test")


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def fake_providers():
    return FakeProviderFactory()


@pytest.fixture
def rotator(state_store):
    return KeyRotator(state_store, CooldownConfig())


@pytest.fixture
def orchestrator_factory(fake_repo, fake_redis):
    """Monta orquestradores que compartilham Redis e banco (um por "processo")."""

    def build(provider_factory=None, state_store=None, rotator=None):
        store = state_store or DistributedStateStore(fake_redis, prefix="test")
        metrics = RouterMetrics()
        return SelectionOrchestrator(
            fake_repo,
            store,
            provider_factory or FakeProviderFactory(),
            rotator=rotator or KeyRotator(store, CooldownConfig()),
            usage_buffer=UsageBuffer(fake_repo, store, flush_interval=60, lease_ms=5000),
            policy_cache=PolicyCache(fake_repo, clock=lambda: fake_redis.now, metrics=metrics),
            metrics=metrics,
            disabled_models=[],
        )

    return build


@pytest.fixture
def orchestrator(orchestrator_factory, state_store, fake_providers, rotator):
    return orchestrator_factory(fake_providers, state_store, rotator)
