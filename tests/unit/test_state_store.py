"""
Testes unitários para o DistributedStateStore.
"""

import pytest

from app.services.router import DistributedStateStore


class TestFlags:
    """Flags com TTL (circuit breakers)."""

    @pytest.mark.asyncio
    async def test_flag_expires_with_ttl(self, state_store, fake_redis):
        """Flag existe até o TTL vencer."""
        assert await state_store.is_flagged("cb:a") is False

        await state_store.set_flag_with_ttl("cb:a", 30_000)
        assert await state_store.is_flagged("cb:a") is True

        fake_redis.advance(29)
        assert await state_store.is_flagged("cb:a") is True

        fake_redis.advance(2)
        assert await state_store.is_flagged("cb:a") is False

    @pytest.mark.asyncio
    async def test_reflag_replaces_ttl(self, state_store):
        """Re-flag usa o novo TTL, não soma ao anterior."""
        await state_store.set_flag_with_ttl("cb:a", 30_000)
        await state_store.set_flag_with_ttl("cb:a", 10_000)

        remaining = await state_store.remaining_ttl_ms("cb:a")
        assert remaining is not None
        assert remaining <= 10_000

    @pytest.mark.asyncio
    async def test_delete_flag(self, state_store):
        await state_store.set_flag_with_ttl("cb:a", 30_000)
        await state_store.delete_flag("cb:a")
        assert await state_store.is_flagged("cb:a") is False

    @pytest.mark.asyncio
    async def test_remaining_ttl_none_when_missing(self, state_store):
        assert await state_store.remaining_ttl_ms("cb:nada") is None

    @pytest.mark.asyncio
    async def test_keys_are_namespaced(self, state_store, fake_redis):
        """Todas as chaves usam o prefixo configurado."""
        await state_store.set_flag_with_ttl("cb:a", 1_000)
        await state_store.next_round_robin_index("scope", 3)
        assert all(key.startswith("test:") for key in fake_redis._data)


class TestRoundRobin:
    """Contador atômico de round-robin."""

    @pytest.mark.asyncio
    async def test_sequence_starts_at_zero(self, state_store):
        """Índices 0, 1, 2, 0, 1 para modulus 3."""
        indexes = [await state_store.next_round_robin_index("pool", 3) for _ in range(5)]
        assert indexes == [0, 1, 2, 0, 1]

    @pytest.mark.asyncio
    async def test_modulus_one_skips_store(self, state_store, fake_redis):
        """modulus <= 1 devolve 0 sem ir ao Redis."""
        assert await state_store.next_round_robin_index("pool", 1) == 0
        assert await state_store.next_round_robin_index("pool", 0) == 0
        assert "incr" not in fake_redis.calls

    @pytest.mark.asyncio
    async def test_counter_shared_between_instances(self, fake_redis):
        """Dois processos (duas instâncias) compartilham o mesmo contador."""
        store_a = DistributedStateStore(fake_redis, prefix="test")
        store_b = DistributedStateStore(fake_redis, prefix="test")

        assert await store_a.next_round_robin_index("pool", 4) == 0
        assert await store_b.next_round_robin_index("pool", 4) == 1
        assert await store_a.next_round_robin_index("pool", 4) == 2

    @pytest.mark.asyncio
    async def test_scopes_are_independent(self, state_store):
        assert await state_store.next_round_robin_index("x", 3) == 0
        assert await state_store.next_round_robin_index("y", 3) == 0
        assert await state_store.next_round_robin_index("x", 3) == 1


class TestLocks:
    """Locks com lease."""

    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, fake_redis):
        store_a = DistributedStateStore(fake_redis, prefix="test")
        store_b = DistributedStateStore(fake_redis, prefix="test")

        assert await store_a.acquire_lock("usage:1", 5_000) is True
        assert await store_b.acquire_lock("usage:1", 5_000) is False

        await store_a.release_lock("usage:1")
        assert await store_b.acquire_lock("usage:1", 5_000) is True

    @pytest.mark.asyncio
    async def test_lease_expires(self, fake_redis):
        store_a = DistributedStateStore(fake_redis, prefix="test")
        store_b = DistributedStateStore(fake_redis, prefix="test")

        assert await store_a.acquire_lock("usage:1", 1_000) is True
        fake_redis.advance(1.5)
        assert await store_b.acquire_lock("usage:1", 1_000) is True

    @pytest.mark.asyncio
    async def test_release_does_not_remove_foreign_lease(self, fake_redis):
        """Lease expirada e re-adquirida por outro processo não é liberada pelo antigo dono."""
        store_a = DistributedStateStore(fake_redis, prefix="test")
        store_b = DistributedStateStore(fake_redis, prefix="test")

        await store_a.acquire_lock("usage:1", 1_000)
        fake_redis.advance(2)
        await store_b.acquire_lock("usage:1", 5_000)

        await store_a.release_lock("usage:1")

        assert await fake_redis.get("test:lock:usage:1") is not None
        assert await store_a.acquire_lock("usage:1", 5_000) is False

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self, state_store):
        await state_store.release_lock("nunca-adquirido")


class TestStoreUnavailable:
    """Política documentada com o Redis fora do ar."""

    @pytest.mark.asyncio
    async def test_is_flagged_fails_open(self, state_store, fake_redis):
        await state_store.set_flag_with_ttl("cb:a", 30_000)
        fake_redis.available = False
        assert await state_store.is_flagged("cb:a") is False

    @pytest.mark.asyncio
    async def test_acquire_lock_fails_open(self, state_store, fake_redis):
        """Com o store fora, acquire_lock devolve True (sem deadlock)."""
        fake_redis.available = False
        assert await state_store.acquire_lock("usage:1", 5_000) is True
        assert await state_store.acquire_lock("usage:1", 5_000) is True
        await state_store.release_lock("usage:1")

    @pytest.mark.asyncio
    async def test_round_robin_random_in_range(self, state_store, fake_redis):
        fake_redis.available = False
        for _ in range(20):
            index = await state_store.next_round_robin_index("pool", 3)
            assert 0 <= index < 3

    @pytest.mark.asyncio
    async def test_writes_are_swallowed(self, state_store, fake_redis):
        fake_redis.available = False
        await state_store.set_flag_with_ttl("cb:a", 1_000)
        await state_store.delete_flag("cb:a")
        assert await state_store.remaining_ttl_ms("cb:a") is None
        assert await state_store.ping() is False

    @pytest.mark.asyncio
    async def test_recovers_when_store_returns(self, state_store, fake_redis):
        fake_redis.available = False
        assert await state_store.is_flagged("cb:a") is False
        fake_redis.available = True
        await state_store.set_flag_with_ttl("cb:a", 1_000)
        assert await state_store.is_flagged("cb:a") is True
