"""
Testes unitários para o MaintenanceSweeper.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from app.services.router import MaintenanceSweeper


def _now():
    return datetime.now(timezone.utc)


class TestSweeps:
    """Limpeza de exclusões e marcadores."""

    @pytest.mark.asyncio
    async def test_expired_exclusions_removed_and_version_bumped(self, fake_repo):
        fake_repo.exclusions = [
            {"binding_id": "a", "tenant_id": None, "reason": "QUOTA", "retry_at": _now() - timedelta(minutes=1), "retry_count": 0},
            {"binding_id": "b", "tenant_id": None, "reason": "QUOTA", "retry_at": _now() + timedelta(hours=1), "retry_count": 0},
        ]
        sweeper = MaintenanceSweeper(fake_repo)

        assert await sweeper.sweep_exclusions() == 1
        assert [e["binding_id"] for e in fake_repo.exclusions] == ["b"]
        assert fake_repo.version == 1

    @pytest.mark.asyncio
    async def test_nothing_to_clear_keeps_version(self, fake_repo):
        sweeper = MaintenanceSweeper(fake_repo)

        assert await sweeper.run_once() == {"exclusions": 0, "exhausted": 0}
        assert fake_repo.version == 0

    @pytest.mark.asyncio
    async def test_stale_exhausted_markers_cleared(self, fake_repo, credential_factory):
        fake_repo.add_credential(credential_factory("a"), ["gemini-2.0-flash", "gemini-2.5-pro"])
        fake_repo.bindings["a:gemini-2.0-flash"].usage.exhausted_at = _now() - timedelta(hours=2)
        fake_repo.bindings["a:gemini-2.5-pro"].usage.exhausted_at = _now() - timedelta(seconds=10)
        sweeper = MaintenanceSweeper(fake_repo, exhausted_max_age=3600)

        assert await sweeper.sweep_exhausted() == 1
        assert fake_repo.bindings["a:gemini-2.0-flash"].usage.exhausted_at is None
        assert fake_repo.bindings["a:gemini-2.5-pro"].usage.exhausted_at is not None
        assert fake_repo.version == 1


class TestLifecycle:
    """Jobs periódicos."""

    @pytest.mark.asyncio
    async def test_periodic_jobs_run_and_stop(self, fake_repo):
        sweeper = MaintenanceSweeper(fake_repo, exclusions_interval=0.05, exhausted_interval=0.05)
        fake_repo.clear_expired_exclusions = AsyncMock(return_value=0)

        sweeper.start()
        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert fake_repo.clear_expired_exclusions.await_count >= 2

    @pytest.mark.asyncio
    async def test_job_error_does_not_stop_loop(self, fake_repo):
        sweeper = MaintenanceSweeper(fake_repo, exclusions_interval=0.05, exhausted_interval=10)
        fake_repo.clear_expired_exclusions = AsyncMock(side_effect=OSError("db down"))

        sweeper.start()
        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert fake_repo.clear_expired_exclusions.await_count >= 2
