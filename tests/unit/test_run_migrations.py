"""
Testes do runner de migrations (sem banco: asyncpg.connect é substituído).
"""

import importlib.util
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

RUNNER_PATH = Path(__file__).resolve().parents[2] / "migrations" / "run_migrations.py"


@pytest.fixture(scope="module")
def runner():
    spec = importlib.util.spec_from_file_location("run_migrations", RUNNER_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _connection(applied_rows):
    conn = MagicMock()
    conn.execute = AsyncMock()
    conn.fetch = AsyncMock(return_value=applied_rows)
    conn.close = AsyncMock()
    return conn


class TestPendingMigrations:
    """Cálculo do que falta aplicar."""

    def test_only_unapplied_files_in_order(self, runner):
        files = {"002_c.sql": "h2", "000_a.sql": "h0", "001_b.sql": "h1"}

        pending, changed = runner.pending_migrations(files, {"000_a.sql": "h0"})

        assert pending == ["001_b.sql", "002_c.sql"]
        assert changed == []

    def test_changed_file_is_reported_not_pending(self, runner):
        pending, changed = runner.pending_migrations({"000_a.sql": "novo"}, {"000_a.sql": "antigo"})

        assert pending == []
        assert changed == ["000_a.sql"]

    def test_discovers_repository_migrations(self, runner):
        names = [p.name for p in runner.discover_migrations()]

        assert names[0] == "000_create_schema.sql"
        assert names == sorted(names)
        assert "run_migrations.py" not in names


class TestRunMigrations:
    """Aplicação com conexão simulada."""

    @pytest.mark.asyncio
    async def test_applies_and_records_pending_only(self, runner, monkeypatch):
        first = runner.discover_migrations()[0]
        applied = [{"filename": first.name, "checksum": runner.checksum(first.read_text(encoding="utf-8"))}]
        conn = _connection(applied)
        monkeypatch.setattr(runner.asyncpg, "connect", AsyncMock(return_value=conn))

        done = await runner.run_migrations()

        assert first.name not in done
        assert len(done) == len(runner.discover_migrations()) - 1
        inserts = [c for c in conn.execute.await_args_list if "INSERT INTO" in c.args[0]]
        assert [c.args[1] for c in inserts] == done
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dry_run_executes_nothing(self, runner, monkeypatch):
        conn = _connection([])
        monkeypatch.setattr(runner.asyncpg, "connect", AsyncMock(return_value=conn))

        done = await runner.run_migrations(dry_run=True)

        assert done == [p.name for p in runner.discover_migrations()]
        # só a criação da tabela de controle
        assert conn.execute.await_count == 1
