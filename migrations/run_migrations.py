"""
Aplica as migrations SQL pendentes do roteador.

Os arquivos NNN_*.sql deste diretório são aplicados em ordem de nome.
Cada um roda na própria transação e é registrado em schema_migrations
com o sha256 do conteúdo; um arquivo já aplicado que mudou depois é
reportado e não roda de novo.

    python migrations/run_migrations.py            # aplica pendentes
    python migrations/run_migrations.py --status   # só lista
    python migrations/run_migrations.py --dry-run  # mostra o que rodaria
"""
import argparse
import asyncio
import hashlib
import logging
import re
import sys
from pathlib import Path
from typing import Dict, List, Tuple

import asyncpg

# Adicionar diretório raiz ao path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.config import settings
from app.core.database import DB_SCHEMA

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
_MIGRATION_NAME = re.compile(r"^\d{3}_[\w-]+\.sql$")

CREATE_TRACKING_TABLE = f"""
CREATE SCHEMA IF NOT EXISTS {DB_SCHEMA};
CREATE TABLE IF NOT EXISTS {DB_SCHEMA}.schema_migrations (
    filename TEXT PRIMARY KEY,
    checksum TEXT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


def discover_migrations(directory: Path = MIGRATIONS_DIR) -> List[Path]:
    """Arquivos de migration ordenados pelo prefixo numérico."""
    return sorted(p for p in directory.iterdir() if _MIGRATION_NAME.match(p.name))


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def pending_migrations(
    files: Dict[str, str], applied: Dict[str, str]
) -> Tuple[List[str], List[str]]:
    """
    Separa o que falta aplicar do que foi alterado depois de aplicado.

    Args:
        files: nome do arquivo -> checksum atual
        applied: nome do arquivo -> checksum registrado no banco

    Returns:
        (pendentes em ordem, aplicados cujo conteúdo mudou)
    """
    pending = [name for name in sorted(files) if name not in applied]
    changed = [name for name in sorted(files) if name in applied and applied[name] != files[name]]
    return pending, changed


async def _applied(conn) -> Dict[str, str]:
    rows = await conn.fetch(f"SELECT filename, checksum FROM {DB_SCHEMA}.schema_migrations")
    return {row["filename"]: row["checksum"] for row in rows}


async def run_migrations(dry_run: bool = False, status_only: bool = False) -> List[str]:
    """
    Aplica as migrations pendentes, cada uma em transação própria.

    Returns:
        Nomes aplicados (ou que seriam aplicados, em dry_run/status)
    """
    sources = {path.name: path.read_text(encoding="utf-8") for path in discover_migrations()}
    files = {name: checksum(sql) for name, sql in sources.items()}

    conn = await asyncpg.connect(settings.DATABASE_URL)
    try:
        await conn.execute(CREATE_TRACKING_TABLE)
        pending, changed = pending_migrations(files, await _applied(conn))

        for name in changed:
            logger.warning(f"⚠️ [MIGRATIONS] {name} foi alterado depois de aplicado (não será reexecutado)")

        if status_only or dry_run:
            for name in sorted(files):
                mark = "pendente" if name in pending else "aplicada"
                logger.info(f"📄 [MIGRATIONS] {name}: {mark}")
            return pending

        if not pending:
            logger.info("✅ [MIGRATIONS] Banco já está atualizado")
            return []

        for name in pending:
            logger.info(f"📄 [MIGRATIONS] Executando {name}")
            try:
                async with conn.transaction():
                    await conn.execute(sources[name])
                    await conn.execute(
                        f"INSERT INTO {DB_SCHEMA}.schema_migrations (filename, checksum) VALUES ($1, $2)",
                        name,
                        files[name],
                    )
            except Exception as e:
                logger.error(f"❌ [MIGRATIONS] Erro ao executar {name}: {e}")
                raise
            logger.info(f"✅ [MIGRATIONS] {name} aplicada")

        logger.info(f"✅ [MIGRATIONS] {len(pending)} migrations aplicadas")
        return pending
    finally:
        await conn.close()


def main():
    parser = argparse.ArgumentParser(description="Aplica as migrations pendentes do roteador")
    parser.add_argument("--status", action="store_true", help="Lista migrations aplicadas e pendentes")
    parser.add_argument("--dry-run", action="store_true", help="Mostra o que seria aplicado, sem executar")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_migrations(dry_run=args.dry_run, status_only=args.status))


if __name__ == "__main__":
    main()
