"""
Acesso ao banco (asyncpg) para credenciais, bindings, exclusões e política.

Uso: SEMPRE `async with pool.acquire() as conn:`. O pool é injetado no
construtor; o repositório não abre conexões por conta própria.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import asyncpg

from app.core.database import DB_SCHEMA
from .models import (
    Credential,
    GlobalPolicy,
    KeyScope,
    ModelBinding,
    ProviderType,
    TenantSettings,
    UsageCounters,
)

logger = logging.getLogger(__name__)

SCHEMA = DB_SCHEMA


def _affected_rows(status: str) -> int:
    """'UPDATE 3' / 'DELETE 0' -> número de linhas afetadas."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _row_to_credential(row) -> Credential:
    return Credential(
        id=str(row["id"]),
        name=row["name"],
        api_key=row["api_key"],
        provider=ProviderType.parse(row["provider"]),
        scope=KeyScope(row["scope"]) if row["scope"] else KeyScope.CENTRAL,
        tenant_id=row["tenant_id"],
        base_url=row["base_url"],
        priority=row["priority"] if row["priority"] is not None else 100,
        is_active=row["is_active"],
    )


def _row_to_binding(row) -> ModelBinding:
    return ModelBinding(
        id=str(row["id"]),
        credential_id=str(row["credential_id"]),
        model_name=row["model_name"],
        priority=row["priority"] if row["priority"] is not None else 100,
        is_enabled=row["is_enabled"],
        usage=UsageCounters(
            request_count=row["request_count"] or 0,
            token_count=row["token_count"] or 0,
            window_start=row["window_start"],
            last_used_at=row["last_used_at"],
            exhausted_at=row["exhausted_at"],
        ),
    )


class CredentialRepository:
    """Operações assíncronas sobre o schema do roteador."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # ========== CANDIDATOS ==========

    async def fetch_credentials_with_bindings(
        self, tenant_id: Optional[str]
    ) -> List[Tuple[Credential, List[ModelBinding]]]:
        """
        Credenciais ativas visíveis para o tenant (centrais + próprias) com
        seus bindings habilitados, ambos ordenados por prioridade.
        """
        async with self._pool.acquire() as conn:
            cred_rows = await conn.fetch(
                f"""
                SELECT id, name, api_key, provider, scope, tenant_id, base_url, priority, is_active
                FROM "{SCHEMA}".credentials
                WHERE is_active = TRUE
                  AND (scope = 'CENTRAL' OR tenant_id = $1)
                ORDER BY priority ASC, created_at ASC
                """,
                tenant_id,
            )
            if not cred_rows:
                return []

            ids = [row["id"] for row in cred_rows]
            binding_rows = await conn.fetch(
                f"""
                SELECT id, credential_id, model_name, priority, is_enabled,
                       request_count, token_count, window_start, last_used_at, exhausted_at
                FROM "{SCHEMA}".model_bindings
                WHERE credential_id = ANY($1::text[])
                  AND is_enabled = TRUE
                ORDER BY priority ASC, model_name ASC
                """,
                ids,
            )

        bindings_by_cred: Dict[str, List[ModelBinding]] = {}
        for row in binding_rows:
            binding = _row_to_binding(row)
            bindings_by_cred.setdefault(binding.credential_id, []).append(binding)

        return [
            (cred, bindings_by_cred.get(cred.id, []))
            for cred in (_row_to_credential(row) for row in cred_rows)
        ]

    async def list_credentials(self, include_inactive: bool = False) -> List[Credential]:
        """Todas as credenciais (ferramentas auxiliares)."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, name, api_key, provider, scope, tenant_id, base_url, priority, is_active
                FROM "{SCHEMA}".credentials
                WHERE ($1 OR is_active = TRUE)
                ORDER BY provider, priority ASC
                """,
                include_inactive,
            )
        return [_row_to_credential(row) for row in rows]

    # ========== EXCLUSÕES ==========

    async def fetch_active_exclusions(self, tenant_id: Optional[str]) -> Set[str]:
        """binding_ids com exclusão cujo retry_at ainda está no futuro."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT DISTINCT binding_id
                FROM "{SCHEMA}".exclusion_records
                WHERE retry_at > now()
                  AND (tenant_id IS NULL OR tenant_id = $1)
                """,
                tenant_id,
            )
        return {str(row["binding_id"]) for row in rows}

    async def upsert_exclusion(
        self,
        binding_id: str,
        tenant_id: Optional[str],
        reason: str,
        retry_at: datetime,
    ) -> None:
        """Cria ou estende a exclusão do binding (retry_count incrementa)."""
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO "{SCHEMA}".exclusion_records (binding_id, tenant_id, reason, retry_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (binding_id, (COALESCE(tenant_id, '')))
                DO UPDATE SET reason = EXCLUDED.reason,
                              retry_at = GREATEST("{SCHEMA}".exclusion_records.retry_at, EXCLUDED.retry_at),
                              retry_count = "{SCHEMA}".exclusion_records.retry_count + 1,
                              updated_at = now()
                """,
                binding_id,
                tenant_id,
                reason,
                retry_at,
            )

    async def clear_expired_exclusions(self) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f'DELETE FROM "{SCHEMA}".exclusion_records WHERE retry_at <= now()'
            )
        return _affected_rows(status)

    # ========== ESTADO DE CREDENCIAIS / BINDINGS ==========

    async def deactivate_credential(self, credential_id: str, reason: str) -> bool:
        """Desativa a credencial. Idempotente: False se já estava inativa."""
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"""
                UPDATE "{SCHEMA}".credentials
                SET is_active = FALSE,
                    deactivated_reason = $2,
                    deactivated_at = now(),
                    updated_at = now()
                WHERE id = $1 AND is_active = TRUE
                """,
                credential_id,
                reason,
            )
        return _affected_rows(status) > 0

    async def disable_binding(self, binding_id: str) -> bool:
        """Desabilita o binding. Idempotente."""
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"""
                UPDATE "{SCHEMA}".model_bindings
                SET is_enabled = FALSE, updated_at = now()
                WHERE id = $1 AND is_enabled = TRUE
                """,
                binding_id,
            )
        return _affected_rows(status) > 0

    async def mark_binding_exhausted(self, binding_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE "{SCHEMA}".model_bindings
                SET exhausted_at = now(), updated_at = now()
                WHERE id = $1
                """,
                binding_id,
            )

    async def clear_stale_exhausted_markers(self, max_age_seconds: float) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                f"""
                UPDATE "{SCHEMA}".model_bindings
                SET exhausted_at = NULL, updated_at = now()
                WHERE exhausted_at IS NOT NULL AND exhausted_at < $1
                """,
                cutoff,
            )
        return _affected_rows(status)

    async def apply_usage_delta(self, binding_id: str, request_delta: int, token_delta: int) -> None:
        """Soma os deltas aos contadores tipados do binding (uma transação)."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    UPDATE "{SCHEMA}".model_bindings
                    SET request_count = request_count + $2,
                        token_count = token_count + $3,
                        window_start = COALESCE(window_start, now()),
                        last_used_at = now(),
                        updated_at = now()
                    WHERE id = $1
                    """,
                    binding_id,
                    request_delta,
                    token_delta,
                )

    # ========== POLÍTICA / CONFIG ==========

    async def get_global_policy(self) -> Optional[GlobalPolicy]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT default_provider, enable_failover, config_version
                FROM "{SCHEMA}".global_policy
                WHERE is_active = TRUE
                ORDER BY id ASC
                LIMIT 1
                """
            )
        if not row:
            return None
        return GlobalPolicy(
            default_provider=ProviderType.parse(row["default_provider"]),
            enable_failover=row["enable_failover"],
            version=row["config_version"],
        )

    async def get_config_version(self) -> int:
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(
                f'SELECT COALESCE(MAX(config_version), 0) FROM "{SCHEMA}".global_policy'
            )
        return int(value or 0)

    async def bump_config_version(self) -> int:
        """Incrementa o watermark de configuração. Retorna o novo valor."""
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(
                f"""
                UPDATE "{SCHEMA}".global_policy
                SET config_version = config_version + 1, updated_at = now()
                WHERE is_active = TRUE
                RETURNING config_version
                """
            )
        return int(value or 0)

    async def get_tenant_settings(self, tenant_id: str) -> Optional[TenantSettings]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT tenant_id, enable_failover
                FROM "{SCHEMA}".tenant_settings
                WHERE tenant_id = $1
                """,
                tenant_id,
            )
        if not row:
            return None
        return TenantSettings(tenant_id=row["tenant_id"], enable_failover=row["enable_failover"])
