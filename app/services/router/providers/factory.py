"""
Criação (com cache) de providers por credencial.
"""

import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Tuple

from ..models import Credential, ProviderType
from .base import BaseProvider
from .google import GoogleProvider
from .openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """
    Um provider (e seu cliente HTTP) por credencial.

    A chave do cache inclui um hash do segredo e da base_url, então editar
    a credencial no banco gera um cliente novo.
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self._providers: Dict[Tuple[str, str], BaseProvider] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _cache_key(credential: Credential) -> Tuple[str, str]:
        fingerprint = hashlib.sha256(
            f"{credential.provider.value}|{credential.base_url or ''}|{credential.api_key}".encode()
        ).hexdigest()[:16]
        return credential.id, fingerprint

    def create(self, credential: Credential) -> BaseProvider:
        """Instancia o provider sem cache."""
        if credential.provider == ProviderType.GOOGLE:
            return GoogleProvider(credential, timeout=self.timeout)
        return OpenAICompatibleProvider(credential, timeout=self.timeout)

    def _pop_credential(self, credential_id: str) -> List[BaseProvider]:
        keys = [k for k in self._providers if k[0] == credential_id]
        return [self._providers.pop(k) for k in keys]

    @staticmethod
    async def _close_all(providers: List[BaseProvider]) -> None:
        """Fecha fora do lock; erro ao fechar um cliente antigo só é logado."""
        for provider in providers:
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"⚠️ [PROVIDER] Erro ao fechar cliente: {e}")

    async def get(self, credential: Credential) -> BaseProvider:
        key = self._cache_key(credential)
        stale: List[BaseProvider] = []
        async with self._lock:
            provider = self._providers.get(key)
            if provider is None:
                stale = self._pop_credential(credential.id)
                provider = self.create(credential)
                self._providers[key] = provider
                logger.debug(f"[PROVIDER] Cliente criado para {credential.name} ({credential.provider.value})")
        await self._close_all(stale)
        return provider

    async def evict(self, credential_id: str) -> Optional[int]:
        """Fecha e remove os clientes de uma credencial (ex.: após desativação)."""
        async with self._lock:
            providers = self._pop_credential(credential_id)
        await self._close_all(providers)
        return len(providers)

    async def close(self) -> None:
        async with self._lock:
            providers = list(self._providers.values())
            self._providers.clear()
        await self._close_all(providers)
        logger.info(f"🔌 [PROVIDER] {len(providers)} clientes fechados")
