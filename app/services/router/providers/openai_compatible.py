"""
Provider para APIs compatíveis com OpenAI (OpenAI, DeepSeek, OpenRouter, Ollama).

Usa o SDK oficial (AsyncOpenAI) com max_retries=0: retry é decisão do
orquestrador, que troca de credencial em vez de insistir na mesma.
"""

import asyncio
import logging
from typing import List, Optional

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
)

from ..errors import ProviderError, ProviderTimeoutError, ServerError
from ..models import ProviderResponse, ProviderType, SelectionOptions, TokenUsage
from .base import BaseProvider, classify_http_error, parse_retry_after

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = {
    ProviderType.OPENAI: "https://api.openai.com/v1",
    ProviderType.DEEPSEEK: "https://api.deepseek.com",
    ProviderType.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderType.OLLAMA: "http://localhost:11434/v1",
}


class OpenAICompatibleProvider(BaseProvider):
    """Chat Completions via AsyncOpenAI."""

    name = "openai-compatible"

    def __init__(self, credential, timeout: float = 60.0, client: AsyncOpenAI = None):
        super().__init__(credential, timeout)
        self.default_base_url = DEFAULT_BASE_URLS.get(credential.provider, DEFAULT_BASE_URLS[ProviderType.OPENAI])
        self._client = client or AsyncOpenAI(
            # Ollama aceita qualquer chave, mas o SDK exige uma string não vazia
            api_key=credential.api_key or "ollama",
            base_url=self.base_url,
            timeout=timeout,
            max_retries=0,
        )

    @staticmethod
    def build_messages(prompt: str, system_prompt: Optional[str] = None) -> List[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _translate_error(self, error: Exception) -> ProviderError:
        if isinstance(error, (APITimeoutError, asyncio.TimeoutError)):
            return ProviderTimeoutError(f"{self.credential.provider.value} timeout")
        if isinstance(error, APIStatusError):
            headers = error.response.headers if error.response is not None else None
            message = getattr(error, "message", "") or str(error)
            code = getattr(error, "code", None)
            return classify_http_error(
                error.status_code,
                message,
                provider_code=str(code) if code else None,
                retry_after_ms=parse_retry_after(headers, message),
            )
        if isinstance(error, APIConnectionError):
            return ServerError(f"Falha de conexão com {self.credential.provider.value}")
        # APIResponseValidationError e afins: corpo que o SDK não conseguiu interpretar
        return ServerError(f"{type(error).__name__}: {error}")

    async def generate_response(
        self,
        prompt: str,
        model: str,
        options: Optional[SelectionOptions] = None,
    ) -> ProviderResponse:
        options = options or SelectionOptions()
        timeout = options.timeout or self.timeout

        request_params = {
            "model": model,
            "messages": self.build_messages(prompt, options.system_prompt),
            "temperature": options.temperature,
            "max_tokens": options.max_output_tokens,
            "timeout": timeout,
        }

        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**request_params),
                timeout=timeout,
            )
        except (APIError, asyncio.TimeoutError) as e:
            raise self._translate_error(e) from e

        # Sem validação estrita o SDK devolve o texto cru quando o corpo não é JSON
        try:
            content = response.choices[0].message.content if response.choices else None
            model_name = response.model
            raw_usage = response.usage
        except (AttributeError, IndexError, TypeError) as e:
            raise ServerError(
                f"{self.credential.provider.value} retornou resposta ilegível ({type(response).__name__})"
            ) from e

        if not content:
            raise ServerError(f"{self.credential.provider.value} retornou resposta vazia")

        usage = TokenUsage()
        if raw_usage is not None:
            usage = TokenUsage(
                prompt_tokens=raw_usage.prompt_tokens or 0,
                completion_tokens=raw_usage.completion_tokens or 0,
            )

        return ProviderResponse(
            content=content.strip(),
            usage=usage,
            model=model_name or model,
            raw=response,
        )

    async def list_models(self) -> List[str]:
        try:
            page = await self._client.models.list()
        except APIError as e:
            raise self._translate_error(e) from e
        try:
            return sorted(m.id for m in page.data)
        except (AttributeError, TypeError) as e:
            raise ServerError(f"{self.credential.provider.value} retornou lista de modelos ilegível") from e

    async def close(self) -> None:
        await self._client.close()
