"""
Provider Google Gemini via REST (generateContent).

Erros do Google vêm como {"error": {"code", "message", "status", "details"}};
o tempo de espera sugerido aparece em google.rpc.RetryInfo.retryDelay.
"""

import logging
from typing import List, Optional

import httpx

from ..errors import BadRequestError, ProviderError, ProviderTimeoutError, ServerError
from ..models import ProviderResponse, SelectionOptions, TokenUsage
from .base import BaseProvider, classify_http_error, parse_duration_ms, parse_retry_after

logger = logging.getLogger(__name__)

_RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"


class GoogleProvider(BaseProvider):
    """Gemini (generativelanguage.googleapis.com)."""

    name = "google"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, credential, timeout: float = 60.0, transport: httpx.AsyncBaseTransport = None):
        super().__init__(credential, timeout)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"x-goog-api-key": credential.api_key},
            transport=transport,
        )

    @staticmethod
    def build_payload(prompt: str, options: SelectionOptions) -> dict:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_output_tokens,
            },
        }
        if options.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
        return payload

    @staticmethod
    def _json_body(response: httpx.Response) -> dict:
        """Corpo JSON de uma resposta 2xx; HTML de proxy/gateway vira ServerError."""
        try:
            body = response.json()
        except ValueError as e:
            content_type = response.headers.get("content-type", "?")
            raise ServerError(
                f"Gemini retornou corpo não-JSON ({content_type})",
                http_status=response.status_code,
            ) from e
        if not isinstance(body, dict):
            raise ServerError(
                f"Gemini retornou JSON inesperado ({type(body).__name__})",
                http_status=response.status_code,
            )
        return body

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        message = response.text
        provider_code = None
        retry_after_ms = None
        try:
            body = response.json()
            error = body.get("error", {}) if isinstance(body, dict) else {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            message = error.get("message") or message
            provider_code = error.get("status")
            for detail in error.get("details") or []:
                if detail.get("@type") == _RETRY_INFO_TYPE:
                    retry_after_ms = parse_duration_ms(detail.get("retryDelay"))
                if detail.get("reason") and provider_code is None:
                    provider_code = detail.get("reason")
        except ValueError:
            pass

        if retry_after_ms is None:
            retry_after_ms = parse_retry_after(response.headers, message)

        return classify_http_error(
            response.status_code,
            message,
            provider_code=provider_code,
            retry_after_ms=retry_after_ms,
        )

    async def generate_response(
        self,
        prompt: str,
        model: str,
        options: Optional[SelectionOptions] = None,
    ) -> ProviderResponse:
        options = options or SelectionOptions()
        timeout = options.timeout or self.timeout

        try:
            response = await self._client.post(
                f"/models/{model}:generateContent",
                json=self.build_payload(prompt, options),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Gemini timeout ({model})") from e
        except httpx.TransportError as e:
            raise ServerError(f"Falha de conexão com Gemini: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        data = self._json_body(response)

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise BadRequestError(
                f"Prompt bloqueado pelo filtro de segurança: {block_reason}",
                http_status=response.status_code,
                provider_code=block_reason,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ServerError("Gemini retornou resposta sem candidates", http_status=response.status_code)

        first = candidates[0]
        parts = (first.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts).strip()
        if not text:
            finish_reason = first.get("finishReason")
            if finish_reason == "SAFETY":
                raise BadRequestError(
                    "Resposta bloqueada pelo filtro de segurança",
                    http_status=response.status_code,
                    provider_code=finish_reason,
                )
            raise ServerError(
                f"Gemini retornou resposta vazia (finishReason={finish_reason})",
                http_status=response.status_code,
            )

        usage_meta = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=usage_meta.get("promptTokenCount", 0) or 0,
            completion_tokens=usage_meta.get("candidatesTokenCount", 0) or 0,
        )

        return ProviderResponse(
            content=text,
            usage=usage,
            model=data.get("modelVersion") or model,
            raw=data,
        )

    async def list_models(self) -> List[str]:
        try:
            response = await self._client.get("/models", params={"pageSize": 1000})
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError("Gemini timeout (list_models)") from e
        except httpx.TransportError as e:
            raise ServerError(f"Falha de conexão com Gemini: {type(e).__name__}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        names = []
        for item in self._json_body(response).get("models", []):
            name = item.get("name", "")
            if "generateContent" not in item.get("supportedGenerationMethods", ["generateContent"]):
                continue
            names.append(name.split("/", 1)[1] if name.startswith("models/") else name)
        return sorted(names)

    async def close(self) -> None:
        await self._client.aclose()
