"""
Testes para app/api/v2 e registro de rotas no main.py.

O lifespan não é executado: o orquestrador é substituído por um dublê
via dependency_overrides.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.api.v2.deps import get_orchestrator
from app.core.config import settings
from app.main import app
from app.services.router import BadRequestError, ExhaustedResult, GenerationResult, ProviderType
from app.services.router.models import TokenUsage

HEADERS = {"x-api-key": settings.API_ACCESS_TOKEN}


@pytest.fixture
def orchestrator_stub():
    stub = MagicMock()
    stub.select_and_execute = AsyncMock(return_value=GenerationResult(
        content="olá",
        usage=TokenUsage(prompt_tokens=10, completion_tokens=5),
        model="gemini-2.0-flash",
        provider=ProviderType.GOOGLE,
        credential_id="cred-1",
        credential_name="key-1",
        attempts=2,
    ))
    stub.get_status = AsyncMock(return_value={
        "tenant_id": None,
        "default_provider": "GOOGLE",
        "enable_failover": True,
        "config_version": 3,
        "credentials": [
            {"id": "cred-1", "name": "key-1", "provider": "GOOGLE", "cooling_down": True, "remaining_seconds": 12.5},
        ],
        "pending_usage": 1,
        "performance": {"requests_total": 4},
    })
    stub.get_models_ordered_by_priority = AsyncMock(return_value=["gemini-2.0-flash", "gpt-4o-mini"])
    return stub


@pytest.fixture
def client(orchestrator_stub):
    """Cliente de teste com o orquestrador injetado."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator_stub
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_v2_router_registrado():
    """Rotas v2 registradas no app."""
    routes = [route.path for route in app.routes]

    assert "/api/v2/generate" in routes
    assert "/api/v2/router/status" in routes
    assert "/api/v2/router/models" in routes


def test_root(client):
    response = client.get("/")
    assert response.json() == {"status": "ok", "service": "Credential Router"}


class TestGenerateEndpoint:
    """POST /api/v2/generate"""

    def test_requires_api_key(self, client):
        response = client.post("/api/v2/generate", json={"prompt": "oi"})
        assert response.status_code == 403

        response = client.post("/api/v2/generate", json={"prompt": "oi"}, headers={"x-api-key": "errada"})
        assert response.status_code == 403

    def test_success(self, client, orchestrator_stub):
        response = client.post(
            "/api/v2/generate",
            json={"tenant_id": "empresa-1", "prompt": "oi", "preferred_provider": "OPENAI", "locale": "pt"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "olá"
        assert body["provider"] == "GOOGLE"
        assert body["usage"] == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        assert body["attempts"] == 2
        assert "api_key" not in body

        args, kwargs = orchestrator_stub.select_and_execute.call_args
        assert args == ("empresa-1", "oi")
        assert kwargs["options"].preferred_provider == "OPENAI"
        assert kwargs["options"].locale == "pt"

    def test_exhausted_returns_503_with_retry_after(self, client, orchestrator_stub):
        orchestrator_stub.select_and_execute.return_value = ExhaustedResult(
            retry_after_seconds=17,
            message="All keys are temporarily unavailable - please try again shortly",
            attempts=3,
        )

        response = client.post("/api/v2/generate", json={"prompt": "oi"}, headers=HEADERS)

        assert response.status_code == 503
        assert response.headers["retry-after"] == "17"
        body = response.json()
        assert body["exhausted"] is True
        assert body["retry_after_seconds"] == 17
        assert body["attempts"] == 3

    def test_bad_request_returns_400(self, client, orchestrator_stub):
        orchestrator_stub.select_and_execute.side_effect = BadRequestError("Invalid JSON payload", http_status=400)

        response = client.post("/api/v2/generate", json={"prompt": "oi"}, headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    def test_validation_error(self, client):
        response = client.post("/api/v2/generate", json={"prompt": ""}, headers=HEADERS)
        assert response.status_code == 422

    def test_orchestrator_not_ready(self, client):
        """Sem lifespan não há orquestrador em app.state."""
        app.dependency_overrides.clear()
        response = client.post("/api/v2/generate", json={"prompt": "oi"}, headers=HEADERS)
        assert response.status_code == 503


class TestRouterStatusEndpoints:
    """GET /api/v2/router/*"""

    def test_status(self, client, orchestrator_stub):
        response = client.get("/api/v2/router/status", params={"tenant_id": "empresa-1"}, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["config_version"] == 3
        assert body["credentials"][0]["cooling_down"] is True
        orchestrator_stub.get_status.assert_awaited_once_with("empresa-1")

    def test_models(self, client, orchestrator_stub):
        response = client.get(
            "/api/v2/router/models", params={"preferred_provider": "OPENAI"}, headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["models"] == ["gemini-2.0-flash", "gpt-4o-mini"]
        orchestrator_stub.get_models_ordered_by_priority.assert_awaited_once_with(None, "OPENAI")

    def test_status_requires_api_key(self, client):
        assert client.get("/api/v2/router/status").status_code == 403
