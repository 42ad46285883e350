from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Optional

import pytest
from fastapi.testclient import TestClient

from libs.core.llm_provider import LLMProvider, LLMProviderError, LLMResponse
from libs.core.models import Listing
from libs.core.retry import RetryPolicy
from services.summaries.app import main
from services.summaries.app.auth import StaticTokenVerifier
from services.summaries.app.rate_limit import RateLimiter
from services.summaries.summaries_core import (
    GenerationEngine,
    InMemoryListingDirectory,
    InMemoryProfileDirectory,
    InMemoryResultCache,
    InputResolver,
    SummaryConfig,
    SummaryService,
)

_SUMMARY = {"tldr": "Builds data pipelines.", "keyResponsibilities": ["Own ETL"]}
_COMPARISON = {
    "summary": "Both are data roles.",
    "similarities": ["SQL"],
    "differences": ["Seniority"],
    "recommendedListingId": "L1",
    "recommendationReason": "Closer to your skills.",
}
AUTH = {"Authorization": "Bearer token-1"}


class _ScriptedProvider(LLMProvider):
    def __init__(self, content: Optional[Dict[str, Any]] = None, fail: bool = False) -> None:
        self.content = content
        self.fail = fail
        self.calls = 0

    def _render(self, schema_name: str) -> str:
        if self.fail:
            raise LLMProviderError("upstream exploded with secret detail")
        if self.content is not None:
            return json.dumps(self.content)
        return json.dumps(_COMPARISON if schema_name == "GeneratedComparison" else _SUMMARY)

    async def generate(self, prompt, *, schema=None, schema_name="output", model=None) -> LLMResponse:
        self.calls += 1
        return LLMResponse(content=self._render(schema_name))

    async def stream(self, prompt, *, schema=None, schema_name="output", model=None) -> AsyncIterator[str]:
        self.calls += 1
        text = self._render(schema_name)
        for start in range(0, len(text), 12):
            yield text[start : start + 12]


class _NoFetch:
    async def fetch(self, url: str, timeout_s: float) -> str:
        raise AssertionError("no remote fetch expected")


def _client(
    provider: Optional[LLMProvider] = None,
    *,
    configured: bool = True,
    rate_limit: int = 100,
) -> tuple[TestClient, _ScriptedProvider]:
    provider = provider or _ScriptedProvider()
    listings = InMemoryListingDirectory(
        [
            Listing(id="L1", title="Data Engineer", company="Acme", description="Pipelines."),
            Listing(id="L2", title="Analyst", company="Beta", description="Dashboards."),
        ]
    )
    service = SummaryService(
        resolver=InputResolver(listings, _NoFetch()),
        cache=InMemoryResultCache(),
        profiles=InMemoryProfileDirectory(),
        engine=GenerationEngine(provider, policy=RetryPolicy(max_attempts=1)) if configured else None,
        cache_ttl_s=3600,
    )
    verifier = StaticTokenVerifier({"token-1": "user-1", "token-2": "user-2"}, expired=["old-token"])
    app = main.create_app(
        SummaryConfig(llm_provider="mock"),
        service=service,
        verifier=verifier,
        rate_limiter=RateLimiter(rate_limit, 60.0),
    )
    return TestClient(app, raise_server_exceptions=False), provider


def _lines(response) -> list[dict]:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def test_health_reports_llm_configuration() -> None:
    client, _ = _client(configured=False)

    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "llmConfigured": False}


@pytest.mark.parametrize(
    "headers,message",
    [({}, "Unauthorized"), ({"Authorization": "Bearer nope"}, "Unauthorized"), ({"Authorization": "Bearer old-token"}, "Token expired")],
)
def test_requests_without_valid_token_are_rejected(headers: dict, message: str) -> None:
    client, provider = _client()

    response = client.post("/api/v1/summaries", json={"text": "Python role"}, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": message}
    assert provider.calls == 0


def test_malformed_body_is_invalid_body() -> None:
    client, _ = _client()

    response = client.post("/api/v1/summaries/compare", json={"listingIds": "L1"}, headers=AUTH)
    not_json = client.post(
        "/api/v1/summaries", content=b"{", headers={**AUTH, "Content-Type": "application/json"}
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Invalid body"}
    assert not_json.status_code == 400


def test_buffered_summary_returns_envelope_and_caches() -> None:
    client, provider = _client()

    first = client.post("/api/v1/summaries", json={"listingId": "L1"}, headers=AUTH)
    second = client.post("/api/v1/summaries", json={"listingId": "L1"}, headers=AUTH)

    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["data"]["tldr"] == "Builds data pipelines."
    assert body["data"]["keyResponsibilities"] == ["Own ETL"]
    assert len(body["data"]["cacheKey"]) == 32
    assert second.json()["data"]["id"] == body["data"]["id"]
    assert provider.calls == 1


def test_stream_miss_then_cached_hit_share_record_id() -> None:
    client, provider = _client()

    streamed = client.post("/api/v1/summaries/stream", json={"listingId": "L1"}, headers=AUTH)

    assert streamed.status_code == 200
    assert streamed.headers["content-type"].startswith("application/x-ndjson")
    assert streamed.headers["cache-control"] == "no-cache"
    assert streamed.headers["x-accel-buffering"] == "no"
    lines = _lines(streamed)
    assert len(lines) >= 2
    complete = lines[-1]
    assert complete["_complete"] is True
    assert complete["tldr"] == "Builds data pipelines."

    cached = client.post("/api/v1/summaries/stream", json={"listingId": "L1"}, headers=AUTH)

    assert cached.headers["content-type"].startswith("application/json")
    assert cached.json()["data"]["id"] == complete["id"]
    assert provider.calls == 1

    by_listing = client.get("/api/v1/summaries/listing/L1", headers=AUTH)
    assert by_listing.json()["data"]["id"] == complete["id"]
    other_user = client.get("/api/v1/summaries/listing/L1", headers={"Authorization": "Bearer token-2"})
    assert other_user.json() == {"success": True, "data": None}


def test_stream_failure_ends_with_generic_error_line() -> None:
    client, provider = _client(_ScriptedProvider(fail=True))

    response = client.post("/api/v1/summaries/stream", json={"text": "Python role"}, headers=AUTH)

    assert response.status_code == 200
    assert _lines(response) == [{"_error": True, "message": "Generation failed. Please try again."}]
    assert "secret" not in response.text
    retry = client.post("/api/v1/summaries/stream", json={"text": "Python role"}, headers=AUTH)
    assert retry.headers["content-type"].startswith("application/x-ndjson")
    assert provider.calls == 2


def test_buffered_failure_maps_to_500() -> None:
    client, _ = _client(_ScriptedProvider(fail=True))

    response = client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Generation failed. Please try again."}


def test_comparison_stream_and_validation_errors() -> None:
    client, provider = _client()

    too_few = client.post("/api/v1/summaries/compare/stream", json={"listingIds": ["L1"]}, headers=AUTH)
    missing = client.post("/api/v1/summaries/compare", json={"listingIds": ["L1", "L9"]}, headers=AUTH)
    streamed = client.post("/api/v1/summaries/compare/stream", json={"listingIds": ["L2", "L1"]}, headers=AUTH)

    assert too_few.status_code == 400
    assert too_few.json()["message"] == "Exactly 2 or 3 listing IDs are required"
    assert missing.status_code == 404
    assert missing.json()["message"] == "Listing not found"
    complete = _lines(streamed)[-1]
    assert complete["recommendedListingId"] == "L1"
    assert complete["_complete"] is True
    assert provider.calls == 1

    buffered = client.post("/api/v1/summaries/compare", json={"listingIds": ["L1", "L2"]}, headers=AUTH)
    assert buffered.json()["data"]["id"] == complete["id"]
    assert provider.calls == 1


def test_source_errors_map_to_client_errors() -> None:
    client, _ = _client()

    ambiguous = client.post("/api/v1/summaries", json={"text": "x", "listingId": "L1"}, headers=AUTH)
    empty = client.post("/api/v1/summaries", json={"text": "   "}, headers=AUTH)
    unknown = client.post("/api/v1/summaries", json={"listingId": "nope"}, headers=AUTH)

    assert ambiguous.status_code == 400
    assert empty.json() == {"success": False, "message": "Text is required"}
    assert unknown.status_code == 404


def test_unconfigured_generation_is_503() -> None:
    client, _ = _client(configured=False)

    response = client.post("/api/v1/summaries/stream", json={"text": "Python role"}, headers=AUTH)

    assert response.status_code == 503
    assert response.json() == {"success": False, "message": "AI summarization is not configured"}


def test_rate_limit_returns_429_with_retry_after() -> None:
    client, _ = _client(rate_limit=1)

    client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH)
    limited = client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH)
    other_user = client.post(
        "/api/v1/summaries", json={"text": "Python role"}, headers={"Authorization": "Bearer token-2"}
    )

    assert limited.status_code == 429
    assert limited.json() == {"success": False, "message": "Too many requests. Please try again later."}
    assert int(limited.headers["retry-after"]) >= 1
    assert other_user.status_code == 200


def test_get_and_delete_are_owner_scoped() -> None:
    client, _ = _client()
    created = client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH).json()["data"]
    other = {"Authorization": "Bearer token-2"}

    assert client.get(f"/api/v1/summaries/{created['id']}", headers=AUTH).json()["data"]["id"] == created["id"]
    assert client.get(f"/api/v1/summaries/{created['id']}", headers=other).status_code == 404
    assert client.delete(f"/api/v1/summaries/{created['id']}", headers=other).status_code == 404
    assert client.delete(f"/api/v1/summaries/{created['id']}", headers=AUTH).status_code == 200
    missing = client.get(f"/api/v1/summaries/{created['id']}", headers=AUTH)
    assert missing.json() == {"success": False, "message": "Summary not found"}


def test_unexpected_errors_return_generic_500(monkeypatch) -> None:
    client, _ = _client()

    async def boom(*_args, **_kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(SummaryService, "prepare_summary", boom)
    response = client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "Internal server error"}


def test_metrics_are_exposed() -> None:
    client, _ = _client()
    client.post("/api/v1/summaries", json={"text": "Python role"}, headers=AUTH)

    response = client.get("/metrics/")

    assert response.status_code == 200
    assert "summary_generations_total" in response.text
    assert "summary_cache_lookups_total" in response.text
