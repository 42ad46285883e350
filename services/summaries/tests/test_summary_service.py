from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

import pytest

from libs.core.llm_provider import LLMProvider, LLMResponse
from libs.core.models import (
    CandidateContext,
    ComparisonRequest,
    GeneratedComparison,
    GenerationKind,
    Listing,
    ListingMatch,
    SummaryRequest,
)
from libs.core.retry import RetryPolicy
from services.summaries.summaries_core.cache import InMemoryResultCache, hash_input_text
from services.summaries.summaries_core.directories import (
    InMemoryListingDirectory,
    InMemoryProfileDirectory,
)
from services.summaries.summaries_core.errors import (
    GenerationNotConfigured,
    InvalidComparisonSize,
    InvalidRequester,
    ListingNotFound,
    SummaryNotFound,
)
from services.summaries.summaries_core.generation import GenerationEngine
from services.summaries.summaries_core.resolver import InputResolver
from services.summaries.summaries_core.service import SummaryService, sanitize_comparison

_SUMMARY = {"tldr": "Builds data pipelines.", "requirements": ["Python"]}
_COMPARISON = {
    "summary": "Both roles build backend systems.",
    "similarities": ["Python", "APIs", "Remote"],
    "differences": ["Seniority", "Domain", "Pay"],
    "recommendedListingId": "L2",
    "recommendationReason": "Your SQL background fits L2.",
}


class _CountingProvider(LLMProvider):
    def __init__(self, content: Dict[str, Any]) -> None:
        self.content = json.dumps(content)
        self.prompts: list[str] = []

    async def generate(self, prompt, *, schema=None, schema_name="output", model=None) -> LLMResponse:
        self.prompts.append(prompt)
        return LLMResponse(content=self.content)

    async def stream(self, prompt, *, schema=None, schema_name="output", model=None) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for start in range(0, len(self.content), 10):
            yield self.content[start : start + 10]


class _FailingStoreCache(InMemoryResultCache):
    async def store(self, *args: Any, **kwargs: Any):
        raise RuntimeError("database is locked")


class _NoFetch:
    async def fetch(self, url: str, timeout_s: float) -> str:
        raise AssertionError("no remote fetch expected")


def _listings() -> InMemoryListingDirectory:
    return InMemoryListingDirectory(
        [
            Listing(id="L1", title="Data Engineer", company="Acme", description="Pipelines in Python."),
            Listing(id="L2", title="Analytics Engineer", company="Beta", description="SQL and dbt."),
            Listing(id="L3", title="Backend Engineer", company="Gamma", description="APIs in Go."),
            Listing(id="L4", title="Platform Engineer", company="Delta", description="Kubernetes."),
        ]
    )


def _service(
    content: Optional[Dict[str, Any]] = None,
    *,
    configured: bool = True,
    cache: Optional[InMemoryResultCache] = None,
    profiles: Optional[InMemoryProfileDirectory] = None,
) -> tuple[SummaryService, _CountingProvider]:
    provider = _CountingProvider(content or _SUMMARY)
    engine = GenerationEngine(provider, policy=RetryPolicy(max_attempts=1)) if configured else None
    service = SummaryService(
        resolver=InputResolver(_listings(), _NoFetch()),
        cache=cache or InMemoryResultCache(),
        profiles=profiles or InMemoryProfileDirectory(),
        engine=engine,
        cache_ttl_s=3600,
    )
    return service, provider


async def _summarize(service: SummaryService, requester_id: str, request: SummaryRequest):
    prepared = await service.prepare_summary(requester_id, request)
    return await service.generate(prepared)


def test_repeated_summary_request_is_served_from_cache() -> None:
    service, provider = _service()

    async def run() -> tuple:
        first = await _summarize(service, "user-1", SummaryRequest(listing_id="L1"))
        second = await _summarize(service, "user-1", SummaryRequest(listing_id="L1"))
        return first, second

    first, second = asyncio.run(run())

    assert len(provider.prompts) == 1
    assert first.id == second.id
    assert first.payload == {"tldr": "Builds data pipelines.", "requirements": ["Python"]}
    assert first.cache_key == hash_input_text("Data Engineer Acme Pipelines in Python.")


def test_force_regenerate_bypasses_cache_and_stores_newest() -> None:
    service, provider = _service()

    async def run() -> tuple:
        first = await _summarize(service, "user-1", SummaryRequest(text="Python role"))
        forced = await _summarize(service, "user-1", SummaryRequest(text="Python role", force_regenerate=True))
        again = await _summarize(service, "user-1", SummaryRequest(text="Python role"))
        return first, forced, again

    first, forced, again = asyncio.run(run())

    assert len(provider.prompts) == 2
    assert forced.id != first.id
    assert again.id == forced.id


def test_cache_is_isolated_per_requester() -> None:
    service, provider = _service()

    async def run() -> tuple:
        mine = await _summarize(service, "user-1", SummaryRequest(text="Python role"))
        theirs = await _summarize(service, "user-2", SummaryRequest(text="Python role"))
        return mine, theirs

    mine, theirs = asyncio.run(run())

    assert len(provider.prompts) == 2
    assert mine.id != theirs.id
    with pytest.raises(SummaryNotFound):
        asyncio.run(service.get_summary("user-2", mine.id))


def test_unconfigured_engine_and_blank_requester_are_rejected() -> None:
    service, _ = _service(configured=False)

    with pytest.raises(GenerationNotConfigured):
        asyncio.run(service.prepare_summary("user-1", SummaryRequest(text="x")))
    with pytest.raises(InvalidRequester):
        asyncio.run(service.prepare_summary("  ", SummaryRequest(text="x")))


def test_candidate_profile_shapes_summary_prompt() -> None:
    profiles = InMemoryProfileDirectory({"user-1": CandidateContext(skills=["Python", "SQL"])})
    service, provider = _service(profiles=profiles)

    asyncio.run(_summarize(service, "user-1", SummaryRequest(text="Python role")))
    asyncio.run(_summarize(service, "user-2", SummaryRequest(text="Python role")))

    assert "matchAssessment" in provider.prompts[0]
    assert "matchAssessment" not in provider.prompts[1]


@pytest.mark.parametrize(
    "listing_ids",
    [["L1"], ["L1", "L2", "L3", "L4"], ["L1", "L1"], ["L1", " "], []],
)
def test_comparison_size_is_checked_before_any_model_call(listing_ids: list[str]) -> None:
    service, provider = _service(_COMPARISON)

    with pytest.raises(InvalidComparisonSize) as excinfo:
        asyncio.run(service.prepare_comparison("user-1", ComparisonRequest(listing_ids=listing_ids)))

    assert excinfo.value.detail == "Exactly 2 or 3 listing IDs are required"
    assert provider.prompts == []


def test_comparison_with_unknown_listing_is_not_found() -> None:
    service, provider = _service(_COMPARISON)

    with pytest.raises(ListingNotFound):
        asyncio.run(service.prepare_comparison("user-1", ComparisonRequest(listing_ids=["L1", "L9"])))
    assert provider.prompts == []


def test_comparison_cache_ignores_listing_order() -> None:
    service, provider = _service(_COMPARISON)

    async def run() -> tuple:
        first = await service.generate(
            await service.prepare_comparison("user-1", ComparisonRequest(listing_ids=["L1", "L2"]))
        )
        second = await service.generate(
            await service.prepare_comparison("user-1", ComparisonRequest(listing_ids=["L2", "L1"]))
        )
        return first, second

    first, second = asyncio.run(run())

    assert len(provider.prompts) == 1
    assert first.id == second.id
    assert first.kind == GenerationKind.comparison
    assert first.source_key == "L1,L2"
    assert first.payload["recommendedListingId"] == "L2"


def test_comparison_drops_recommendation_outside_listing_set() -> None:
    content = dict(_COMPARISON, recommendedListingId="2")
    service, _ = _service(content)

    record = asyncio.run(
        service.generate(
            asyncio.run(service.prepare_comparison("user-1", ComparisonRequest(listing_ids=["L1", "L2"])))
        )
    )

    assert "recommendedListingId" not in record.payload
    assert "recommendationReason" not in record.payload
    assert record.payload["summary"] == _COMPARISON["summary"]


def test_sanitize_comparison_filters_listing_matches() -> None:
    comparison = GeneratedComparison(
        summary="s",
        similarities=[],
        differences=[],
        per_listing_match=[
            ListingMatch(listing_id="L1", match_score=80),
            ListingMatch(listing_id="L7", match_score=20),
            ListingMatch(listing_id="L1", match_score=10),
        ],
        recommended_listing_id=" L1 ",
        recommendation_reason="Best fit for you.",
    )

    cleaned = sanitize_comparison(comparison, ["L1", "L2"])

    assert [match.listing_id for match in cleaned.per_listing_match] == ["L1"]
    assert cleaned.per_listing_match[0].match_score == 80
    assert cleaned.recommended_listing_id == "L1"
    assert cleaned.recommendation_reason == "Best fit for you."


def test_streamed_summary_is_persisted_under_announced_id() -> None:
    service, provider = _service()

    async def run() -> tuple:
        prepared = await service.prepare_summary("user-1", SummaryRequest(listing_id="L1"))
        streaming = service.stream(prepared)
        lines = [json.loads(line) async for line in streaming.body()]
        record = await streaming.persist()
        cached = await service.prepare_summary("user-1", SummaryRequest(listing_id="L1"))
        listing_summary = await service.get_summary_for_listing("user-1", "L1")
        return lines, record, cached, listing_summary

    lines, record, cached, listing_summary = asyncio.run(run())

    complete = lines[-1]
    assert complete["_complete"] is True
    assert complete["tldr"] == "Builds data pipelines."
    assert all("_complete" not in line for line in lines[:-1])
    assert record is not None and record.id == complete["id"]
    assert cached.cached is not None and cached.cached.id == complete["id"]
    assert listing_summary["id"] == complete["id"]
    assert len(provider.prompts) == 1


def test_stream_persistence_failure_is_not_raised() -> None:
    service, _ = _service(cache=_FailingStoreCache())

    async def run() -> tuple:
        prepared = await service.prepare_summary("user-1", SummaryRequest(text="Python role"))
        streaming = service.stream(prepared)
        lines = [json.loads(line) async for line in streaming.body()]
        return lines, await streaming.persist()

    lines, record = asyncio.run(run())

    assert lines[-1]["_complete"] is True
    assert record is None


def test_read_and_delete_are_owner_scoped() -> None:
    service, _ = _service()
    record = asyncio.run(_summarize(service, "user-1", SummaryRequest(text="Python role")))

    assert asyncio.run(service.get_summary("user-1", record.id))["id"] == record.id
    assert asyncio.run(service.get_summary_for_listing("user-1", "L1")) is None
    with pytest.raises(SummaryNotFound):
        asyncio.run(service.delete_summary("user-2", record.id))
    asyncio.run(service.delete_summary("user-1", record.id))
    with pytest.raises(SummaryNotFound):
        asyncio.run(service.get_summary("user-1", record.id))
