from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Type

from pydantic import BaseModel

from libs.core import logging as core_logging, prompts
from libs.core.models import (
    CacheRecord,
    CandidateContext,
    ComparisonRequest,
    GeneratedComparison,
    GeneratedSummary,
    GenerationKind,
    SummaryRequest,
)
from libs.core.ndjson import encode_ndjson_stream

from .cache import ResultCache, hash_input_text, new_record_id
from .directories import ProfileDirectory
from .errors import (
    GENERATION_FAILED_MESSAGE,
    GenerationNotConfigured,
    InvalidComparisonSize,
    InvalidRequester,
    SummaryError,
    SummaryNotFound,
)
from .generation import GenerationEngine, GenerationStream
from .resolver import InputResolver, source_from_request

LOGGER = core_logging.get_logger("summaries")

_OUTPUT_MODELS: Dict[GenerationKind, Type[BaseModel]] = {
    GenerationKind.summary: GeneratedSummary,
    GenerationKind.comparison: GeneratedComparison,
}


@dataclass
class PreparedGeneration:
    kind: GenerationKind
    requester_id: str
    cache_key: str
    source_key: Optional[str] = None
    prompt: str = ""
    cached: Optional[CacheRecord] = None
    listing_ids: List[str] = field(default_factory=list)
    record_id: str = field(default_factory=new_record_id)


def safe_error_message(exc: BaseException) -> str:
    if isinstance(exc, SummaryError):
        return exc.detail
    return GENERATION_FAILED_MESSAGE


def require_requester(requester_id: Optional[str]) -> str:
    normalized = (requester_id or "").strip()
    if not normalized:
        raise InvalidRequester()
    return normalized


def validate_comparison_ids(listing_ids: List[str]) -> List[str]:
    normalized = [listing_id.strip() for listing_id in listing_ids]
    if any(not listing_id for listing_id in normalized):
        raise InvalidComparisonSize()
    if len(set(normalized)) != len(normalized) or not 2 <= len(normalized) <= 3:
        raise InvalidComparisonSize()
    return normalized


def sanitize_comparison(comparison: GeneratedComparison, listing_ids: List[str]) -> GeneratedComparison:
    valid = set(listing_ids)
    updates: Dict[str, Any] = {}
    recommended = comparison.recommended_listing_id
    if recommended is not None:
        if recommended.strip() in valid:
            updates["recommended_listing_id"] = recommended.strip()
        else:
            LOGGER.warning(
                "comparison_recommendation_invalid",
                recommended_listing_id=recommended,
                listing_ids=listing_ids,
            )
            updates["recommended_listing_id"] = None
            updates["recommendation_reason"] = None
    if comparison.per_listing_match is not None:
        seen: set[str] = set()
        kept = []
        for match in comparison.per_listing_match:
            if match.listing_id in valid and match.listing_id not in seen:
                seen.add(match.listing_id)
                kept.append(match)
        if len(kept) != len(comparison.per_listing_match):
            LOGGER.warning("comparison_listing_match_dropped", dropped=len(comparison.per_listing_match) - len(kept))
        updates["per_listing_match"] = kept
    return comparison.model_copy(update=updates)


class StreamingGeneration:
    def __init__(
        self,
        service: "SummaryService",
        prepared: PreparedGeneration,
        stream: GenerationStream[Any],
    ) -> None:
        self._service = service
        self._prepared = prepared
        self._stream = stream
        self.payload: Optional[Dict[str, Any]] = None

    async def _final(self) -> Dict[str, Any]:
        result = await self._stream.final()
        self.payload = self._service.finalize(self._prepared, result)
        return self.payload

    def body(self) -> AsyncIterator[bytes]:
        return encode_ndjson_stream(
            self._stream.partial_objects(),
            self._final,
            extra={"id": self._prepared.record_id, "cacheKey": self._prepared.cache_key},
            safe_message=safe_error_message,
        )

    async def persist(self) -> Optional[CacheRecord]:
        if self.payload is None:
            self._stream.cancel()
            return None
        return await self._service.persist(self._prepared, self.payload)


class SummaryService:
    def __init__(
        self,
        *,
        resolver: InputResolver,
        cache: ResultCache,
        profiles: ProfileDirectory,
        engine: Optional[GenerationEngine],
        cache_ttl_s: int,
    ) -> None:
        self.resolver = resolver
        self.cache = cache
        self.profiles = profiles
        self.engine = engine
        self.cache_ttl_s = cache_ttl_s

    @property
    def configured(self) -> bool:
        return self.engine is not None

    def _require_engine(self) -> GenerationEngine:
        if self.engine is None:
            raise GenerationNotConfigured()
        return self.engine

    async def _candidate(self, requester_id: str) -> Optional[CandidateContext]:
        profile = await self.profiles.get(requester_id)
        if profile is None or not profile.has_skills:
            return None
        return profile

    async def _lookup(self, prepared: PreparedGeneration, force_regenerate: bool) -> Optional[CacheRecord]:
        if force_regenerate:
            LOGGER.info("generation_cache_bypassed", kind=prepared.kind.value)
            return None
        cached = await self.cache.lookup(
            prepared.requester_id, prepared.cache_key, prepared.kind, self.cache_ttl_s
        )
        LOGGER.info(
            "generation_cache_lookup",
            kind=prepared.kind.value,
            hit=cached is not None,
            cache_key=prepared.cache_key,
        )
        return cached

    async def prepare_summary(self, requester_id: str, request: SummaryRequest) -> PreparedGeneration:
        requester_id = require_requester(requester_id)
        self._require_engine()
        source = source_from_request(request)
        resolved = await self.resolver.resolve(source)
        prepared = PreparedGeneration(
            kind=GenerationKind.summary,
            requester_id=requester_id,
            cache_key=hash_input_text(resolved.text),
            source_key=resolved.listing_id,
        )
        prepared.cached = await self._lookup(prepared, request.force_regenerate)
        if prepared.cached is not None:
            return prepared
        candidate = await self._candidate(requester_id)
        prepared.prompt = prompts.summary_prompt(resolved, candidate)
        return prepared

    async def prepare_comparison(
        self, requester_id: str, request: ComparisonRequest
    ) -> PreparedGeneration:
        requester_id = require_requester(requester_id)
        listing_ids = validate_comparison_ids(request.listing_ids)
        self._require_engine()
        listings = await self.resolver.get_listings(listing_ids)
        # Same listing set in any order shares one cache entry.
        canonical = sorted(listings, key=lambda listing: listing.id)
        canonical_text = "\n\n".join(
            prompts.listing_block(index + 1, listing) for index, listing in enumerate(canonical)
        )
        prepared = PreparedGeneration(
            kind=GenerationKind.comparison,
            requester_id=requester_id,
            cache_key=hash_input_text(canonical_text),
            source_key=",".join(listing.id for listing in canonical),
            listing_ids=listing_ids,
        )
        prepared.cached = await self._lookup(prepared, request.force_regenerate)
        if prepared.cached is not None:
            return prepared
        candidate = await self._candidate(requester_id)
        prepared.prompt = prompts.comparison_prompt(listings, candidate)
        return prepared

    def finalize(self, prepared: PreparedGeneration, result: BaseModel) -> Dict[str, Any]:
        if isinstance(result, GeneratedComparison):
            result = sanitize_comparison(result, prepared.listing_ids)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def generate(self, prepared: PreparedGeneration) -> CacheRecord:
        if prepared.cached is not None:
            return prepared.cached
        engine = self._require_engine()
        result = await engine.generate(prepared.prompt, _OUTPUT_MODELS[prepared.kind])
        payload = self.finalize(prepared, result)
        return await self.cache.store(
            prepared.requester_id,
            prepared.cache_key,
            prepared.kind,
            payload,
            source_key=prepared.source_key,
            record_id=prepared.record_id,
        )

    def stream(self, prepared: PreparedGeneration) -> StreamingGeneration:
        engine = self._require_engine()
        generation = engine.generate_stream(prepared.prompt, _OUTPUT_MODELS[prepared.kind])
        return StreamingGeneration(self, prepared, generation)

    async def persist(self, prepared: PreparedGeneration, payload: Dict[str, Any]) -> Optional[CacheRecord]:
        try:
            record = await self.cache.store(
                prepared.requester_id,
                prepared.cache_key,
                prepared.kind,
                payload,
                source_key=prepared.source_key,
                record_id=prepared.record_id,
            )
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "generation_persist_failed",
                kind=prepared.kind.value,
                record_id=prepared.record_id,
            )
            return None
        LOGGER.info("generation_persisted", kind=prepared.kind.value, record_id=record.id)
        return record

    async def get_summary_for_listing(self, requester_id: str, listing_id: str) -> Optional[Dict[str, Any]]:
        requester_id = require_requester(requester_id)
        record = await self.cache.latest_for_source(
            requester_id, GenerationKind.summary, listing_id.strip(), self.cache_ttl_s
        )
        return record.to_response() if record is not None else None

    async def get_summary(self, requester_id: str, record_id: str) -> Dict[str, Any]:
        requester_id = require_requester(requester_id)
        record = await self.cache.get(requester_id, record_id)
        if record is None:
            raise SummaryNotFound()
        return record.to_response()

    async def delete_summary(self, requester_id: str, record_id: str) -> None:
        requester_id = require_requester(requester_id)
        if not await self.cache.delete(requester_id, record_id):
            raise SummaryNotFound()
