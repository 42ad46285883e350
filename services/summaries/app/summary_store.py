from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from libs.core.models import CacheRecord, CandidateContext, GenerationKind, Listing
from services.summaries.summaries_core.cache import ResultCache, new_record_id, utcnow
from services.summaries.summaries_core.directories import ListingDirectory, ProfileDirectory

from .models import GenerationCacheRecord, ListingRecord, UserProfileRecord


class SqlResultCache(ResultCache):
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def lookup(
        self, requester_id: str, cache_key: str, kind: GenerationKind, ttl_s: int
    ) -> Optional[CacheRecord]:
        stmt = (
            select(GenerationCacheRecord)
            .where(
                GenerationCacheRecord.requester_id == requester_id,
                GenerationCacheRecord.cache_key == cache_key,
                GenerationCacheRecord.kind == kind.value,
                GenerationCacheRecord.updated_at >= utcnow() - timedelta(seconds=ttl_s),
            )
            .order_by(GenerationCacheRecord.updated_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            record = (await session.execute(stmt)).scalars().first()
        return _to_cache_record(record) if record is not None else None

    async def store(
        self,
        requester_id: str,
        cache_key: str,
        kind: GenerationKind,
        payload: Dict[str, Any],
        *,
        source_key: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> CacheRecord:
        now = utcnow()
        record = GenerationCacheRecord(
            id=record_id or new_record_id(),
            requester_id=requester_id,
            cache_key=cache_key,
            kind=kind.value,
            source_key=source_key,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(record)
            await session.commit()
        return _to_cache_record(record)

    async def latest_for_source(
        self, requester_id: str, kind: GenerationKind, source_key: str, ttl_s: int
    ) -> Optional[CacheRecord]:
        stmt = (
            select(GenerationCacheRecord)
            .where(
                GenerationCacheRecord.requester_id == requester_id,
                GenerationCacheRecord.kind == kind.value,
                GenerationCacheRecord.source_key == source_key,
                GenerationCacheRecord.updated_at >= utcnow() - timedelta(seconds=ttl_s),
            )
            .order_by(GenerationCacheRecord.updated_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            record = (await session.execute(stmt)).scalars().first()
        return _to_cache_record(record) if record is not None else None

    async def get(self, requester_id: str, record_id: str) -> Optional[CacheRecord]:
        stmt = select(GenerationCacheRecord).where(
            GenerationCacheRecord.id == record_id,
            GenerationCacheRecord.requester_id == requester_id,
        )
        async with self._session_factory() as session:
            record = (await session.execute(stmt)).scalars().first()
        return _to_cache_record(record) if record is not None else None

    async def delete(self, requester_id: str, record_id: str) -> bool:
        stmt = delete(GenerationCacheRecord).where(
            GenerationCacheRecord.id == record_id,
            GenerationCacheRecord.requester_id == requester_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)


class SqlListingDirectory(ListingDirectory):
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get(self, listing_id: str) -> Optional[Listing]:
        async with self._session_factory() as session:
            record = await session.get(ListingRecord, listing_id)
        if record is None:
            return None
        return Listing(
            id=record.id,
            title=record.title,
            company=record.company or "",
            description=record.description,
            source_url=record.source_url,
            location=record.location,
        )


class SqlProfileDirectory(ProfileDirectory):
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get(self, requester_id: str) -> Optional[CandidateContext]:
        async with self._session_factory() as session:
            record = await session.get(UserProfileRecord, requester_id)
        if record is None:
            return None
        return CandidateContext(
            skills=list(record.skills or []),
            current_role=record.current_role,
            years_of_experience=record.years_of_experience,
        )


def _to_cache_record(record: GenerationCacheRecord) -> CacheRecord:
    return CacheRecord(
        id=record.id,
        requester_id=record.requester_id,
        cache_key=record.cache_key,
        kind=GenerationKind(record.kind),
        source_key=record.source_key,
        payload=record.payload or {},
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
