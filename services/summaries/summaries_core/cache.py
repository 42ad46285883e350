from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from libs.core.models import CacheRecord, GenerationKind

CACHE_KEY_LENGTH = 32


def hash_input_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_record_id() -> str:
    return uuid.uuid4().hex


class ResultCache:
    """Generated results keyed by (requester, content hash, kind).

    Records are never updated in place: every successful generation inserts a
    complete record and reads pick the newest one still inside the TTL.
    """

    async def lookup(
        self, requester_id: str, cache_key: str, kind: GenerationKind, ttl_s: int
    ) -> Optional[CacheRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def store(
        self,
        requester_id: str,
        cache_key: str,
        kind: GenerationKind,
        payload: Dict[str, Any],
        *,
        source_key: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> CacheRecord:  # pragma: no cover - interface
        raise NotImplementedError

    async def latest_for_source(
        self, requester_id: str, kind: GenerationKind, source_key: str, ttl_s: int
    ) -> Optional[CacheRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, requester_id: str, record_id: str) -> Optional[CacheRecord]:  # pragma: no cover
        raise NotImplementedError

    async def delete(self, requester_id: str, record_id: str) -> bool:  # pragma: no cover
        raise NotImplementedError


class InMemoryResultCache(ResultCache):
    """Process-local cache; entries are not shared between service instances."""

    def __init__(self) -> None:
        self._records: List[CacheRecord] = []

    def _newest(self, records: List[CacheRecord], ttl_s: int) -> Optional[CacheRecord]:
        since = utcnow() - timedelta(seconds=ttl_s)
        newest: Optional[CacheRecord] = None
        for record in records:
            # Later inserts win ties.
            if record.updated_at >= since and (newest is None or record.updated_at >= newest.updated_at):
                newest = record
        return newest

    async def lookup(
        self, requester_id: str, cache_key: str, kind: GenerationKind, ttl_s: int
    ) -> Optional[CacheRecord]:
        matches = [
            record
            for record in self._records
            if record.requester_id == requester_id
            and record.cache_key == cache_key
            and record.kind == kind
        ]
        return self._newest(matches, ttl_s)

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
        record = CacheRecord(
            id=record_id or new_record_id(),
            requester_id=requester_id,
            cache_key=cache_key,
            kind=kind,
            source_key=source_key,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )
        self._records.append(record)
        return record

    async def latest_for_source(
        self, requester_id: str, kind: GenerationKind, source_key: str, ttl_s: int
    ) -> Optional[CacheRecord]:
        matches = [
            record
            for record in self._records
            if record.requester_id == requester_id
            and record.kind == kind
            and record.source_key == source_key
        ]
        return self._newest(matches, ttl_s)

    async def get(self, requester_id: str, record_id: str) -> Optional[CacheRecord]:
        for record in self._records:
            if record.id == record_id and record.requester_id == requester_id:
                return record
        return None

    async def delete(self, requester_id: str, record_id: str) -> bool:
        before = len(self._records)
        self._records = [
            record
            for record in self._records
            if not (record.id == record_id and record.requester_id == requester_id)
        ]
        return len(self._records) < before
