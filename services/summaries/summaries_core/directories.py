from __future__ import annotations

from typing import Dict, Iterable, Optional

from libs.core.models import CandidateContext, Listing


class ListingDirectory:
    async def get(self, listing_id: str) -> Optional[Listing]:  # pragma: no cover - interface
        raise NotImplementedError


class ProfileDirectory:
    async def get(self, requester_id: str) -> Optional[CandidateContext]:  # pragma: no cover
        raise NotImplementedError


class InMemoryListingDirectory(ListingDirectory):
    def __init__(self, listings: Iterable[Listing] = ()) -> None:
        self._listings: Dict[str, Listing] = {listing.id: listing for listing in listings}

    def add(self, listing: Listing) -> None:
        self._listings[listing.id] = listing

    async def get(self, listing_id: str) -> Optional[Listing]:
        return self._listings.get(listing_id)


class InMemoryProfileDirectory(ProfileDirectory):
    def __init__(self, profiles: Optional[Dict[str, CandidateContext]] = None) -> None:
        self._profiles: Dict[str, CandidateContext] = dict(profiles or {})

    def set(self, requester_id: str, profile: CandidateContext) -> None:
        self._profiles[requester_id] = profile

    async def get(self, requester_id: str) -> Optional[CandidateContext]:
        return self._profiles.get(requester_id)
