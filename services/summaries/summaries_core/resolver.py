from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import httpx
from bs4 import BeautifulSoup

from libs.core import logging as core_logging
from libs.core.models import Listing, ResolvedInput, SummaryRequest

from .directories import ListingDirectory
from .errors import AmbiguousSource, EmptyInput, FetchFailed, ListingNotFound, MissingSource

MAX_INPUT_CHARS = 30000
NO_TEXT_PLACEHOLDER = "No text content found."
USER_AGENT = "JobSummaryBot/1.0"
_STRIPPED_ELEMENTS = ["script", "style", "noscript", "template"]

LOGGER = core_logging.get_logger("summaries")


@dataclass(frozen=True)
class TextSource:
    text: str


@dataclass(frozen=True)
class UrlSource:
    url: str


@dataclass(frozen=True)
class ListingSource:
    listing_id: str


GenerationSource = Union[TextSource, UrlSource, ListingSource]


def source_from_request(request: SummaryRequest) -> GenerationSource:
    sources: List[GenerationSource] = []
    if request.text is not None:
        sources.append(TextSource(request.text))
    if request.url is not None and request.url.strip():
        sources.append(UrlSource(request.url.strip()))
    if request.listing_id is not None and request.listing_id.strip():
        sources.append(ListingSource(request.listing_id.strip()))
    if not sources:
        raise MissingSource()
    if len(sources) > 1:
        raise AmbiguousSource()
    return sources[0]


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    for element in soup(_STRIPPED_ELEMENTS):
        element.decompose()
    return collapse_whitespace(soup.get_text(" "))[:MAX_INPUT_CHARS]


def normalize_text(raw: str) -> str:
    if "<" in raw and ">" in raw:
        return html_to_text(raw)
    return collapse_whitespace(raw)[:MAX_INPUT_CHARS]


class PageFetchError(Exception):
    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"GET {url} returned {status_code}")
        self.status_code = status_code


class PageFetcher:
    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client

    async def fetch(self, url: str, timeout_s: float) -> str:
        if self._client is not None:
            return await self._get(self._client, url, timeout_s)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            return await self._get(client, url, timeout_s)

    async def _get(self, client: httpx.AsyncClient, url: str, timeout_s: float) -> str:
        response = await client.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout_s,
            follow_redirects=True,
        )
        if not response.is_success:
            raise PageFetchError(url, response.status_code)
        return response.text


def _is_http_url(url: str) -> bool:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError):
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.host)


class InputResolver:
    def __init__(
        self,
        listings: ListingDirectory,
        fetcher: Optional[PageFetcher] = None,
        *,
        fetch_timeout_s: float = 10.0,
    ) -> None:
        self.listings = listings
        self.fetcher = fetcher or PageFetcher()
        self.fetch_timeout_s = fetch_timeout_s

    async def resolve(self, source: GenerationSource) -> ResolvedInput:
        if isinstance(source, TextSource):
            text = normalize_text(source.text)
            if not text:
                raise EmptyInput()
            return ResolvedInput(text=text)
        if isinstance(source, ListingSource):
            return await self._resolve_listing(source.listing_id)
        if isinstance(source, UrlSource):
            return await self._resolve_url(source.url)
        raise MissingSource()

    async def get_listings(self, listing_ids: Sequence[str]) -> List[Listing]:
        found = await asyncio.gather(*(self.listings.get(listing_id) for listing_id in listing_ids))
        listings: List[Listing] = []
        for listing_id, listing in zip(listing_ids, found):
            if listing is None:
                LOGGER.info("listing_not_found", listing_id=listing_id)
                raise ListingNotFound()
            listings.append(listing)
        return listings

    async def _resolve_listing(self, listing_id: str) -> ResolvedInput:
        listing = await self.listings.get(listing_id)
        if listing is None:
            raise ListingNotFound()
        parts = [part for part in (listing.title, listing.company, listing.description) if part]
        fallback = normalize_text("\n\n".join(parts) or listing.title)
        resolved = ResolvedInput(
            text=fallback,
            source_is_remote_page=False,
            job_title=listing.title or None,
            employer=listing.company or None,
            listing_id=listing.id,
        )
        source_url = (listing.source_url or "").strip()
        if not source_url or not _is_http_url(source_url):
            return resolved

        try:
            html = await asyncio.wait_for(
                self.fetcher.fetch(source_url, self.fetch_timeout_s),
                timeout=self.fetch_timeout_s,
            )
        except (httpx.HTTPError, PageFetchError, asyncio.TimeoutError) as exc:
            LOGGER.warning(
                "listing_page_fetch_failed",
                listing_id=listing.id,
                error_type=exc.__class__.__name__,
                error=str(exc)[:200],
            )
            return resolved
        extracted = html_to_text(html)
        if not extracted:
            LOGGER.info("listing_page_empty", listing_id=listing.id)
            return resolved
        return resolved.model_copy(update={"text": extracted, "source_is_remote_page": True})

    async def _resolve_url(self, url: str) -> ResolvedInput:
        if not _is_http_url(url):
            raise FetchFailed()
        try:
            html = await asyncio.wait_for(
                self.fetcher.fetch(url, self.fetch_timeout_s),
                timeout=self.fetch_timeout_s,
            )
        except (httpx.HTTPError, PageFetchError, asyncio.TimeoutError) as exc:
            LOGGER.info("url_fetch_failed", error_type=exc.__class__.__name__)
            raise FetchFailed() from exc
        return ResolvedInput(text=html_to_text(html) or NO_TEXT_PLACEHOLDER, source_is_remote_page=True)
