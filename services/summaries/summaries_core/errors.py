from __future__ import annotations

GENERATION_FAILED_MESSAGE = "Generation failed. Please try again."


class SummaryError(Exception):
    default_detail = "Request failed"
    default_status = 400

    def __init__(self, detail: str | None = None, status_code: int | None = None) -> None:
        detail = detail or self.default_detail
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code or self.default_status


class EmptyInput(SummaryError):
    default_detail = "Text is required"


class MissingSource(SummaryError):
    default_detail = "At least one of listingId, text, or url is required"


class AmbiguousSource(SummaryError):
    default_detail = "Provide exactly one of listingId, text, or url"


class FetchFailed(SummaryError):
    default_detail = "Could not fetch URL"


class InvalidComparisonSize(SummaryError):
    default_detail = "Exactly 2 or 3 listing IDs are required"


class ListingNotFound(SummaryError):
    default_detail = "Listing not found"
    default_status = 404


class SummaryNotFound(SummaryError):
    default_detail = "Summary not found"
    default_status = 404


class InvalidRequester(SummaryError):
    default_detail = "Invalid user"
    default_status = 401


class GenerationFailed(SummaryError):
    default_detail = GENERATION_FAILED_MESSAGE
    default_status = 500


class GenerationNotConfigured(SummaryError):
    default_detail = "AI summarization is not configured"
    default_status = 503


class RateLimited(SummaryError):
    default_detail = "Too many requests. Please try again later."
    default_status = 429

    def __init__(self, retry_after_s: int) -> None:
        super().__init__()
        self.retry_after_s = retry_after_s
