from .cache import InMemoryResultCache, ResultCache, hash_input_text
from .config import SummaryConfig
from .directories import (
    InMemoryListingDirectory,
    InMemoryProfileDirectory,
    ListingDirectory,
    ProfileDirectory,
)
from .errors import SummaryError
from .generation import GenerationEngine, GenerationStream
from .resolver import InputResolver, PageFetcher
from .service import PreparedGeneration, StreamingGeneration, SummaryService

__all__ = [
    "SummaryError",
    "SummaryConfig",
    "ResultCache",
    "InMemoryResultCache",
    "hash_input_text",
    "ListingDirectory",
    "ProfileDirectory",
    "InMemoryListingDirectory",
    "InMemoryProfileDirectory",
    "InputResolver",
    "PageFetcher",
    "GenerationEngine",
    "GenerationStream",
    "SummaryService",
    "PreparedGeneration",
    "StreamingGeneration",
]
