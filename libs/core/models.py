from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class GenerationKind(str, Enum):
    summary = "summary"
    comparison = "comparison"


class MatchAssessment(ApiModel):
    match_score: float = Field(ge=0, le=100)
    matched_skills: List[str] = Field(default_factory=list)
    missing_skills: List[str] = Field(default_factory=list)


class GeneratedSummary(ApiModel):
    tldr: str
    key_responsibilities: Optional[List[str]] = None
    requirements: Optional[List[str]] = None
    nice_to_haves: Optional[List[str]] = None
    salary_range: Optional[str] = None
    match_assessment: Optional[MatchAssessment] = None
    caveats: Optional[List[str]] = None


class ListingMatch(ApiModel):
    listing_id: str
    match_score: float = Field(ge=0, le=100)
    matched_skills: List[str] = Field(default_factory=list)
    missing_skills: List[str] = Field(default_factory=list)


class GeneratedComparison(ApiModel):
    summary: str
    similarities: List[str]
    differences: List[str]
    comparison_points: Optional[List[str]] = None
    per_listing_match: Optional[List[ListingMatch]] = None
    recommended_listing_id: Optional[str] = None
    recommendation_reason: Optional[str] = None


class SummaryRequest(ApiModel):
    listing_id: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    force_regenerate: bool = False


class ComparisonRequest(ApiModel):
    listing_ids: List[str]
    force_regenerate: bool = False


class Listing(ApiModel):
    id: str
    title: str
    company: str = ""
    description: Optional[str] = None
    source_url: Optional[str] = None
    location: Optional[str] = None


class CandidateContext(ApiModel):
    skills: List[str] = Field(default_factory=list)
    current_role: Optional[str] = None
    years_of_experience: Optional[float] = None

    @property
    def has_skills(self) -> bool:
        return any(skill.strip() for skill in self.skills)


class ResolvedInput(ApiModel):
    text: str
    source_is_remote_page: bool = False
    job_title: Optional[str] = None
    employer: Optional[str] = None
    listing_id: Optional[str] = None


class CacheRecord(ApiModel):
    id: str
    requester_id: str
    cache_key: str
    kind: GenerationKind
    source_key: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    def to_response(self) -> Dict[str, Any]:
        data = dict(self.payload)
        data["id"] = self.id
        data["cacheKey"] = self.cache_key
        data["createdAt"] = self.created_at.isoformat()
        data["updatedAt"] = self.updated_at.isoformat()
        return data
