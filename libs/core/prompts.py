from __future__ import annotations

import re
from typing import Optional, Sequence

from libs.core.models import CandidateContext, Listing, ResolvedInput

MAX_PROMPT_INPUT_CHARS = 30000
MAX_LISTING_SNIPPET_CHARS = 4000

_STRICT_JSON_SUFFIX = (
    "\nSTRICT OUTPUT REQUIREMENTS:\n"
    "- Return exactly one JSON object matching the schema.\n"
    "- No markdown, no code fences, no prose.\n"
    "- Omit optional fields you cannot fill instead of inventing content.\n"
)


def _format_years(years: float) -> str:
    return str(int(years)) if float(years).is_integer() else f"{years:g}"


def _candidate_lines(candidate: CandidateContext) -> str:
    skills = [skill.strip() for skill in candidate.skills if skill.strip()]
    lines = f"- Your skills: {', '.join(skills)}.\n"
    if candidate.current_role:
        lines += f"- Your current or most recent role: {candidate.current_role}.\n"
    if candidate.years_of_experience is not None:
        lines += f"- Your years of professional experience: {_format_years(candidate.years_of_experience)}.\n"
    return lines


def _experience_rule(candidate: CandidateContext) -> str:
    if candidate.years_of_experience is None:
        return ""
    years = _format_years(candidate.years_of_experience)
    return (
        "- If the posting states a minimum number of years of experience greater than "
        f"your {years} years, add an entry such as \"N+ years of experience (you have {years})\" "
        "to missingSkills.\n"
    )


def summary_prompt(resolved: ResolvedInput, candidate: Optional[CandidateContext] = None) -> str:
    if resolved.source_is_remote_page:
        intro = (
            "You are scanning the job posting page below. The content may include page layout, "
            "navigation or cookie banners; ignore them, focus on the main job description and "
            "summarize it into a structured summary.\n"
        )
    else:
        intro = (
            "You are a job summary assistant. Summarize the following job description into a "
            "structured summary.\n"
        )
    role_lines = ""
    if resolved.job_title:
        role_lines += f"Role title: {resolved.job_title}\n"
    if resolved.employer:
        role_lines += f"Employer: {resolved.employer}\n"

    match_rules = ""
    if candidate is not None and candidate.has_skills:
        match_rules = (
            "\nCandidate context (address the candidate as \"you\"/\"your\", never in the third person):\n"
            f"{_candidate_lines(candidate)}"
            "Match assessment rules:\n"
            "- Output \"matchAssessment\" with matchScore (number 0-100), matchedSkills and missingSkills.\n"
            "- Score how relevant your skills are to this specific role and its core duties, "
            "not raw keyword overlap.\n"
            "- matchedSkills: skills from your list that are genuinely relevant to this role. "
            "Return an empty array [] when nothing matches; never omit the field.\n"
            "- missingSkills: skills or qualifications the role requires or strongly prefers that "
            "you do not list (empty array when well matched).\n"
            f"{_experience_rule(candidate)}"
        )

    return (
        f"{intro}"
        f"{role_lines}"
        "\nRules:\n"
        "- tldr: 2-3 sentences describing the role itself (what the job is and what it involves). "
        "Do not address the reader, do not use \"you\", and do not judge fit.\n"
        "- keyResponsibilities: at most 5 items, most important first.\n"
        "- requirements: at most 5 items, most important first.\n"
        "- niceToHaves: preferred but optional qualifications, if any.\n"
        "- salaryRange: only when a salary or pay range is stated explicitly in the text "
        "(e.g. \"USD 90,000 - 110,000 per year\"). Never estimate.\n"
        "- caveats: note missing or unclear information (e.g. no salary, vague seniority).\n"
        f"{match_rules}"
        f"{_STRICT_JSON_SUFFIX}"
        "\nJob description:\n"
        f"{resolved.text[:MAX_PROMPT_INPUT_CHARS]}"
    )


def _snippet(description: str) -> str:
    text = re.sub(r"<[^>]+>", " ", description or "")
    text = re.sub(r"\s+", " ", text).strip()
    return text[:MAX_LISTING_SNIPPET_CHARS]


def listing_block(index: int, listing: Listing) -> str:
    return (
        f"--- Job {index} ---\n"
        f"ID: {listing.id}\n"
        f"Title: {listing.title}\n"
        f"Company: {listing.company}\n"
        "Description:\n"
        f"{_snippet(listing.description or '')}"
    )


def comparison_prompt(
    listings: Sequence[Listing], candidate: Optional[CandidateContext] = None
) -> str:
    ids = [listing.id for listing in listings]
    ids_text = ", ".join(ids)
    blocks = "\n\n".join(listing_block(index + 1, listing) for index, listing in enumerate(listings))
    has_candidate = candidate is not None and candidate.has_skills

    candidate_rules = ""
    if has_candidate:
        assert candidate is not None
        candidate_rules = (
            "\nCandidate context (address the candidate as \"you\"/\"your\", never in the third person):\n"
            f"{_candidate_lines(candidate)}"
            "- Provide \"perListingMatch\" with exactly one entry for EVERY job above, using its ID as "
            "listingId, a matchScore (0-100) for how relevant your skills are to that specific role, "
            "matchedSkills (empty array [] when nothing matches) and missingSkills.\n"
            f"{_experience_rule(candidate)}"
            "- Recommend the job that best fits you, based on your skills and experience. "
            "Write recommendationReason in the second person (\"you\", \"your\").\n"
        )
    else:
        candidate_rules = (
            "- No candidate profile is available: recommend the job with the strongest general "
            "appeal to applicants (pay, clarity, growth, conditions).\n"
        )

    return (
        f"You are a job comparison assistant. Compare the following {len(listings)} job listings "
        "and produce a unified comparison that summarizes similarities and differences.\n\n"
        f"{blocks}\n\n"
        "Rules:\n"
        "- summary: one paragraph that synthesizes the comparison: what the roles have in common "
        "and how they differ (seniority, focus, salary, location, requirements).\n"
        "- similarities: 3-6 short points describing what is similar across these listings.\n"
        "- differences: 3-6 short points describing key differences.\n"
        "- comparisonPoints: optional 3-6 additional comparison points.\n"
        f"{candidate_rules}"
        "- Set \"recommendedListingId\" to the recommended job's ID and \"recommendationReason\" to a "
        "short explanation.\n"
        f"- The valid job IDs are: {ids_text}. recommendedListingId must be exactly one of: {ids_text}. "
        "Never use the job number or any other value.\n"
        f"{_STRICT_JSON_SUFFIX}"
    )
