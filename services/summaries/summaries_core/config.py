from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

_DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
_DEFAULT_OPENAI_TIMEOUT_S = 60.0
_DEFAULT_CACHE_TTL_S = 7 * 24 * 60 * 60
_DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./summaries.db"


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_optional_int(value: str | None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _float_env(name: str, default: float) -> float:
    parsed = _parse_optional_float(os.getenv(name))
    return parsed if parsed is not None and parsed >= 0 else default


def _int_env(name: str, default: int) -> int:
    parsed = _parse_optional_int(os.getenv(name))
    return parsed if parsed is not None and parsed >= 0 else default


def _parse_api_tokens(raw: str | None) -> Dict[str, str]:
    tokens: Dict[str, str] = {}
    for pair in (raw or "").split(","):
        token, sep, user_id = pair.strip().partition(":")
        if sep and token.strip() and user_id.strip():
            tokens[token.strip()] = user_id.strip()
    return tokens


@dataclass(frozen=True)
class SummaryConfig:
    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = _DEFAULT_OPENAI_MODEL
    openai_fallback_model: Optional[str] = None
    openai_base_url: str = "https://api.openai.com"
    openai_temperature: Optional[float] = None
    openai_max_output_tokens: Optional[int] = None
    openai_timeout_s: float = _DEFAULT_OPENAI_TIMEOUT_S
    generation_max_attempts: int = 3
    generation_backoff_s: float = 1.0
    cache_ttl_s: int = _DEFAULT_CACHE_TTL_S
    page_fetch_timeout_s: float = 10.0
    rate_limit: int = 20
    rate_window_s: float = 60.0
    database_url: str = _DEFAULT_DATABASE_URL
    cors_origins: List[str] = field(default_factory=list)
    api_tokens: Dict[str, str] = field(default_factory=dict)

    @property
    def llm_configured(self) -> bool:
        if self.llm_provider == "mock":
            return True
        return bool(self.openai_api_key.strip())

    @classmethod
    def from_env(cls) -> "SummaryConfig":
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower() or "openai",
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", "").strip() or _DEFAULT_OPENAI_MODEL,
            openai_fallback_model=os.getenv("OPENAI_FALLBACK_MODEL", "").strip() or None,
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com"),
            openai_temperature=_parse_optional_float(os.getenv("OPENAI_TEMPERATURE")),
            openai_max_output_tokens=_parse_optional_int(os.getenv("OPENAI_MAX_OUTPUT_TOKENS")),
            openai_timeout_s=_float_env("OPENAI_TIMEOUT_S", _DEFAULT_OPENAI_TIMEOUT_S),
            generation_max_attempts=max(1, _int_env("GENERATION_MAX_ATTEMPTS", 3)),
            generation_backoff_s=_float_env("GENERATION_BACKOFF_S", 1.0),
            cache_ttl_s=_int_env("AI_SUMMARY_CACHE_TTL", _DEFAULT_CACHE_TTL_S),
            page_fetch_timeout_s=_float_env("PAGE_FETCH_TIMEOUT_S", 10.0),
            rate_limit=_int_env("SUMMARY_RATE_LIMIT", 20),
            rate_window_s=_float_env("SUMMARY_RATE_WINDOW_S", 60.0),
            database_url=os.getenv("DATABASE_URL", _DEFAULT_DATABASE_URL),
            cors_origins=[
                origin.strip()
                for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
                if origin.strip()
            ],
            api_tokens=_parse_api_tokens(os.getenv("API_TOKENS")),
        )
