__all__ = [
    "models",
    "llm_provider",
    "logging",
    "retry",
    "prompts",
    "ndjson",
    "summaries_client",
]
