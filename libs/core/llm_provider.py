from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx


@dataclass
class LLMResponse:
    content: str
    model: str = ""


class LLMProviderError(Exception):
    pass


class LLMRateLimitError(LLMProviderError):
    pass


class LLMModelUnavailableError(LLMProviderError):
    pass


class LLMProvider:
    model: str = ""

    async def generate(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> LLMResponse:  # pragma: no cover - interface
        raise NotImplementedError

    def stream(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:  # pragma: no cover - interface
        raise NotImplementedError


class MockLLMProvider(LLMProvider):
    """Offline provider that fills every required schema field with placeholders."""

    model = "mock"

    def __init__(self, content: Optional[str] = None, chunk_size: int = 16) -> None:
        self.content = content
        self.chunk_size = max(1, chunk_size)

    def _render(self, schema: Optional[Dict[str, Any]]) -> str:
        if self.content is not None:
            return self.content
        return json.dumps(_placeholder_for_schema(schema or {}))

    async def generate(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> LLMResponse:
        return LLMResponse(content=self._render(schema), model=model or self.model)

    async def stream(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        content = self._render(schema)
        for start in range(0, len(content), self.chunk_size):
            yield content[start : start + self.chunk_size]


class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_s: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_s = timeout_s
        self._client = client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_s) as client:
            yield client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]],
        schema_name: str,
        model: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        model_name = model or self.model
        payload: Dict[str, Any] = {"model": model_name, "input": prompt}
        if schema:
            payload["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": schema_name,
                    "schema": schema,
                    "strict": False,
                }
            }
        if self.temperature is not None and _model_supports_temperature(model_name):
            payload["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            payload["max_output_tokens"] = self.max_output_tokens
        if stream:
            payload["stream"] = True
        return payload

    async def generate(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> LLMResponse:
        payload = self._payload(prompt, schema, schema_name, model, stream=False)
        retried_without_temperature = False
        async with self._http() as client:
            while True:
                try:
                    response = await client.post(
                        f"{self.base_url}/v1/responses",
                        json=payload,
                        headers=self._headers(),
                        timeout=self.timeout_s,
                    )
                except httpx.HTTPError as exc:
                    raise LLMProviderError(f"OpenAI API connection error: {exc}") from exc
                if response.status_code >= 400:
                    detail = response.text
                    if (
                        "temperature" in payload
                        and not retried_without_temperature
                        and _is_unsupported_temperature_error(detail)
                    ):
                        payload.pop("temperature", None)
                        retried_without_temperature = True
                        continue
                    raise _error_for_status(response.status_code, detail)
                break
        try:
            data = response.json()
        except ValueError as exc:
            raise LLMProviderError("OpenAI API returned invalid JSON") from exc
        text = _extract_output_text(data)
        if not text:
            raise LLMProviderError("OpenAI API returned empty output")
        return LLMResponse(content=text, model=str(payload["model"]))

    async def stream(
        self,
        prompt: str,
        *,
        schema: Optional[Dict[str, Any]] = None,
        schema_name: str = "output",
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        payload = self._payload(prompt, schema, schema_name, model, stream=True)
        async with self._http() as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/v1/responses",
                    json=payload,
                    headers=self._headers(),
                    timeout=self.timeout_s,
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        raise _error_for_status(response.status_code, detail)
                    async for line in response.aiter_lines():
                        event = _parse_sse_data(line)
                        if event is None:
                            continue
                        event_type = event.get("type")
                        if event_type == "response.output_text.delta":
                            delta = event.get("delta")
                            if isinstance(delta, str) and delta:
                                yield delta
                        elif event_type == "response.completed":
                            return
                        elif event_type in {"error", "response.failed", "response.incomplete"}:
                            raise LLMProviderError(f"OpenAI stream {event_type}: {_event_message(event)}")
            except httpx.HTTPError as exc:
                raise LLMProviderError(f"OpenAI API connection error: {exc}") from exc
        raise LLMProviderError("OpenAI stream ended before response.completed")


def resolve_provider(
    provider_name: str,
    *,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    temperature: Optional[float] = None,
    max_output_tokens: Optional[int] = None,
    timeout_s: Optional[float] = None,
) -> LLMProvider:
    name = (provider_name or "mock").lower()
    if name == "openai":
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        if not model:
            raise ValueError("OPENAI_MODEL is required when LLM_PROVIDER=openai")
        return OpenAIProvider(
            api_key=api_key,
            model=model,
            base_url=base_url or "https://api.openai.com",
            temperature=temperature,
            max_output_tokens=max_output_tokens,
            timeout_s=timeout_s or 60.0,
        )
    return MockLLMProvider()


def _error_for_status(status_code: int, detail: str) -> LLMProviderError:
    message = f"OpenAI API error {status_code}: {detail[:500]}"
    if status_code == 429:
        return LLMRateLimitError(message)
    if status_code in {404, 503} or "model_not_found" in (detail or ""):
        return LLMModelUnavailableError(message)
    return LLMProviderError(message)


def _parse_sse_data(line: str) -> Optional[Dict[str, Any]]:
    if not line.startswith("data:"):
        return None
    raw = line[len("data:") :].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        event = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


def _event_message(event: Dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    response = event.get("response")
    if isinstance(response, dict):
        nested = response.get("error") or response.get("incomplete_details")
        if nested:
            return json.dumps(nested)[:300]
    return str(event.get("message") or "unknown")


def _extract_output_text(response: Dict[str, Any]) -> str:
    parts: list[str] = []
    for item in response.get("output", []):
        if item.get("type") != "message":
            continue
        for content in item.get("content", []):
            if content.get("type") == "output_text":
                parts.append(content.get("text", ""))
    return "".join(parts).strip()


def _placeholder_for_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    properties = schema.get("properties") or {}
    for name in schema.get("required") or []:
        field_type = (properties.get(name) or {}).get("type")
        if field_type == "array":
            result[name] = []
        elif field_type in {"integer", "number"}:
            result[name] = 0
        elif field_type == "boolean":
            result[name] = False
        else:
            result[name] = "Mock response"
    return result


def _model_supports_temperature(model: str) -> bool:
    normalized = (model or "").strip().lower()
    # GPT-5 responses currently reject temperature.
    return not normalized.startswith("gpt-5")


def _is_unsupported_temperature_error(detail: str) -> bool:
    lowered = (detail or "").lower()
    return "unsupported parameter" in lowered and "temperature" in lowered
