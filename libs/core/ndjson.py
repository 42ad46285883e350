"""Newline-delimited JSON framing for incremental generation results.

A stream carries zero or more cumulative partial objects, one per line, and
then exactly one terminal line: ``{"_complete": true, ...}`` on success or
``{"_error": true, "message": ...}`` on failure.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, Optional

from libs.core import logging as core_logging

NDJSON_MEDIA_TYPE = "application/x-ndjson"
COMPLETE_KEY = "_complete"
ERROR_KEY = "_error"
DEFAULT_STREAM_ERROR = "Stream generation failed"
DEFAULT_INCOMPLETE_MESSAGE = "Stream ended without a complete result"

LOGGER = core_logging.get_logger("ndjson")


class StreamGenerationError(Exception):
    pass


class IncompleteStreamError(StreamGenerationError):
    pass


class MalformedStreamError(StreamGenerationError):
    pass


def encode_line(obj: Dict[str, Any]) -> bytes:
    return (json.dumps(obj, ensure_ascii=False, default=str) + "\n").encode("utf-8")


async def encode_ndjson_stream(
    partials: AsyncIterable[Dict[str, Any]],
    final: Callable[[], Awaitable[Dict[str, Any]]],
    *,
    extra: Optional[Dict[str, Any]] = None,
    safe_message: Callable[[BaseException], str] = lambda _exc: DEFAULT_STREAM_ERROR,
) -> AsyncIterator[bytes]:
    """Relay partial objects and the terminal line as NDJSON bytes.

    Nothing is written after the terminal line. ``safe_message`` maps a failure
    to the text placed in the ``_error`` line so provider detail never leaks.
    """
    try:
        async for partial in partials:
            yield encode_line(partial)
        result = await final()
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("ndjson_stream_failed", error_type=exc.__class__.__name__)
        yield encode_line({ERROR_KEY: True, "message": safe_message(exc)})
        return
    complete = dict(result)
    if extra:
        complete.update(extra)
    complete[COMPLETE_KEY] = True
    yield encode_line(complete)


def _decode_line(raw: bytes) -> Optional[Dict[str, Any]]:
    stripped = raw.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedStreamError(f"Malformed stream line: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedStreamError("Stream line is not a JSON object")
    return parsed


async def consume_ndjson_stream(
    chunks: AsyncIterable[bytes],
    on_partial: Callable[[Dict[str, Any]], None],
    *,
    incomplete_message: str = DEFAULT_INCOMPLETE_MESSAGE,
) -> Dict[str, Any]:
    """Read an NDJSON generation stream and return the final object.

    ``on_partial`` receives every partial snapshot and, last, the final object.
    Raises ``StreamGenerationError`` for an ``_error`` line and
    ``IncompleteStreamError`` when the stream ends without ``_complete``.
    """
    buffer = b""
    final: Optional[Dict[str, Any]] = None

    def handle(raw: bytes) -> None:
        nonlocal final
        parsed = _decode_line(raw)
        if parsed is None:
            return
        if parsed.get(ERROR_KEY):
            raise StreamGenerationError(str(parsed.get("message") or DEFAULT_STREAM_ERROR))
        if parsed.get(COMPLETE_KEY):
            result = {key: value for key, value in parsed.items() if key != COMPLETE_KEY}
            on_partial(result)
            final = result
            return
        on_partial(parsed)

    async for chunk in chunks:
        if not chunk:
            continue
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            handle(line)
    if buffer:
        # An unterminated trailing fragment means the connection was cut mid-line.
        try:
            handle(buffer)
        except MalformedStreamError as exc:
            raise IncompleteStreamError(incomplete_message) from exc

    if final is None:
        raise IncompleteStreamError(incomplete_message)
    return final
