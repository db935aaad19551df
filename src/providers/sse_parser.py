"""
Incremental decoder for the streaming wire formats spoken by chat backends.

Three shapes are normalized into one event stream:

* ``openai``: ``data:`` records carrying ``choices[0].delta``; a non-null
  ``finish_reason`` or a literal ``[DONE]`` ends the stream.
* ``anthropic``: ``data:`` records with a ``type`` discriminant; only
  ``content_block_delta`` carries text and ``message_stop`` ends the stream.
* ``gemini``: one JSON document per line (optionally ``data:`` prefixed)
  with text under ``candidates[0].content.parts``; a populated
  ``finishReason`` ends the stream.

Reads never have to align with record boundaries: the trailing partial line
and any split UTF-8 sequence are carried over to the next ``feed``.
"""
from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from src.paperchat.models.exceptions import (
    LLMAbortedError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMRequestError,
)
from src.providers.base import CancelToken

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class WireFormat(str, Enum):
    DELTA = "openai"
    CONTENT_BLOCK = "anthropic"
    CANDIDATES = "gemini"


@dataclass
class StreamEvent:
    """One decoded record. text/reasoning_text are None when the record carries none."""
    text: Optional[str] = None
    reasoning_text: Optional[str] = None
    done: bool = False


@dataclass
class DecoderCallbacks:
    on_text: Callable[[str], None]
    on_done: Callable[[], None]
    on_error: Callable[[Exception], None]
    on_reasoning_text: Optional[Callable[[str], None]] = None


# ------------------- Per-format extraction -------------------

def _first_dict(value: Any) -> Optional[Dict[str, Any]]:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return None


def _extract_delta(payload: Dict[str, Any]) -> Optional[StreamEvent]:
    error = payload.get("error")
    if isinstance(error, dict):
        raise LLMRequestError(str(error.get("message") or error))

    choice = _first_dict(payload.get("choices"))
    if choice is None:
        # Usage-only and keep-alive records.
        return None

    delta = choice.get("delta") or {}
    text = delta.get("content")
    if not isinstance(text, str) or not text:
        text = None
    # None means "no reasoning in this record"; an empty string is passed through.
    reasoning = delta.get("reasoning_content")
    if not isinstance(reasoning, str):
        reasoning = None
    done = choice.get("finish_reason") is not None

    if text is None and reasoning is None and not done:
        return None
    return StreamEvent(text=text, reasoning_text=reasoning, done=done)


_CONTENT_BLOCK_ERRORS = {
    "rate_limit_error": LLMRateLimitError,
    "overloaded_error": LLMConnectionError,
    "api_error": LLMConnectionError,
}


def _extract_content_block(payload: Dict[str, Any]) -> Optional[StreamEvent]:
    event_type = payload.get("type")

    if event_type == "message_stop":
        return StreamEvent(done=True)

    if event_type == "error":
        error = payload.get("error") or {}
        error_cls = _CONTENT_BLOCK_ERRORS.get(error.get("type"), LLMRequestError)
        raise error_cls(str(error.get("message") or "Stream reported an error"))

    reasoning = None
    details = _first_dict(payload.get("reasoning_details"))
    if details is not None and isinstance(details.get("text"), str):
        reasoning = details["text"]

    if event_type != "content_block_delta":
        return StreamEvent(reasoning_text=reasoning) if reasoning is not None else None

    delta = payload.get("delta") or {}
    text = delta.get("text")
    if not isinstance(text, str) or not text:
        text = None
    if reasoning is None and isinstance(delta.get("thinking"), str):
        reasoning = delta["thinking"]

    if text is None and reasoning is None:
        return None
    return StreamEvent(text=text, reasoning_text=reasoning)


def _extract_candidates(payload: Dict[str, Any]) -> Optional[StreamEvent]:
    candidate = _first_dict(payload.get("candidates"))
    if candidate is None:
        return None

    text_parts: List[str] = []
    thought_parts: List[str] = []
    content = candidate.get("content") or {}
    for part in content.get("parts") or []:
        if not isinstance(part, dict) or not isinstance(part.get("text"), str):
            continue
        if part.get("thought"):
            thought_parts.append(part["text"])
        else:
            text_parts.append(part["text"])

    text = "".join(text_parts) or None
    reasoning = "".join(thought_parts) if thought_parts else None
    done = bool(candidate.get("finishReason"))

    if text is None and reasoning is None and not done:
        return None
    return StreamEvent(text=text, reasoning_text=reasoning, done=done)


_EXTRACTORS: Dict[WireFormat, Callable[[Dict[str, Any]], Optional[StreamEvent]]] = {
    WireFormat.DELTA: _extract_delta,
    WireFormat.CONTENT_BLOCK: _extract_content_block,
    WireFormat.CANDIDATES: _extract_candidates,
}


# ------------------- Decoder -------------------

class SSEStreamDecoder:
    """
    Turns raw byte chunks into StreamEvents for one wire format.

    Records that fail to parse as JSON are dropped; exceptions raised while
    extracting a well-formed record propagate to the caller.
    """

    def __init__(self, wire_format: WireFormat | str) -> None:
        self.wire_format = WireFormat(wire_format)
        self._extract = _EXTRACTORS[self.wire_format]
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        if self.done or not chunk:
            return []
        self._buffer += self._utf8.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def finish(self) -> List[StreamEvent]:
        """Flush the carried-over partial line once the byte stream has ended."""
        if self.done:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        return self._decode_lines([remaining])

    def _decode_lines(self, lines: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            if self.done:
                break
            event = self._decode_line(line.strip())
            if event is None:
                continue
            events.append(event)
            if event.done:
                self.done = True
        return events

    def _decode_line(self, line: str) -> Optional[StreamEvent]:
        if not line:
            return None

        if line.startswith("data:"):
            data = line[len("data:"):].strip()
        elif self.wire_format is WireFormat.CANDIDATES:
            data = line
        else:
            # event:, id:, retry: and ':' comment lines carry nothing we use.
            return None

        if data == DONE_SENTINEL:
            return StreamEvent(done=True) if self.wire_format is WireFormat.DELTA else None

        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Skipping undecodable %s record: %.80s", self.wire_format.value, data)
            return None
        if not isinstance(payload, dict):
            return None
        return self._extract(payload)


def parse_sse_stream(
    chunks: Iterable[bytes],
    wire_format: WireFormat | str,
    callbacks: DecoderCallbacks,
    cancel_token: Optional[CancelToken] = None,
) -> None:
    """
    Drive a decoder over ``chunks`` and report through ``callbacks``.

    Exactly one of ``on_done`` or ``on_error`` is called. The cancel token is
    checked before every read; once it is observed no further text is
    delivered and ``on_error`` receives an LLMAbortedError.
    """
    decoder = SSEStreamDecoder(wire_format)
    iterator = iter(chunks)
    try:
        while not decoder.done:
            if cancel_token is not None and cancel_token.is_cancelled:
                raise LLMAbortedError()
            try:
                chunk = next(iterator)
            except StopIteration:
                _deliver(decoder.finish(), callbacks)
                break
            _deliver(decoder.feed(chunk), callbacks)

        if not decoder.done and cancel_token is not None and cancel_token.is_cancelled:
            raise LLMAbortedError()
    except Exception as exc:
        if cancel_token is not None and cancel_token.is_cancelled and not isinstance(exc, LLMAbortedError):
            exc = LLMAbortedError(cause=exc)
        callbacks.on_error(exc)
        return

    callbacks.on_done()


def _deliver(events: List[StreamEvent], callbacks: DecoderCallbacks) -> None:
    for event in events:
        if event.reasoning_text is not None and callbacks.on_reasoning_text is not None:
            callbacks.on_reasoning_text(event.reasoning_text)
        if event.text:
            callbacks.on_text(event.text)
