"""
Shapes chat messages into the request bodies of each wire format.

All three formats share the same filtering: error messages are never sent,
messages without text or images are dropped, and system messages are
replaced by the assembled system prompt.
"""
from typing import Any, Dict, List

from src.paperchat.models.chat import ChatMessage


def _has_images(message: ChatMessage) -> bool:
    return bool(message.images)


def filter_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Messages that belong in a model request, in order."""
    return [
        message
        for message in messages
        if message.role in ("user", "assistant")
        and (message.has_content() or _has_images(message))
    ]


def to_openai_messages(messages: List[ChatMessage], system_prompt: str) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in filter_messages(messages):
        if not _has_images(message):
            formatted.append({"role": message.role, "content": message.content})
            continue
        content: List[Dict[str, Any]] = []
        if message.has_content():
            content.append({"type": "text", "text": message.content})
        for image in message.images or []:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.mime_type};base64,{image.base64}"},
                }
            )
        formatted.append({"role": message.role, "content": content})
    return formatted


def to_anthropic_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = []
    for message in filter_messages(messages):
        if not _has_images(message):
            formatted.append({"role": message.role, "content": message.content})
            continue
        content: List[Dict[str, Any]] = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": image.mime_type, "data": image.base64},
            }
            for image in message.images or []
        ]
        if message.has_content():
            content.append({"type": "text", "text": message.content})
        formatted.append({"role": message.role, "content": content})
    return formatted


def to_gemini_contents(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = []
    for message in filter_messages(messages):
        parts: List[Dict[str, Any]] = [
            {"inline_data": {"mime_type": image.mime_type, "data": image.base64}}
            for image in message.images or []
        ]
        if message.has_content():
            parts.append({"text": message.content})
        formatted.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})
    return formatted
