"""
Request construction and response parsing for each wire format.

A protocol is stateless: it turns (config, strategy record, messages) into an
HTTPRequest and turns a decoded JSON body back into text or model ids.
Streaming and buffered requests differ only in the ``stream`` flag.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.paperchat.models.chat import ChatMessage
from src.paperchat.models.exceptions import LLMDecodeError
from src.paperchat.models.provider import ProviderConfig
from src.providers.message_format import (
    to_anthropic_messages,
    to_gemini_contents,
    to_openai_messages,
)
from src.providers.provider_specs import ProviderSpec
from src.providers.sse_parser import WireFormat

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class HTTPRequest:
    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[Dict[str, Any]] = None
    params: Dict[str, str] = field(default_factory=dict)


def merge_fields(body: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge vendor fields into a request body."""
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(body.get(key), dict):
            merge_fields(body[key], value)
        else:
            body[key] = value
    return body


class ChatProtocol:
    wire_format: WireFormat

    def build_request(
        self,
        config: ProviderConfig,
        spec: ProviderSpec,
        messages: List[ChatMessage],
        system_prompt: str,
        stream: bool,
    ) -> HTTPRequest:
        raise NotImplementedError

    def parse_completion(self, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    def models_request(self, config: ProviderConfig) -> HTTPRequest:
        raise NotImplementedError

    def parse_models(self, payload: Dict[str, Any]) -> List[str]:
        data = payload.get("data")
        if not isinstance(data, list):
            raise LLMDecodeError("Model list response has no 'data' array")
        return [entry["id"] for entry in data if isinstance(entry, dict) and isinstance(entry.get("id"), str)]


class OpenAIChatProtocol(ChatProtocol):
    wire_format = WireFormat.DELTA

    @staticmethod
    def _headers(config: ProviderConfig) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.resolved_api_key()}",
        }

    def build_request(self, config, spec, messages, system_prompt, stream):
        model = config.active_model()
        body: Dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(messages, system_prompt),
            "temperature": spec.temperature(config),
            "stream": stream,
        }
        max_tokens = spec.max_tokens(config)
        if max_tokens > 0:
            body["max_tokens"] = max_tokens
        merge_fields(body, spec.request_fields(config, model))
        return HTTPRequest("POST", f"{config.resolved_base_url()}/chat/completions", self._headers(config), body)

    def parse_completion(self, payload):
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMDecodeError("Completion response has no choices[0].message", cause=exc)
        return content if isinstance(content, str) else ""

    def models_request(self, config):
        return HTTPRequest("GET", f"{config.resolved_base_url()}/models", self._headers(config))


class AnthropicMessagesProtocol(ChatProtocol):
    wire_format = WireFormat.CONTENT_BLOCK

    @staticmethod
    def _headers(config: ProviderConfig) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": config.resolved_api_key(),
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def build_request(self, config, spec, messages, system_prompt, stream):
        model = config.active_model()
        body: Dict[str, Any] = {
            "model": model,
            "messages": to_anthropic_messages(messages),
            "system": system_prompt,
            "max_tokens": spec.max_tokens(config),
            "temperature": spec.temperature(config),
            "stream": stream,
        }
        merge_fields(body, spec.request_fields(config, model))
        return HTTPRequest("POST", f"{config.resolved_base_url()}/messages", self._headers(config), body)

    def parse_completion(self, payload):
        blocks = payload.get("content")
        if not isinstance(blocks, list):
            raise LLMDecodeError("Messages response has no 'content' array")
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )

    def models_request(self, config):
        return HTTPRequest("GET", f"{config.resolved_base_url()}/models", self._headers(config))


class GeminiProtocol(ChatProtocol):
    wire_format = WireFormat.CANDIDATES

    @staticmethod
    def _headers(config: ProviderConfig) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": config.resolved_api_key()}

    def build_request(self, config, spec, messages, system_prompt, stream):
        model = config.active_model()
        generation_config: Dict[str, Any] = {"temperature": spec.temperature(config)}
        max_tokens = spec.max_tokens(config)
        if max_tokens > 0:
            generation_config["maxOutputTokens"] = max_tokens
        body: Dict[str, Any] = {
            "contents": to_gemini_contents(messages),
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": generation_config,
        }
        merge_fields(body, spec.request_fields(config, model))

        action = "streamGenerateContent" if stream else "generateContent"
        params = {"alt": "sse"} if stream else {}
        url = f"{config.resolved_base_url()}/models/{model}:{action}"
        return HTTPRequest("POST", url, self._headers(config), body, params)

    def parse_completion(self, payload):
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise LLMDecodeError("Gemini response has no candidates")
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        return "".join(
            part.get("text", "")
            for part in parts
            if isinstance(part, dict) and not part.get("thought")
        )

    def models_request(self, config):
        return HTTPRequest("GET", f"{config.resolved_base_url()}/models", self._headers(config))

    def parse_models(self, payload):
        models = payload.get("models")
        if not isinstance(models, list):
            raise LLMDecodeError("Model list response has no 'models' array")
        names: List[str] = []
        for entry in models:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                continue
            methods = entry.get("supportedGenerationMethods")
            if isinstance(methods, list) and "generateContent" not in methods:
                continue
            names.append(entry["name"].split("/", 1)[-1])
        return names


PROTOCOLS: Dict[str, ChatProtocol] = {
    "openai": OpenAIChatProtocol(),
    "anthropic": AnthropicMessagesProtocol(),
    "gemini": GeminiProtocol(),
}
