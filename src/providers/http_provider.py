import logging
from typing import Any, Dict, List, Optional

import requests

from src.paperchat.config import REQUEST_TIMEOUT_SECONDS
from src.paperchat.models.chat import ChatMessage
from src.paperchat.models.exceptions import (
    LLMAbortedError,
    LLMAuthError,
    LLMConnectionError,
    LLMDecodeError,
    LLMRateLimitError,
    LLMRequestError,
    LLMServiceError,
    LLMTimeoutError,
    ProviderNotConfiguredError,
)
from src.paperchat.models.provider import ProviderConfig
from src.paperchat.prompts.prompt_manager import PromptManager, default_prompt_manager
from src.providers.base import CancelToken, LLMProvider, StreamCallbacks
from src.providers.protocols import PROTOCOLS, HTTPRequest
from src.providers.provider_specs import spec_for_config
from src.providers.sse_parser import DecoderCallbacks, parse_sse_stream

logger = logging.getLogger(__name__)

# Minimal prompt used to probe Anthropic-format credentials.
_PING_MESSAGES = [{"role": "user", "content": "Hi"}]


class HTTPChatProvider(LLMProvider):
    """
    Provider adapter for every HTTP chat backend.

    Vendor differences come from the strategy record (spec_for_config) and the
    wire-format protocol; the request/response flow here is shared.
    """

    def __init__(
        self,
        config: ProviderConfig,
        session: Optional[requests.Session] = None,
        prompt_manager: Optional[PromptManager] = None,
        timeout=REQUEST_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.spec = spec_for_config(config)
        self.protocol = PROTOCOLS[config.type]
        self.timeout = timeout
        self._session = session or requests.Session()
        self._prompt_manager = prompt_manager or default_prompt_manager()

    @property
    def provider_id(self) -> str:
        return self.config.id

    def is_ready(self) -> bool:
        return bool(
            self.config.resolved_api_key()
            and self.config.resolved_base_url()
            and self.config.active_model()
        )

    def update_config(self, config: ProviderConfig) -> None:
        self.config = config
        self.spec = spec_for_config(config)
        self.protocol = PROTOCOLS[config.type]

    # ------------------- Completions -------------------
    def stream_complete(
        self,
        messages: List[ChatMessage],
        callbacks: StreamCallbacks,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        if not self.config.streaming_output:
            self._stream_buffered(messages, callbacks, cancel_token)
            return

        try:
            self._ensure_ready()
            request = self._build_request(messages, stream=True)
            response = self._send(request, stream=True, cancel_token=cancel_token)
        except Exception as exc:
            callbacks.on_error(self._classify(exc, cancel_token))
            return

        collected: List[str] = []

        def on_text(text: str) -> None:
            collected.append(text)
            callbacks.on_chunk(text)

        def on_done() -> None:
            logger.debug("Stream from %s finished (%d chunks)", self.provider_id, len(collected))
            callbacks.on_complete("".join(collected))

        def on_error(exc: Exception) -> None:
            callbacks.on_error(self._classify(exc, cancel_token))

        with response:
            if cancel_token is not None:
                cancel_token.add_callback(response.close)
            try:
                self._check_stream_content_type(response)
            except LLMServiceError as exc:
                callbacks.on_error(exc)
                return
            parse_sse_stream(
                response.iter_content(chunk_size=None),
                self.protocol.wire_format,
                DecoderCallbacks(
                    on_text=on_text,
                    on_done=on_done,
                    on_error=on_error,
                    on_reasoning_text=callbacks.on_reasoning_chunk,
                ),
                cancel_token,
            )

    def _stream_buffered(
        self,
        messages: List[ChatMessage],
        callbacks: StreamCallbacks,
        cancel_token: Optional[CancelToken],
    ) -> None:
        """Streaming contract served by one buffered request (streaming_output disabled)."""
        try:
            text = self.chat_complete(messages, cancel_token=cancel_token)
        except Exception as exc:
            callbacks.on_error(self._classify(exc, cancel_token))
            return
        if text:
            callbacks.on_chunk(text)
        callbacks.on_complete(text)

    def chat_complete(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        self._ensure_ready()
        request = self._build_request(messages, stream=False, system_prompt=system_prompt)
        response = self._send(request, stream=False, cancel_token=cancel_token)
        with response:
            payload = self._json(response)
        if cancel_token is not None and cancel_token.is_cancelled:
            raise LLMAbortedError(provider_id=self.provider_id)
        return self.protocol.parse_completion(payload)

    # ------------------- Connection & Models -------------------
    def test_connection(self) -> bool:
        if not self.config.resolved_api_key():
            return False

        if self.config.type == "anthropic":
            request = self.protocol.build_request(
                self.config, self.spec, [], "", stream=False
            )
            request.body.update({"messages": _PING_MESSAGES, "max_tokens": 1})
        else:
            request = self.protocol.models_request(self.config)

        try:
            self._send(request, stream=False).close()
            return True
        except LLMRequestError as exc:
            # Anthropic answers a bare probe with 400 invalid_request_error once the key is accepted.
            return self.config.type == "anthropic" and exc.status_code == 400
        except LLMServiceError as exc:
            logger.warning("Connection test for %s failed: %s", self.provider_id, exc)
            return False

    def list_models(self) -> List[str]:
        try:
            response = self._send(self.protocol.models_request(self.config), stream=False)
            with response:
                payload = self._json(response)
            models = self.protocol.parse_models(payload)
        except LLMServiceError as exc:
            logger.warning("Failed to list models for %s: %s", self.provider_id, exc)
            return list(self.config.available_models)
        return models or list(self.config.available_models)

    # ------------------- HTTP plumbing -------------------
    def _ensure_ready(self) -> None:
        if not self.is_ready():
            raise ProviderNotConfiguredError(
                f"Provider '{self.config.name}' needs an API key and a model.",
                provider_id=self.provider_id,
            )

    def _build_request(
        self,
        messages: List[ChatMessage],
        stream: bool,
        system_prompt: Optional[str] = None,
    ) -> HTTPRequest:
        if system_prompt is None:
            system_prompt = self._prompt_manager.system_prompt(self.config.system_prompt)
        return self.protocol.build_request(self.config, self.spec, messages, system_prompt, stream)

    def _send(
        self,
        request: HTTPRequest,
        stream: bool,
        cancel_token: Optional[CancelToken] = None,
    ) -> requests.Response:
        if cancel_token is not None and cancel_token.is_cancelled:
            raise LLMAbortedError(provider_id=self.provider_id)

        logger.debug("%s %s (provider=%s, stream=%s)", request.method, request.url, self.provider_id, stream)
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=request.headers,
                json=request.body,
                params=request.params or None,
                stream=stream,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise self._classify(exc, cancel_token)

        try:
            self._raise_for_status(response)
        except LLMServiceError:
            response.close()
            raise
        return response

    def _raise_for_status(self, response: requests.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = self._error_detail(response)
        name = self.config.name
        kwargs: Dict[str, Any] = {"provider_id": self.provider_id, "status_code": status}
        if status in (401, 403):
            raise LLMAuthError(f"{name} rejected the API key ({status}): {detail}", **kwargs)
        if status == 429:
            raise LLMRateLimitError(f"{name} rate limit reached ({status}): {detail}", **kwargs)
        if status < 500:
            raise LLMRequestError(f"{name} rejected the request ({status}): {detail}", **kwargs)
        raise LLMConnectionError(f"{name} service error ({status}): {detail}", **kwargs)

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return (response.text or "").strip()[:300] or response.reason or "no details"
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if data.get("message"):
                return str(data["message"])
        return str(data)[:300]

    def _check_stream_content_type(self, response: requests.Response) -> None:
        content_type = (response.headers.get("Content-Type") or "").lower()
        if "text/html" in content_type:
            raise LLMDecodeError(
                f"{self.config.name} returned an HTML page instead of an event stream; check the base URL.",
                provider_id=self.provider_id,
            )
        if "application/json" in content_type:
            # Some gateways answer a streaming request with a plain JSON error and status 200.
            payload = self._json(response)
            if payload.get("error"):
                raise LLMRequestError(
                    f"{self.config.name} rejected the request: {self._error_detail(response)}",
                    provider_id=self.provider_id,
                    status_code=response.status_code,
                )
            raise LLMDecodeError(
                f"{self.config.name} returned JSON instead of an event stream.",
                provider_id=self.provider_id,
            )

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMDecodeError(
                f"{self.config.name} returned a body that is not JSON.",
                provider_id=self.provider_id,
                cause=exc,
            )
        if not isinstance(payload, dict):
            raise LLMDecodeError(
                f"{self.config.name} returned unexpected JSON ({type(payload).__name__}).",
                provider_id=self.provider_id,
            )
        return payload

    def _classify(self, exc: Exception, cancel_token: Optional[CancelToken] = None) -> Exception:
        """Map transport exceptions onto the LLMServiceError taxonomy; other errors pass through."""
        if cancel_token is not None and cancel_token.is_cancelled and not isinstance(exc, LLMAbortedError):
            return LLMAbortedError(provider_id=self.provider_id, cause=exc)
        if isinstance(exc, LLMServiceError):
            return exc
        if isinstance(exc, requests.exceptions.Timeout):
            return LLMTimeoutError(
                f"Timed out waiting for {self.config.name}: {exc}", provider_id=self.provider_id, cause=exc
            )
        if isinstance(exc, requests.exceptions.RequestException):
            return LLMConnectionError(
                f"Could not reach {self.config.name}: {exc}", provider_id=self.provider_id, cause=exc
            )
        return exc
