import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from src.paperchat.models.chat import ChatMessage
from src.paperchat.models.provider import ProviderConfig

logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cooperative cancellation flag shared between the caller and a running request.

    cancel() may be called any number of times from any thread; registered
    callbacks (e.g. closing the HTTP response) run once, on the first call.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("Cancel callback failed", exc_info=True)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


@dataclass
class StreamCallbacks:
    """Receivers for a streaming completion. on_complete or on_error is called exactly once."""
    on_chunk: Callable[[str], None]
    on_complete: Callable[[str], None]
    on_error: Callable[[Exception], None]
    on_reasoning_chunk: Optional[Callable[[str], None]] = None


class LLMProvider(ABC):
    """
    Abstract Base Class for all Large Language Model (LLM) providers.
    This defines the contract the chat manager relies on.
    """

    config: ProviderConfig

    @property
    def provider_name(self) -> str:
        """The display name of the provider (e.g., 'OpenAI', 'Claude')."""
        return self.config.name

    @abstractmethod
    def is_ready(self) -> bool:
        """True when credentials and at least one model are configured."""

    @abstractmethod
    def update_config(self, config: ProviderConfig) -> None:
        """Replace the configuration used for subsequent requests."""

    @abstractmethod
    def stream_complete(
        self,
        messages: List[ChatMessage],
        callbacks: StreamCallbacks,
        cancel_token: Optional[CancelToken] = None,
    ) -> None:
        """
        Streams a chat response, reporting through ``callbacks``.

        Args:
            messages: Conversation so far, oldest first.
            callbacks: Receivers for text, reasoning, completion and errors.
            cancel_token: Optional token; cancelling it ends the stream with LLMAbortedError.
        """

    @abstractmethod
    def chat_complete(
        self,
        messages: List[ChatMessage],
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """
        Returns the full response text for ``messages`` in one request.

        Args:
            messages: Conversation so far, oldest first.
            system_prompt: Replaces the configured system prompt when given.
            cancel_token: Optional token checked once the response arrives.

        Raises:
            LLMServiceError: Any classified failure.
        """

    @abstractmethod
    def test_connection(self) -> bool:
        """Returns True when the backend accepts the configured credentials."""

    @abstractmethod
    def list_models(self) -> List[str]:
        """Returns model identifiers offered by the backend."""
