from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from src.paperchat.models.chat import ChatMessage
from src.paperchat.models.events import Event
from src.paperchat.models.exceptions import LLMAbortedError
from src.paperchat.models.provider import ProviderConfig
from src.paperchat.services.chat_manager import ChatManager
from src.paperchat.services.json_document_store import JsonDocumentStore
from src.paperchat.services.session_store import SessionStore
from src.providers.base import CancelToken, LLMProvider, StreamCallbacks


class RecordingEventBus:
    """Synchronous in-memory event bus used by tests."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Event], None]]] = {}
        self.dispatched: List[Event] = []

    def subscribe(self, event_type: str, callback: Callable[[Event], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(callback)

    def dispatch(self, event: Event) -> None:
        self.dispatched.append(event)
        for callback in self._subscribers.get(event.event_type, []):
            callback(event)

    def of_type(self, event_type: str) -> List[Event]:
        return [event for event in self.dispatched if event.event_type == event_type]


class ScriptedProvider(LLMProvider):
    """
    Provider double that replays a fixed script through the streaming callbacks.

    ``after_chunk(index, token)`` runs after each delivered chunk, which is
    where tests abort or inspect intermediate state.
    """

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        reasoning: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        title: object = "Paper Summary",
        ready: bool = True,
    ) -> None:
        self.config = ProviderConfig(id="scripted", name="Scripted", api_key="key", default_model="model-1")
        self.chunks = list(chunks or [])
        self.reasoning = list(reasoning or [])
        self.error = error
        self.title = title
        self.ready = ready
        self.after_chunk: Optional[Callable[[int, Optional[CancelToken]], None]] = None
        self.stream_calls: List[List[ChatMessage]] = []
        self.chat_calls: List[tuple] = []

    def is_ready(self) -> bool:
        return self.ready

    def update_config(self, config: ProviderConfig) -> None:
        self.config = config

    def stream_complete(self, messages, callbacks: StreamCallbacks, cancel_token=None) -> None:
        self.stream_calls.append([message.model_copy(deep=True) for message in messages])
        for text in self.reasoning:
            callbacks.on_reasoning_chunk(text)
        delivered = []
        for index, chunk in enumerate(self.chunks):
            if cancel_token is not None and cancel_token.is_cancelled:
                callbacks.on_error(LLMAbortedError())
                return
            callbacks.on_chunk(chunk)
            delivered.append(chunk)
            if self.after_chunk is not None:
                self.after_chunk(index, cancel_token)
        if cancel_token is not None and cancel_token.is_cancelled:
            callbacks.on_error(LLMAbortedError())
            return
        if self.error is not None:
            callbacks.on_error(self.error)
            return
        callbacks.on_complete("".join(delivered))

    def chat_complete(self, messages, system_prompt=None, cancel_token=None) -> str:
        self.chat_calls.append((list(messages), system_prompt))
        if isinstance(self.title, Exception):
            raise self.title
        return self.title

    def test_connection(self) -> bool:
        return self.ready

    def list_models(self) -> List[str]:
        return [self.config.default_model]


class StaticRegistry:
    """Stands in for ProviderRegistry when a test only needs the active provider."""

    def __init__(self, provider: Optional[LLMProvider]) -> None:
        self.provider = provider

    def get_active_provider(self) -> Optional[LLMProvider]:
        return self.provider


class FakeDocuments:
    """In-memory document source keyed by item id."""

    def __init__(self, texts: Optional[Dict[int, str]] = None, names: Optional[Dict[int, str]] = None) -> None:
        self.texts = dict(texts or {})
        self.names = dict(names or {})
        self.text_requests: List[int] = []

    def get_text(self, item_id: int) -> Optional[str]:
        self.text_requests.append(item_id)
        return self.texts.get(item_id)

    def get_display_name(self, item_id: int) -> Optional[str]:
        return self.names.get(item_id)


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def documents() -> FakeDocuments:
    return FakeDocuments(
        texts={5: "Full paper text", 7: "Second paper text"},
        names={5: "Attention Is All You Need", 7: "BERT"},
    )


@pytest.fixture
def session_store(tmp_path: Path, documents: FakeDocuments) -> SessionStore:
    return SessionStore(JsonDocumentStore(tmp_path / "conversations"), documents)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider(chunks=["Hel", "lo"])


@pytest.fixture
def chat_manager(
    session_store: SessionStore,
    provider: ScriptedProvider,
    event_bus: RecordingEventBus,
    documents: FakeDocuments,
) -> ChatManager:
    return ChatManager(
        session_store,
        StaticRegistry(provider),
        event_bus=event_bus,
        document_source=documents,
        clock=lambda: 0.0,
    )
