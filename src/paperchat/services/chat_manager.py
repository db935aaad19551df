import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from src.paperchat.config import (
    DEFAULT_PDF_MAX_CHARS,
    GLOBAL_ITEM_ID,
    SAVE_EVERY_N_CHUNKS,
    SAVE_INTERVAL_SECONDS,
)
from src.paperchat.models.chat import (
    ChatMessage,
    ChatSession,
    ContentVersion,
    SendMessageOptions,
    StoredSessionMeta,
    now_ms,
)
from src.paperchat.models.event_types import (
    CHAT_ERROR,
    CHAT_MESSAGE_COMPLETE,
    CHAT_MESSAGE_UPDATED,
    CHAT_PDF_ATTACHED,
    CHAT_REASONING_UPDATE,
    CHAT_SESSION_CHANGED,
    CHAT_STREAMING_UPDATE,
    CHAT_TITLE_UPDATED,
)
from src.paperchat.models.events import Event
from src.paperchat.models.exceptions import LLMAbortedError, ProviderNotConfiguredError
from src.paperchat.prompts.prompt_manager import PromptManager, default_prompt_manager
from src.paperchat.services.provider_registry import ProviderRegistry
from src.paperchat.services.selection_tracker import SelectionTracker
from src.paperchat.services.session_store import SessionStore
from src.paperchat.utils.content_markers import (
    DOCUMENT_MARKER,
    PDF_CONTENT_MARKER,
    QUESTION_MARKER,
    SELECTED_PDF_TEXT_MARKER,
    SELECTED_TEXT_MARKER,
    extract_question,
    truncate,
)
from src.providers.base import CancelToken, LLMProvider, StreamCallbacks

logger = logging.getLogger(__name__)

NO_PROVIDER_MESSAGE = (
    "No AI provider is configured yet. Open the settings, enter an API key "
    "and pick a model to start chatting."
)
TITLE_MAX_CHARS = 100
FALLBACK_TITLE_CHARS = 30
_TITLE_QUOTES = "\"'`“”‘’「」"


class DocumentSource(Protocol):
    """Host-side access to documents the chat can ground on."""

    def get_text(self, item_id: int) -> Optional[str]:
        ...

    def get_display_name(self, item_id: int) -> Optional[str]:
        ...


class SaveThrottle:
    """
    Decides when a streaming message is written to disk.

    A write is due once ``interval`` seconds have passed since the previous
    write or ``every_n`` chunks have arrived since then, whichever comes first.
    """

    def __init__(
        self,
        interval: float = SAVE_INTERVAL_SECONDS,
        every_n: int = SAVE_EVERY_N_CHUNKS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.every_n = every_n
        self._clock = clock
        self._last_save = clock()
        self._pending = 0

    def tick(self) -> bool:
        self._pending += 1
        now = self._clock()
        if self._pending >= self.every_n or now - self._last_save >= self.interval:
            self._last_save = now
            self._pending = 0
            return True
        return False


class ChatManager:
    """
    Orchestrates conversations: sending, aborting and regenerating messages.

    The manager keeps one in-memory session per item id; while cached, that
    copy is authoritative and is written through to the session store. Only
    one abortable request is tracked at a time.
    """

    def __init__(
        self,
        session_store: SessionStore,
        provider_registry: ProviderRegistry,
        event_bus=None,
        document_source: Optional[DocumentSource] = None,
        selection_source: Optional[SelectionTracker] = None,
        prompt_manager: Optional[PromptManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_store = session_store
        self.provider_registry = provider_registry
        self.event_bus = event_bus
        self.document_source = document_source
        self.selection_source = selection_source
        self._prompt_manager = prompt_manager
        self._clock = clock
        self._sessions: Dict[int, ChatSession] = {}
        self._active_item_id = GLOBAL_ITEM_ID
        self._cancel_token: Optional[CancelToken] = None
        self._lock = threading.RLock()

    @property
    def prompt_manager(self) -> PromptManager:
        if self._prompt_manager is None:
            self._prompt_manager = default_prompt_manager()
        return self._prompt_manager

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #

    def set_active_item(self, item_id: int) -> ChatSession:
        """Make ``item_id`` the item the UI is showing and return its session."""
        self._active_item_id = item_id
        return self.get_or_create_session(item_id)

    def get_active_item_id(self) -> int:
        return self._active_item_id

    def get_or_create_session(self, item_id: int) -> ChatSession:
        with self._lock:
            session = self._sessions.get(item_id)
            if session is not None:
                return session
            session = self.session_store.get_active_session(item_id)
            if session is None:
                session = self.session_store.create_new_session(item_id)
                logger.info("Created first session %s for item %s", session.id, item_id)
            self._sessions[item_id] = session
            return session

    def get_active_session(self, item_id: Optional[int] = None) -> Optional[ChatSession]:
        """The cached or stored active session of ``item_id`` without creating one."""
        item_id = self._active_item_id if item_id is None else item_id
        with self._lock:
            session = self._sessions.get(item_id)
            if session is None:
                session = self.session_store.get_active_session(item_id)
                if session is not None:
                    self._sessions[item_id] = session
            return session

    def get_session(self, item_id: int, session_id: str) -> Optional[ChatSession]:
        cached = self._sessions.get(item_id)
        if cached is not None and cached.id == session_id:
            return cached
        return self.session_store.load_session(item_id, session_id)

    def create_new_session(self, item_id: int) -> ChatSession:
        with self._lock:
            previous = self._sessions.get(item_id)
            if previous is not None:
                self._save(previous)
            session = self.session_store.create_new_session(item_id)
            self._sessions[item_id] = session
        logger.info("Started new session %s for item %s", session.id, item_id)
        self._emit_session_changed(item_id, session)
        return session

    def switch_session(self, item_id: int, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            current = self._sessions.get(item_id)
            if current is not None and current.id == session_id:
                return current
            session = self.session_store.load_session(item_id, session_id)
            if session is None:
                logger.warning("Cannot switch to missing session %s of item %s", session_id, item_id)
                return None
            if current is not None:
                self._save(current, make_active=False)
            self.session_store.set_active_session(item_id, session_id)
            self._sessions[item_id] = session
        self._emit_session_changed(item_id, session)
        return session

    def get_sessions_for_item(self, item_id: int, include_empty: bool = False) -> List[StoredSessionMeta]:
        return self.session_store.list_sessions(item_id, include_empty=include_empty)

    def get_all_sessions(self, include_empty: bool = False) -> List[StoredSessionMeta]:
        return self.session_store.list_sessions(include_empty=include_empty)

    def delete_session(self, item_id: int, session_id: str) -> Optional[ChatSession]:
        """Delete a session; when it was the cached one, its replacement becomes active."""
        with self._lock:
            replacement_id = self.session_store.delete_session(item_id, session_id)
            cached = self._sessions.get(item_id)
            if cached is None or cached.id != session_id:
                return cached
            self._sessions.pop(item_id, None)
            replacement = None
            if replacement_id is not None:
                replacement = self.session_store.load_session(item_id, replacement_id)
            if replacement is None:
                replacement = self.session_store.create_new_session(item_id)
            self._sessions[item_id] = replacement
        self._emit_session_changed(item_id, replacement)
        return replacement

    def clear_current_session(self, item_id: Optional[int] = None) -> None:
        item_id = self._active_item_id if item_id is None else item_id
        session = self.get_active_session(item_id)
        if session is None:
            return
        session.messages = []
        session.title = None
        session.pdf_attached = False
        session.pdf_content = None
        self._save(session)
        self._emit_messages(item_id, session)

    def clear_all_sessions_for_item(self, item_id: int) -> None:
        with self._lock:
            self.session_store.delete_all_sessions_for_item(item_id)
            self._sessions.pop(item_id, None)
        self._emit_session_changed(item_id, None)

    def handle_items_deleted(self, item_ids: Iterable[int]) -> None:
        """Drop the chat history of items the host application deleted."""
        for item_id in item_ids:
            try:
                self.clear_all_sessions_for_item(item_id)
            except (OSError, ValueError):
                logger.error("Failed to delete sessions of removed item %s", item_id, exc_info=True)

    def get_session_for_export(self, item_id: int, session_id: Optional[str] = None) -> Optional[ChatSession]:
        """A copy of the session with only messages that carry content."""
        session = self.get_active_session(item_id) if session_id is None else self.get_session(item_id, session_id)
        if session is None:
            return None
        exported = session.model_copy(deep=True)
        exported.messages = [message for message in exported.messages if message.has_content()]
        return exported

    def consume_selected_text(self) -> Optional[str]:
        if self.selection_source is None:
            return None
        selection = self.selection_source.consume()
        return selection.text if selection else None

    def destroy(self) -> None:
        """Abort any running request and flush every cached session to disk."""
        self.abort()
        with self._lock:
            for session in self._sessions.values():
                self._save(session, make_active=False)
            self._sessions.clear()
        logger.info("Chat manager destroyed")

    # ------------------------------------------------------------------ #
    # Sending
    # ------------------------------------------------------------------ #

    def send_message(
        self,
        content: str,
        item_id: int = GLOBAL_ITEM_ID,
        options: Optional[SendMessageOptions] = None,
    ) -> Optional[ChatMessage]:
        """
        Send a user turn and generate the assistant reply.

        Blocks until the reply completes, fails or is aborted.

        Returns:
            The assistant message (complete or partial), the error message that
            replaced it, or the configuration notice when no provider is ready.
        """
        options = options or SendMessageOptions()
        self._cancel_token = None

        documents = options.documents or []
        if documents:
            item_id = documents[0].id if len(documents) == 1 else GLOBAL_ITEM_ID
        is_global = item_id == GLOBAL_ITEM_ID
        continuation_id = options.continue_from_message_id

        session = self.get_or_create_session(item_id)
        if not continuation_id:
            self._clear_aborted_flags(session)
        if len(documents) > 1:
            session.document_ids = [doc.id for doc in documents]
            session.document_names = [doc.title for doc in documents]

        provider = self.provider_registry.get_active_provider()
        if provider is None or not provider.is_ready():
            logger.info("No ready provider; adding configuration notice to item %s", item_id)
            return self._add_configuration_notice(item_id, session)

        max_chars = getattr(provider.config, "pdf_max_chars", DEFAULT_PDF_MAX_CHARS)
        parts: List[str] = []
        attached = False

        for doc in documents:
            text = self._document_text(doc.id)
            if text:
                parts.append(DOCUMENT_MARKER.format(title=doc.title, text=self._limit(text, max_chars)))
                attached = True
            else:
                logger.info("No text available for dropped document %s", doc.id)

        if not is_global and options.attach_pdf and not (session.pdf_attached and session.pdf_content):
            text = self._document_text(item_id)
            if text:
                session.pdf_content = text
                session.pdf_attached = True
                parts.append(PDF_CONTENT_MARKER.format(text=self._limit(text, max_chars)))
                attached = True
            else:
                logger.info("Document text for item %s is unavailable; sending without it", item_id)

        if options.selected_text:
            marker = SELECTED_TEXT_MARKER if is_global else SELECTED_PDF_TEXT_MARKER
            parts.append(marker.format(text=options.selected_text))

        if content:
            parts.append(QUESTION_MARKER.format(text=content))

        user_message = ChatMessage(
            role="user",
            content="\n\n".join(parts),
            pdf_context=options.attach_pdf or None,
            selected_text=options.selected_text,
            images=options.images,
            documents=options.documents,
            is_hidden=True if continuation_id else None,
        )
        session.messages.append(user_message)
        self._save(session)
        self._emit_messages(item_id, session)
        if attached:
            self._emit(CHAT_PDF_ATTACHED, {"item_id": item_id, "session_id": session.id})

        target = session.find_message(continuation_id) if continuation_id else None
        if target is not None and target.role == "assistant":
            target.is_complete = None
            context = list(session.messages)
        else:
            target = ChatMessage(role="assistant", content="")
            context = list(session.messages)
            session.messages.append(target)
        self._emit_messages(item_id, session)

        logger.info(
            "Sending %d messages to %s for item %s", len(context), provider.provider_name, item_id
        )
        return self._run_generation(item_id, session, provider, target, context, regenerate=False)

    def _add_configuration_notice(self, item_id: int, session: ChatSession) -> ChatMessage:
        notice = ChatMessage(role="assistant", content=NO_PROVIDER_MESSAGE)
        session.messages.append(notice)
        self._save(session)
        self._emit_messages(item_id, session)
        return notice

    def _clear_aborted_flags(self, session: ChatSession) -> None:
        changed = False
        for message in session.messages:
            if message.role == "assistant" and message.is_complete is False:
                message.is_complete = None
                changed = True
        if changed:
            self._save(session)

    def _document_text(self, item_id: int) -> Optional[str]:
        if self.document_source is None:
            return None
        try:
            return self.document_source.get_text(item_id)
        except Exception:
            logger.error("Failed to read document text for item %s", item_id, exc_info=True)
            return None

    @staticmethod
    def _limit(text: str, max_chars: int) -> str:
        return text[:max_chars] if max_chars > 0 else text

    # ------------------------------------------------------------------ #
    # Aborting
    # ------------------------------------------------------------------ #

    def abort(self) -> None:
        """Cancel the running request, if any. Safe to call repeatedly."""
        token = self._cancel_token
        if token is not None:
            logger.info("Aborting in-flight request")
            token.cancel()

    def is_streaming(self) -> bool:
        token = self._cancel_token
        return token is not None and not token.is_cancelled

    # ------------------------------------------------------------------ #
    # Regeneration & versions
    # ------------------------------------------------------------------ #

    def regenerate_message(self, item_id: int, message_id: str) -> Optional[ChatMessage]:
        """
        Generate a new answer for an assistant or error message.

        The previous answer is kept in content_versions; the request only sees
        the messages that precede the target.
        """
        self._cancel_token = None
        session = self.get_active_session(item_id)
        if session is None:
            return None
        index = session.index_of(message_id)
        if index < 0:
            logger.warning("Cannot regenerate unknown message %s", message_id)
            return None
        target = session.messages[index]
        if target.role not in ("assistant", "error"):
            logger.warning("Refusing to regenerate %s message %s", target.role, message_id)
            return None

        provider = self.provider_registry.get_active_provider()
        if provider is None or not provider.is_ready():
            self._emit_error(item_id, session, ProviderNotConfiguredError(NO_PROVIDER_MESSAGE))
            return None

        if target.role == "error":
            target.role = "assistant"
            target.content = ""
            target.content_versions = []
            target.current_version_index = 0
        else:
            versions = list(target.content_versions or [])
            if target.has_content():
                versions.append(ContentVersion(content=target.content, timestamp=target.timestamp))
            target.content_versions = versions
            target.content = ""
        target.reasoning_content = None
        target.is_complete = None
        target.timestamp = now_ms()

        self._save(session)
        self._emit_messages(item_id, session)

        context = session.messages[:index]
        logger.info("Regenerating message %s with %d context messages", message_id, len(context))
        return self._run_generation(item_id, session, provider, target, context, regenerate=True)

    def switch_message_version(self, item_id: int, message_id: str, version_index: int) -> bool:
        session = self.get_active_session(item_id)
        message = session.find_message(message_id) if session else None
        if message is None or not message.content_versions:
            return False
        if not 0 <= version_index < len(message.content_versions):
            return False
        version = message.content_versions[version_index]
        message.content = version.content
        message.timestamp = version.timestamp
        message.current_version_index = version_index
        self._save(session)
        self._emit_messages(item_id, session)
        return True

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #

    def _run_generation(
        self,
        item_id: int,
        session: ChatSession,
        provider: LLMProvider,
        target: ChatMessage,
        context: List[ChatMessage],
        regenerate: bool,
    ) -> ChatMessage:
        token = CancelToken()
        self._cancel_token = token
        prefix = target.content
        throttle = SaveThrottle(clock=self._clock)
        outcome: Dict[str, Any] = {}

        def on_chunk(chunk: str) -> None:
            target.content += chunk
            if throttle.tick():
                self._save(session)
            self._emit(
                CHAT_STREAMING_UPDATE,
                {
                    "item_id": item_id,
                    "session_id": session.id,
                    "message_id": target.id,
                    "content": target.content,
                    "chunk": chunk,
                },
            )

        def on_reasoning_chunk(chunk: str) -> None:
            target.reasoning_content = (target.reasoning_content or "") + chunk
            self._emit(
                CHAT_REASONING_UPDATE,
                {
                    "item_id": item_id,
                    "session_id": session.id,
                    "message_id": target.id,
                    "reasoning_content": target.reasoning_content,
                },
            )

        callbacks = StreamCallbacks(
            on_chunk=on_chunk,
            on_complete=lambda full_text: outcome.setdefault("complete", full_text),
            on_error=lambda exc: outcome.setdefault("error", exc),
            on_reasoning_chunk=on_reasoning_chunk,
        )
        try:
            provider.stream_complete(context, callbacks, token)
        except Exception as exc:
            logger.error("Provider %s raised outside its callbacks", provider.provider_name, exc_info=True)
            outcome.setdefault("error", exc)
        finally:
            if self._cancel_token is token:
                self._cancel_token = None

        error = outcome.get("error")
        if isinstance(error, LLMAbortedError):
            return self._finish_aborted(item_id, session, target)
        if error is not None:
            return self._finish_failed(item_id, session, target, prefix, error, regenerate)
        return self._finish_completed(
            item_id, session, provider, target, prefix + outcome.get("complete", ""), regenerate
        )

    def _finish_completed(
        self,
        item_id: int,
        session: ChatSession,
        provider: LLMProvider,
        target: ChatMessage,
        content: str,
        regenerate: bool,
    ) -> ChatMessage:
        target.content = content
        target.timestamp = now_ms()
        target.is_complete = True
        if regenerate:
            versions = list(target.content_versions or [])
            versions.append(ContentVersion(content=content, timestamp=target.timestamp))
            target.content_versions = versions
            target.current_version_index = len(versions) - 1
        self._save(session)
        self._emit_complete(item_id, session, target, aborted=False)
        self._emit_messages(item_id, session)

        if not session.title and self._is_first_turn(session):
            self._generate_title(item_id, session, provider)
        return target

    def _finish_aborted(self, item_id: int, session: ChatSession, target: ChatMessage) -> ChatMessage:
        target.is_complete = False
        self._save(session)
        logger.info("Request aborted after %d characters", len(target.content))
        self._emit_complete(item_id, session, target, aborted=True)
        self._emit_messages(item_id, session)
        return target

    def _finish_failed(
        self,
        item_id: int,
        session: ChatSession,
        target: ChatMessage,
        prefix: str,
        error: Exception,
        regenerate: bool,
    ) -> ChatMessage:
        logger.error("Generation failed: %s", error, exc_info=error)
        if isinstance(error, ProviderNotConfiguredError):
            text = NO_PROVIDER_MESSAGE
            role = "assistant"
        else:
            text = str(error) or type(error).__name__
            role = "error"

        if regenerate:
            target.role = role
            target.content = text
            target.is_complete = None
            result = target
        else:
            if prefix:
                # Continued message: keep what was there before this attempt.
                target.content = prefix
                target.is_complete = False
            elif target in session.messages:
                session.messages.remove(target)
            result = ChatMessage(role=role, content=text)
            session.messages.append(result)

        self._save(session)
        if role == "error":
            self._emit_error(item_id, session, error)
        self._emit_messages(item_id, session)
        return result

    # ------------------------------------------------------------------ #
    # Titles
    # ------------------------------------------------------------------ #

    @staticmethod
    def _is_first_turn(session: ChatSession) -> bool:
        users = [message for message in session.messages if message.role == "user" and message.has_content()]
        return len(users) == 1

    def _generate_title(self, item_id: int, session: ChatSession, provider: LLMProvider) -> None:
        first_user = next((message for message in session.messages if message.role == "user"), None)
        question = extract_question(first_user.content if first_user else "")
        if not question:
            return

        title = ""
        try:
            generated = provider.chat_complete(
                [ChatMessage(role="user", content=question)],
                system_prompt=self.prompt_manager.title_prompt(),
            )
            title = self._clean_title(generated)
        except Exception as exc:
            logger.warning("Title generation failed; using the question instead: %s", exc)
        if not title:
            title = truncate(question, FALLBACK_TITLE_CHARS)

        session.title = title
        self._save(session)
        logger.info("Session %s titled '%s'", session.id, title)
        self._emit(CHAT_TITLE_UPDATED, {"item_id": item_id, "session_id": session.id, "title": title})

    @staticmethod
    def _clean_title(raw: Optional[str]) -> str:
        lines = [line.strip() for line in (raw or "").strip().splitlines() if line.strip()]
        if not lines:
            return ""
        return lines[0].strip(_TITLE_QUOTES).strip()[:TITLE_MAX_CHARS]

    # ------------------------------------------------------------------ #
    # Persistence & notifications
    # ------------------------------------------------------------------ #

    def _save(self, session: ChatSession, make_active: bool = True) -> None:
        try:
            self.session_store.save_session(session, make_active=make_active)
        except (OSError, ValueError):
            logger.error("Failed to persist session %s", session.id, exc_info=True)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_bus:
            return
        try:
            self.event_bus.dispatch(Event(event_type=event_type, payload=payload))
        except Exception:
            logger.debug("Failed to dispatch %s event", event_type, exc_info=True)

    def _emit_messages(self, item_id: int, session: ChatSession) -> None:
        self._emit(
            CHAT_MESSAGE_UPDATED,
            {
                "item_id": item_id,
                "session_id": session.id,
                "messages": [message.model_dump(mode="json", exclude_none=True) for message in session.messages],
            },
        )

    def _emit_complete(self, item_id: int, session: ChatSession, message: ChatMessage, aborted: bool) -> None:
        self._emit(
            CHAT_MESSAGE_COMPLETE,
            {"item_id": item_id, "session_id": session.id, "message_id": message.id, "aborted": aborted},
        )

    def _emit_error(self, item_id: int, session: ChatSession, error: Exception) -> None:
        self._emit(
            CHAT_ERROR,
            {
                "item_id": item_id,
                "session_id": session.id,
                "message": str(error) or type(error).__name__,
                "error_type": type(error).__name__,
            },
        )

    def _emit_session_changed(self, item_id: int, session: Optional[ChatSession]) -> None:
        self._emit(CHAT_SESSION_CHANGED, {"item_id": item_id, "session_id": session.id if session else None})
