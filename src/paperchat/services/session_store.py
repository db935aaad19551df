"""
Durable chat session storage with a derived metadata index.

All sessions of one item live in a single document keyed by the item id. A
separate ``_index`` document holds one StoredSessionMeta per session so
listings never open the per-item documents. The index is a cache: when it
is missing or unreadable it is rebuilt from the per-item documents.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Protocol

from pydantic import ValidationError

from src.paperchat.config import GLOBAL_ITEM_ID
from src.paperchat.models.chat import (
    ChatSession,
    DocumentSessions,
    StoredSessionMeta,
    new_id,
    now_ms,
)
from src.paperchat.services.json_document_store import JsonDocumentStore
from src.paperchat.utils.content_markers import extract_question, truncate

logger = logging.getLogger(__name__)

INDEX_KEY = "_index"
INDEX_VERSION = 1
GLOBAL_CHAT_NAME = "Global Chat"
PREVIEW_LENGTH = 50
FALLBACK_TITLE_LENGTH = 25
REBUILD_WORKERS = 8


class DocumentNameSource(Protocol):
    def get_display_name(self, item_id: int) -> Optional[str]:
        ...


class SessionStore:
    """Persists DocumentSessions records and keeps the session index in step with them."""

    def __init__(self, store: JsonDocumentStore, document_source: Optional[DocumentNameSource] = None) -> None:
        self.store = store
        self.document_source = document_source
        self._lock = threading.RLock()
        self._index: Optional[List[StoredSessionMeta]] = None

    # --------------------------------------------------------------------- #
    # Index maintenance
    # --------------------------------------------------------------------- #
    def _ensure_index(self) -> List[StoredSessionMeta]:
        with self._lock:
            if self._index is None:
                self._index = self._load_index()
                if self._index is None:
                    self.rebuild_index()
            return self._index

    def _load_index(self) -> Optional[List[StoredSessionMeta]]:
        try:
            data = self.store.read(INDEX_KEY)
        except ValueError:
            logger.warning("Session index is corrupted; rebuilding.")
            return None
        if not isinstance(data, dict) or not isinstance(data.get("sessions"), list):
            if data is not None:
                logger.warning("Session index has an unexpected shape; rebuilding.")
            return None
        try:
            return [StoredSessionMeta.model_validate(entry) for entry in data["sessions"]]
        except ValidationError as exc:
            logger.warning("Session index failed validation; rebuilding: %s", exc)
            return None

    def _save_index(self) -> None:
        self._index = self._sorted(self._index or [])
        self.store.write(
            INDEX_KEY,
            {
                "version": INDEX_VERSION,
                "sessions": [meta.model_dump(mode="json", exclude_none=True) for meta in self._index],
            },
        )

    @staticmethod
    def _sorted(metas: List[StoredSessionMeta]) -> List[StoredSessionMeta]:
        return sorted(metas, key=lambda meta: (-meta.last_updated, meta.item_id, meta.session_id))

    def _item_keys(self) -> List[str]:
        keys = []
        for key in self.store.list_keys():
            if key.startswith("_"):
                continue
            try:
                int(key)
            except ValueError:
                logger.debug("Ignoring non-session document '%s'", key)
                continue
            keys.append(key)
        return keys

    def _metas_for_record(self, key: str) -> List[StoredSessionMeta]:
        try:
            doc = self._read_record(int(key))
        except (ValueError, OSError) as exc:
            logger.error("Skipping unreadable session record '%s' during index rebuild: %s", key, exc)
            return []
        if doc is None:
            return []
        return [self.build_session_meta(session, doc.item_id) for session in doc.sessions]

    def rebuild_index(self) -> List[StoredSessionMeta]:
        """Re-derive the index from every per-item record and persist it."""
        keys = self._item_keys()
        with self._lock:
            metas: List[StoredSessionMeta] = []
            if keys:
                with ThreadPoolExecutor(
                    max_workers=min(REBUILD_WORKERS, len(keys)), thread_name_prefix="session-index"
                ) as executor:
                    for record_metas in executor.map(self._metas_for_record, keys):
                        metas.extend(record_metas)
            self._index = metas
            self._save_index()
            logger.info("Session index rebuilt: %d sessions across %d items", len(metas), len(keys))
            return list(self._index)

    def build_session_meta(self, session: ChatSession, item_id: int) -> StoredSessionMeta:
        non_empty = session.non_empty_messages()
        preview = truncate(non_empty[-1].content, PREVIEW_LENGTH) if non_empty else ""
        return StoredSessionMeta(
            item_id=item_id,
            session_id=session.id,
            item_name=self._item_name(item_id),
            message_count=len(non_empty),
            last_message_preview=preview,
            last_updated=session.updated_at,
            session_title=session.title or self._fallback_title(session),
            is_empty=not non_empty,
            document_ids=session.document_ids,
            document_names=session.document_names,
        )

    def _item_name(self, item_id: int) -> str:
        if item_id == GLOBAL_ITEM_ID:
            return GLOBAL_CHAT_NAME
        name = None
        if self.document_source is not None:
            try:
                name = self.document_source.get_display_name(item_id)
            except Exception:
                logger.debug("Display name lookup failed for item %s", item_id, exc_info=True)
        return name or f"Item {item_id}"

    @staticmethod
    def _fallback_title(session: ChatSession) -> Optional[str]:
        for message in session.messages:
            if message.role == "user":
                question = extract_question(message.content)
                if question:
                    return truncate(question, FALLBACK_TITLE_LENGTH)
        return None

    def _update_index_entries(self, doc: DocumentSessions) -> None:
        index = self._ensure_index()
        kept = [meta for meta in index if meta.item_id != doc.item_id]
        kept.extend(self.build_session_meta(session, doc.item_id) for session in doc.sessions)
        self._index = kept
        self._save_index()

    # --------------------------------------------------------------------- #
    # Per-item records
    # --------------------------------------------------------------------- #
    def _read_record(self, item_id: int) -> Optional[DocumentSessions]:
        data = self.store.read(str(item_id))
        if data is None:
            return None
        try:
            return DocumentSessions.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Session record for item {item_id} is invalid.") from exc

    def load_document_sessions(self, item_id: int) -> Optional[DocumentSessions]:
        """Load every session of ``item_id``; messages without content are dropped."""
        try:
            doc = self._read_record(item_id)
        except ValueError as exc:
            logger.error("Failed to load sessions for item %s: %s", item_id, exc)
            return None
        if doc is None:
            return None
        for session in doc.sessions:
            session.messages = [
                message for message in session.messages if message.has_content() or message.images
            ]
        return doc

    def save_document_sessions(self, doc: DocumentSessions) -> None:
        with self._lock:
            if doc.active_session_id and doc.find_session(doc.active_session_id) is None:
                doc.active_session_id = self._most_recent_id(doc)
            self.store.write(str(doc.item_id), doc.model_dump(mode="json", exclude_none=True))
            self._update_index_entries(doc)
        logger.debug("Saved %d sessions for item %s", len(doc.sessions), doc.item_id)

    def save_session(self, session: ChatSession, make_active: bool = True) -> None:
        """Insert or replace ``session`` in its item's record and bump updated_at."""
        with self._lock:
            doc = self.load_document_sessions(session.item_id) or DocumentSessions(item_id=session.item_id)
            session.updated_at = now_ms()
            stored = session.model_copy(deep=True)
            for index, existing in enumerate(doc.sessions):
                if existing.id == session.id:
                    doc.sessions[index] = stored
                    break
            else:
                doc.sessions.append(stored)
            if make_active or doc.active_session_id is None:
                doc.active_session_id = session.id
            self.save_document_sessions(doc)

    def load_session(self, item_id: int, session_id: str) -> Optional[ChatSession]:
        doc = self.load_document_sessions(item_id)
        return doc.find_session(session_id) if doc else None

    def get_active_session(self, item_id: int) -> Optional[ChatSession]:
        doc = self.load_document_sessions(item_id)
        if doc is None or not doc.sessions:
            return None
        if doc.active_session_id:
            session = doc.find_session(doc.active_session_id)
            if session is not None:
                return session
        return doc.find_session(self._most_recent_id(doc))

    def set_active_session(self, item_id: int, session_id: str) -> bool:
        with self._lock:
            doc = self.load_document_sessions(item_id)
            if doc is None or doc.find_session(session_id) is None:
                return False
            doc.active_session_id = session_id
            self.store.write(str(item_id), doc.model_dump(mode="json", exclude_none=True))
            return True

    @staticmethod
    def _most_recent_id(doc: DocumentSessions) -> Optional[str]:
        if not doc.sessions:
            return None
        return max(doc.sessions, key=lambda session: (session.updated_at, session.created_at)).id

    def delete_session(self, item_id: int, session_id: str) -> Optional[str]:
        """
        Delete one session.

        Returns:
            The item's active session id afterwards, or None when no sessions remain.
        """
        with self._lock:
            doc = self.load_document_sessions(item_id)
            if doc is None:
                return None
            doc.sessions = [session for session in doc.sessions if session.id != session_id]
            if not doc.sessions:
                self.store.delete(str(item_id))
                self._index = [meta for meta in self._ensure_index() if meta.item_id != item_id]
                self._save_index()
                logger.info("Deleted last session of item %s", item_id)
                return None
            if doc.active_session_id == session_id:
                doc.active_session_id = self._most_recent_id(doc)
            self.save_document_sessions(doc)
            logger.info("Deleted session %s of item %s", session_id, item_id)
            return doc.active_session_id

    def delete_all_sessions_for_item(self, item_id: int) -> None:
        with self._lock:
            self.store.delete(str(item_id))
            self._index = [meta for meta in self._ensure_index() if meta.item_id != item_id]
            self._save_index()
        logger.info("Deleted all sessions of item %s", item_id)

    def list_sessions(self, item_id: Optional[int] = None, include_empty: bool = False) -> List[StoredSessionMeta]:
        """Session metadata, most recent first, answered from the index alone."""
        result = list(self._ensure_index())
        if item_id is not None:
            result = [meta for meta in result if meta.item_id == item_id]
        if not include_empty:
            result = [meta for meta in result if not meta.is_empty]
        return self._sorted(result)

    def create_new_session(self, item_id: int) -> ChatSession:
        session = ChatSession(item_id=item_id)
        self.save_session(session)
        return session

    def clear_all(self) -> None:
        with self._lock:
            for key in self.store.list_keys():
                self.store.delete(key)
            self._index = []
        logger.info("All chat sessions cleared")

    # --------------------------------------------------------------------- #
    # Export / import
    # --------------------------------------------------------------------- #
    def export_session(self, item_id: int, session_id: str) -> Optional[str]:
        session = self.load_session(item_id, session_id)
        if session is None:
            return None
        return session.model_dump_json(indent=2, exclude_none=True)

    def import_session(self, payload: str, item_id: Optional[int] = None) -> Optional[ChatSession]:
        """Store an exported session under a fresh id. Returns None if ``payload`` is not a session."""
        try:
            session = ChatSession.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Rejected session import: %s", exc)
            return None
        if item_id is not None:
            session.item_id = item_id
        session.id = new_id()
        session.created_at = now_ms()
        self.save_session(session)
        return session
