import time
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant", "system", "error"]


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds, the unit every persisted timestamp uses."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class ContentVersion(BaseModel):
    """One generated answer kept for a regenerated assistant message."""
    content: str
    timestamp: int


class MessageImage(BaseModel):
    """An image attached to a user message, carried as base64 data."""
    id: str = Field(default_factory=new_id)
    base64: str
    mime_type: str = "image/png"
    name: Optional[str] = None


class DocumentReference(BaseModel):
    """A document dropped into the chat whose text is folded into the question."""
    id: int
    title: str
    creators: Optional[str] = None
    year: Optional[int] = None


class ChatMessage(BaseModel):
    """
    A single message in a chat session.

    Attributes:
        id: Unique message identifier.
        role: Author role; 'error' messages are shown to the user but never sent to a model.
        content: Message text. Grows while a response is streaming.
        timestamp: Creation (or last version switch) time in epoch milliseconds.
        reasoning_content: Accumulated "thinking" text streamed beside the answer.
        content_versions: Append-only history of generated answers for regenerated messages.
        current_version_index: Index into content_versions that is currently displayed.
        is_complete: Unset for normal messages, True once a stream finished, False if aborted.
        is_hidden: Hidden from display but still part of the model context.
        pdf_context: True when the message carries folded-in document text.
        selected_text: Selection quoted in the message, kept for display.
        images: Image attachments.
        documents: Documents dropped into this message.
    """
    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str = ""
    timestamp: int = Field(default_factory=now_ms)
    reasoning_content: Optional[str] = None
    content_versions: Optional[List[ContentVersion]] = None
    current_version_index: Optional[int] = None
    is_complete: Optional[bool] = None
    is_hidden: Optional[bool] = None
    pdf_context: Optional[bool] = None
    selected_text: Optional[str] = None
    images: Optional[List[MessageImage]] = None
    documents: Optional[List[DocumentReference]] = None

    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())


class ChatSession(BaseModel):
    """
    One conversation thread.

    item_id 0 marks a global session that is not tied to a document; sessions
    over several dropped documents are global and list them in document_ids.
    """
    id: str = Field(default_factory=new_id)
    item_id: int = 0
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    title: Optional[str] = None
    pdf_attached: bool = False
    pdf_content: Optional[str] = None
    document_ids: Optional[List[int]] = None
    document_names: Optional[List[str]] = None

    def find_message(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def non_empty_messages(self) -> List[ChatMessage]:
        return [message for message in self.messages if message.has_content()]


class DocumentSessions(BaseModel):
    """The persisted unit: every session belonging to one item."""
    item_id: int
    sessions: List[ChatSession] = Field(default_factory=list)
    active_session_id: Optional[str] = None

    def find_session(self, session_id: str) -> Optional[ChatSession]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None


class StoredSessionMeta(BaseModel):
    """Index entry derived from one session. Always rebuildable from DocumentSessions."""
    item_id: int
    session_id: str
    item_name: str
    message_count: int
    last_message_preview: str
    last_updated: int
    session_title: Optional[str] = None
    is_empty: bool = False
    document_ids: Optional[List[int]] = None
    document_names: Optional[List[str]] = None


class SendMessageOptions(BaseModel):
    """Per-send switches supplied by the UI."""
    attach_pdf: bool = False
    selected_text: Optional[str] = None
    images: Optional[List[MessageImage]] = None
    documents: Optional[List[DocumentReference]] = None
    continue_from_message_id: Optional[str] = None
