"""Tests for SessionStore - per-item records and the rebuildable session index."""

from __future__ import annotations

import json
from itertools import count
from pathlib import Path

import pytest

from src.paperchat.models.chat import ChatMessage, ChatSession
from src.paperchat.services.json_document_store import JsonDocumentStore
from src.paperchat.services.session_store import INDEX_KEY, SessionStore

from tests.conftest import FakeDocuments


@pytest.fixture
def ticking_clock(monkeypatch):
    """Strictly increasing now_ms so updated_at ordering is deterministic."""
    ticks = count(1_700_000_000_000, 1000)
    monkeypatch.setattr("src.paperchat.services.session_store.now_ms", lambda: next(ticks))


def _session(item_id: int, *contents: str) -> ChatSession:
    session = ChatSession(item_id=item_id)
    for index, content in enumerate(contents):
        role = "user" if index % 2 == 0 else "assistant"
        session.messages.append(ChatMessage(role=role, content=content))
    return session


def _index_file(tmp_path: Path) -> Path:
    return tmp_path / "conversations" / f"{INDEX_KEY}.json"


# -- Metadata ---------------------------------------------------------------------------


def test_saved_session_appears_in_index(session_store) -> None:
    session = _session(5, "[PDF Content]:\nbody\n\n[Question]:\nWhat is attention?", "It is a mechanism.")

    session_store.save_session(session)

    metas = session_store.list_sessions(5)
    assert len(metas) == 1
    meta = metas[0]
    assert meta.session_id == session.id
    assert meta.item_name == "Attention Is All You Need"
    assert meta.message_count == 2
    assert meta.last_message_preview == "It is a mechanism."
    assert meta.session_title == "What is attention?"
    assert meta.is_empty is False


def test_preview_and_fallback_title_are_truncated(session_store) -> None:
    question = "Please explain every single equation in section three"
    answer = "x" * 80
    session_store.save_session(_session(0, f"[Question]:\n{question}", answer))

    meta = session_store.list_sessions(0)[0]
    assert meta.item_name == "Global Chat"
    assert meta.last_message_preview == "x" * 50 + "..."
    assert meta.session_title == question[:25] + "..."


def test_explicit_title_wins(session_store) -> None:
    session = _session(0, "[Question]:\nHi")
    session.title = "Greetings"
    session_store.save_session(session)

    assert session_store.list_sessions(0)[0].session_title == "Greetings"


def test_unknown_item_gets_generic_name(session_store) -> None:
    session_store.save_session(_session(42, "Hi"))

    assert session_store.list_sessions(42)[0].item_name == "Item 42"


def test_empty_sessions_hidden_unless_requested(session_store) -> None:
    session_store.create_new_session(5)
    session_store.save_session(_session(5, "Hello"))

    assert len(session_store.list_sessions(5)) == 1
    assert len(session_store.list_sessions(5, include_empty=True)) == 2


def test_sessions_listed_most_recent_first(session_store, ticking_clock) -> None:
    older = _session(5, "old")
    newer = _session(7, "new")
    session_store.save_session(older)
    session_store.save_session(newer)

    assert [meta.session_id for meta in session_store.list_sessions()] == [newer.id, older.id]


# -- Records ----------------------------------------------------------------------------


def test_loading_drops_empty_messages(session_store) -> None:
    session = _session(5, "question")
    session.messages.append(ChatMessage(role="assistant", content=""))
    session_store.save_session(session)

    loaded = session_store.load_session(5, session.id)

    assert [message.content for message in loaded.messages] == ["question"]


def test_save_session_bumps_updated_at(session_store, ticking_clock) -> None:
    session = _session(5, "hi")
    session_store.save_session(session)
    first = session.updated_at

    session_store.save_session(session)

    assert session.updated_at > first
    assert session_store.load_session(5, session.id).updated_at == session.updated_at


def test_active_session_follows_saves(session_store) -> None:
    first = session_store.create_new_session(5)
    second = session_store.create_new_session(5)

    assert session_store.get_active_session(5).id == second.id
    assert session_store.set_active_session(5, first.id) is True
    assert session_store.get_active_session(5).id == first.id
    assert session_store.set_active_session(5, "missing") is False


def test_deleting_active_session_selects_most_recent(session_store, ticking_clock) -> None:
    oldest = session_store.create_new_session(5)
    middle = session_store.create_new_session(5)
    active = session_store.create_new_session(5)
    session_store.save_session(oldest, make_active=False)

    new_active = session_store.delete_session(5, active.id)

    assert new_active == oldest.id
    assert session_store.get_active_session(5).id == oldest.id
    remaining = {meta.session_id for meta in session_store.list_sessions(5, include_empty=True)}
    assert remaining == {oldest.id, middle.id}


def test_deleting_last_session_removes_record(session_store, tmp_path: Path) -> None:
    session = session_store.create_new_session(5)

    assert session_store.delete_session(5, session.id) is None
    assert not (tmp_path / "conversations" / "5.json").exists()
    assert session_store.list_sessions(5, include_empty=True) == []


def test_delete_all_sessions_for_item(session_store) -> None:
    session_store.save_session(_session(5, "a"))
    session_store.save_session(_session(5, "b"))
    session_store.save_session(_session(7, "c"))

    session_store.delete_all_sessions_for_item(5)

    assert session_store.list_sessions(5) == []
    assert len(session_store.list_sessions(7)) == 1


def test_corrupt_record_loads_as_none(session_store, tmp_path: Path) -> None:
    (tmp_path / "conversations" / "9.json").write_text("{broken", encoding="utf-8")

    assert session_store.load_document_sessions(9) is None


# -- Index maintenance ------------------------------------------------------------------


def test_missing_index_is_rebuilt(tmp_path: Path, documents: FakeDocuments) -> None:
    directory = tmp_path / "conversations"
    store = SessionStore(JsonDocumentStore(directory), documents)
    session = _session(5, "hello")
    store.save_session(session)
    _index_file(tmp_path).unlink()

    reopened = SessionStore(JsonDocumentStore(directory), documents)

    assert [meta.session_id for meta in reopened.list_sessions()] == [session.id]
    assert _index_file(tmp_path).exists()


def test_corrupt_index_is_rebuilt(tmp_path: Path, documents: FakeDocuments) -> None:
    directory = tmp_path / "conversations"
    store = SessionStore(JsonDocumentStore(directory), documents)
    store.save_session(_session(5, "hello"))
    _index_file(tmp_path).write_text("not json", encoding="utf-8")

    reopened = SessionStore(JsonDocumentStore(directory), documents)

    assert len(reopened.list_sessions()) == 1


def test_rebuild_is_idempotent(session_store, tmp_path: Path, ticking_clock) -> None:
    for item_id in (5, 7, 0):
        session_store.save_session(_session(item_id, f"message for {item_id}"))

    first = session_store.rebuild_index()
    first_bytes = _index_file(tmp_path).read_bytes()
    second = session_store.rebuild_index()

    assert first == second
    assert _index_file(tmp_path).read_bytes() == first_bytes


def test_rebuild_matches_incremental_index(session_store, ticking_clock) -> None:
    session_store.save_session(_session(5, "a", "b"))
    session_store.save_session(_session(7, "c"))
    incremental = session_store.list_sessions(include_empty=True)

    rebuilt = session_store.rebuild_index()

    assert rebuilt == incremental


def test_rebuild_skips_unreadable_records(session_store, tmp_path: Path) -> None:
    session_store.save_session(_session(5, "fine"))
    (tmp_path / "conversations" / "8.json").write_text("{broken", encoding="utf-8")
    (tmp_path / "conversations" / "notes.json").write_text("{}", encoding="utf-8")

    metas = session_store.rebuild_index()

    assert [meta.item_id for meta in metas] == [5]


def test_index_written_with_sorted_keys(session_store, tmp_path: Path) -> None:
    session_store.save_session(_session(5, "hello"))

    raw = json.loads(_index_file(tmp_path).read_text(encoding="utf-8"))
    entry = raw["sessions"][0]
    assert list(entry) == sorted(entry)


def test_clear_all_removes_everything(session_store) -> None:
    session_store.save_session(_session(5, "a"))
    session_store.save_session(_session(0, "b"))

    session_store.clear_all()

    assert session_store.list_sessions(include_empty=True) == []


# -- Export / import --------------------------------------------------------------------


def test_export_then_import_creates_new_session(session_store) -> None:
    original = _session(5, "question", "answer")
    original.title = "Exported"
    session_store.save_session(original)

    payload = session_store.export_session(5, original.id)
    imported = session_store.import_session(payload, item_id=7)

    assert imported.id != original.id
    assert imported.item_id == 7
    assert imported.title == "Exported"
    assert [message.content for message in imported.messages] == ["question", "answer"]
    assert session_store.load_session(7, imported.id) is not None


def test_import_rejects_garbage(session_store) -> None:
    assert session_store.import_session('{"messages": "nope"}') is None


def test_export_missing_session_returns_none(session_store) -> None:
    assert session_store.export_session(5, "missing") is None
