import pytest

pytest.importorskip("PySide6")

from PySide6.QtCore import QCoreApplication

from src.paperchat.app.event_bus import EventBus
from src.paperchat.models.events import Event


@pytest.fixture(scope="module")
def qt_app():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture
def bus(qt_app) -> EventBus:
    return EventBus()


def test_dispatch_reaches_subscribers_of_that_type(bus: EventBus) -> None:
    received = []
    bus.subscribe("CHAT_CHUNK", received.append)
    bus.subscribe("OTHER", lambda event: received.append("wrong"))

    bus.dispatch(Event(event_type="CHAT_CHUNK", payload={"chunk": "Hi"}))

    assert [event.payload["chunk"] for event in received] == ["Hi"]


def test_unsubscribe_stops_delivery(bus: EventBus) -> None:
    received = []
    bus.subscribe("CHAT_CHUNK", received.append)
    bus.unsubscribe("CHAT_CHUNK", received.append)

    bus.dispatch(Event(event_type="CHAT_CHUNK"))

    assert received == []


def test_failing_callback_does_not_block_others(bus: EventBus) -> None:
    received = []

    def broken(event: Event) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe("CHAT_CHUNK", broken)
    bus.subscribe("CHAT_CHUNK", received.append)

    bus.dispatch(Event(event_type="CHAT_CHUNK"))

    assert len(received) == 1
