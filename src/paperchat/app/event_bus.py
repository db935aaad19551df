import logging
from typing import Callable, List, Dict

from PySide6.QtCore import QObject, Signal

from src.paperchat.models.events import Event

logger = logging.getLogger(__name__)


class EventBusSignaller(QObject):
    """
    A QObject to emit signals on the main (UI) thread.
    """
    signal = Signal(Event)


class EventBus:
    """
    A simple event bus for decoupled communication between components.
    Ensures all event dispatches are handled on the thread that owns the bus,
    so chat workers can dispatch streaming updates safely.
    """
    def __init__(self):
        """Initializes the EventBus."""
        self._subscribers: Dict[str, List[Callable]] = {}
        self._signaller = EventBusSignaller()
        self._signaller.signal.connect(self._handle_event_on_main_thread)

    def subscribe(self, event_type: str, callback: Callable):
        """
        Subscribe a callback function to a specific event type.

        Args:
            event_type: The type of event to subscribe to.
            callback: The function to call when the event is dispatched.
        """
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(callback)
        logger.debug("Subscribed %s to event '%s'", getattr(callback, "__name__", callback), event_type)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def dispatch(self, event: Event):
        """
        Dispatch an event to all subscribed callbacks.
        Emits a signal; the slot runs on the bus's thread.

        Args:
            event: The Event object to dispatch.
        """
        logger.debug("Dispatching event '%s'", event.event_type)
        self._signaller.signal.emit(event)

    def _handle_event_on_main_thread(self, event: Event):
        """
        Slot connected to the signaller; runs every subscriber for the event type.
        """
        event_type = event.event_type
        callbacks = list(self._subscribers.get(event_type, []))
        if not callbacks:
            logger.debug("No subscribers for event '%s'", event_type)
            return
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(
                    "Error in callback %s for event '%s': %s",
                    getattr(callback, "__name__", callback),
                    event_type,
                    e,
                    exc_info=True,
                )
