import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from PySide6.QtCore import QCoreApplication, QThreadPool

from src.paperchat.app.event_bus import EventBus
from src.paperchat.config import CONVERSATIONS_DIR, SETTINGS_FILE
from src.paperchat.models.event_types import PROVIDER_SELECTION_CHANGED
from src.paperchat.models.events import Event
from src.paperchat.models.provider import ModelSelection
from src.paperchat.services.chat_manager import ChatManager, DocumentSource
from src.paperchat.services.json_document_store import JsonDocumentStore
from src.paperchat.services.provider_registry import ProviderFactory, ProviderRegistry
from src.paperchat.services.selection_tracker import SelectionTracker
from src.paperchat.services.session_store import SessionStore
from src.paperchat.services.user_settings_manager import UserSettingsManager
from src.ui.qt_worker import Worker

logger = logging.getLogger(__name__)


class PaperChatApp:
    """
    Composition root: builds the services and wires them together.
    """

    def __init__(
        self,
        settings_path: Optional[Path] = None,
        conversations_dir: Optional[Path] = None,
        document_source: Optional[DocumentSource] = None,
        provider_factory: Optional[ProviderFactory] = None,
        event_bus=None,
    ):
        logger.info("Initializing PaperChatApp...")
        self.qt_app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
        self.thread_pool = QThreadPool.globalInstance()

        self.event_bus = event_bus or EventBus()
        self.settings = UserSettingsManager(settings_path or SETTINGS_FILE)
        self.provider_registry = ProviderRegistry(self.settings, provider_factory)
        self.session_store = SessionStore(
            JsonDocumentStore(conversations_dir or CONVERSATIONS_DIR), document_source
        )
        self.selection_tracker = SelectionTracker()
        self.chat_manager = ChatManager(
            self.session_store,
            self.provider_registry,
            event_bus=self.event_bus,
            document_source=document_source,
            selection_source=self.selection_tracker,
        )
        self._unsubscribe_selection = self.provider_registry.subscribe(self._on_selection_changed)
        logger.info("PaperChatApp initialized successfully.")

    def _on_selection_changed(self, selection: ModelSelection) -> None:
        self.event_bus.dispatch(Event(event_type=PROVIDER_SELECTION_CHANGED, payload=selection.model_dump()))

    def run_in_background(self, fn: Callable, *args, **kwargs) -> Dict[str, Any]:
        """
        Run ``fn`` on the thread pool and pump Qt events until it finishes.

        Ctrl+C while waiting aborts the in-flight chat request instead of
        killing the process. Returns ``{"result": ...}`` or ``{"error": ...}``.
        """
        outcome: Dict[str, Any] = {}
        worker = Worker(fn, *args, **kwargs)
        worker.signals.result.connect(lambda value: outcome.setdefault("result", value))
        worker.signals.error.connect(lambda message: outcome.setdefault("error", message))
        worker.signals.finished.connect(lambda: outcome.setdefault("finished", True))
        self.thread_pool.start(worker)

        while "finished" not in outcome:
            try:
                self.qt_app.processEvents()
                time.sleep(0.02)
            except KeyboardInterrupt:
                logger.info("Interrupted; aborting the current request")
                self.chat_manager.abort()
        outcome.pop("finished", None)
        return outcome

    def destroy(self) -> None:
        self._unsubscribe_selection()
        self.chat_manager.destroy()
        self.provider_registry.destroy()
        self.thread_pool.waitForDone(2000)
        logger.info("PaperChatApp shut down.")
