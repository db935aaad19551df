import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.paperchat.config import SELECTION_DEDUP_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    text: str
    item_id: int


class SelectionTracker:
    """
    Holds the most recent text selection until the chat consumes it.

    Viewers tend to report the same selection several times in quick
    succession; repeats of identical text inside the dedup window are dropped.
    """

    def __init__(
        self,
        dedup_seconds: float = SELECTION_DEDUP_SECONDS,
        on_selection: Optional[Callable[[Selection], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedup_seconds = dedup_seconds
        self.on_selection = on_selection
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Optional[Selection] = None
        self._last_text: Optional[str] = None
        self._last_at = float("-inf")

    def record_selection(self, text: str, item_id: int = 0) -> bool:
        """Store a new selection. Returns False when it was dropped as a duplicate or blank."""
        text = (text or "").strip()
        if not text:
            return False
        now = self._clock()
        with self._lock:
            if text == self._last_text and now - self._last_at < self.dedup_seconds:
                return False
            self._last_text = text
            self._last_at = now
            selection = Selection(text=text, item_id=item_id)
            self._pending = selection

        if self.on_selection is not None:
            try:
                self.on_selection(selection)
            except Exception:
                logger.error("Selection listener failed", exc_info=True)
        return True

    def consume(self) -> Optional[Selection]:
        """Return the pending selection once; later calls return None until a new selection arrives."""
        with self._lock:
            selection, self._pending = self._pending, None
        return selection

    def peek(self) -> Optional[Selection]:
        with self._lock:
            return self._pending

    def clear(self) -> None:
        with self._lock:
            self._pending = None
