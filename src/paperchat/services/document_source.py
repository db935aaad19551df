import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class FileDocumentSource:
    """
    Serves plain-text files as chat documents, keyed by item id.

    Used by the terminal front end; a host application with its own library
    supplies another object with the same two methods.
    """

    def __init__(self, paths: Optional[Dict[int, Path]] = None) -> None:
        self._paths: Dict[int, Path] = {}
        for item_id, path in (paths or {}).items():
            self.register(item_id, path)

    def register(self, item_id: int, path: Path) -> None:
        if item_id <= 0:
            raise ValueError("Document item ids must be positive; 0 is the global chat.")
        self._paths[item_id] = Path(path).expanduser()

    def item_ids(self):
        return sorted(self._paths)

    def get_text(self, item_id: int) -> Optional[str]:
        path = self._paths.get(item_id)
        if path is None:
            return None
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Could not read document %s for item %s: %s", path, item_id, exc)
            return None
        return text if text.strip() else None

    def get_display_name(self, item_id: int) -> Optional[str]:
        path = self._paths.get(item_id)
        return path.stem if path is not None else None
