import json
import logging
import os
import re
import threading
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_VALID_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonDocumentStore:
    """
    Directory-scoped key -> JSON document store.

    Each key maps to ``<directory>/<key>.json``. Writes go through a temporary
    file and ``os.replace`` so readers never see a half-written document. If
    the directory cannot be created the store keeps documents in memory.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser()
        self._lock = threading.RLock()
        self._fallback_mode = False
        self._fallback_documents: Dict[str, Any] = {}
        self._initialize_directory()

    # --------------------------------------------------------------------- #
    # Initialization
    # --------------------------------------------------------------------- #
    def _initialize_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info("Document store initialized at %s", self.directory)
        except OSError as exc:
            logger.error(
                "Unable to initialize document store at %s: %s. Falling back to in-memory storage.",
                self.directory,
                exc,
            )
            self._activate_fallback_mode()

    def _activate_fallback_mode(self) -> None:
        self._fallback_mode = True
        self._fallback_documents = {}

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    def _path(self, key: str) -> Path:
        if not _VALID_KEY.match(key) or key.startswith("."):
            raise ValueError(f"Invalid document key: {key!r}")
        return self.directory / f"{key}.json"

    # --------------------------------------------------------------------- #
    # Operations
    # --------------------------------------------------------------------- #
    def exists(self, key: str) -> bool:
        path = self._path(key)
        if self._fallback_mode:
            return key in self._fallback_documents
        return path.exists()

    def read(self, key: str) -> Optional[Any]:
        """Return the decoded document, None if absent.

        Raises:
            ValueError: If the stored document is not valid JSON.
        """
        path = self._path(key)
        if self._fallback_mode:
            with self._lock:
                document = self._fallback_documents.get(key)
            return json.loads(document) if document is not None else None

        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return json.loads(raw)
        except JSONDecodeError as exc:
            logger.error("Document '%s' has invalid JSON: %s", key, exc)
            raise ValueError(f"Document '{key}' is corrupted.") from exc

    def write(self, key: str, data: Any) -> None:
        path = self._path(key)
        serialized = json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False)
        if self._fallback_mode:
            with self._lock:
                self._fallback_documents[key] = serialized
            return

        temp_path = path.with_name(f".{path.name}.{threading.get_ident()}.tmp")
        with self._lock:
            try:
                temp_path.write_text(serialized, encoding="utf-8")
                os.replace(temp_path, path)
            except OSError as exc:
                logger.error("Failed writing document '%s' to %s: %s", key, path, exc)
                try:
                    temp_path.unlink(missing_ok=True)
                except OSError:
                    logger.debug("Could not remove temporary file %s", temp_path, exc_info=True)
                raise

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if self._fallback_mode:
            with self._lock:
                return self._fallback_documents.pop(key, None) is not None
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def list_keys(self) -> List[str]:
        """Keys of all stored documents, sorted."""
        if self._fallback_mode:
            with self._lock:
                return sorted(self._fallback_documents)
        if not self.directory.exists():
            return []
        return sorted(path.stem for path in self.directory.glob("*.json") if not path.name.startswith("."))
