import fcntl
import logging
import os
import re
from pathlib import Path
from typing import Dict, Optional, Protocol

from .config import settings

logger = logging.getLogger(__name__)

# Well-known document keys
ENTRIES_KEY = "progress_entries"
QUEUE_KEY = "offline_queue"
CATEGORIES_KEY = "library_categories"
DEFAULT_CATEGORY_KEY = "default_category"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage. Nothing survives a restart."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileStorage:
    """One JSON document per key inside a directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.read_only = False
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create data directory {self.directory}: {e}")
            self.read_only = True

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        if not settings.PERSIST_ENABLED or self.read_only:
            return

        path = self._path(key)
        tmp_path = path.with_suffix('.tmp')
        try:
            # Atomic write pattern with locking
            with open(tmp_path, 'w', encoding='utf-8') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning(f"Could not acquire lock for {key}. Skipping save.")
                    return

                try:
                    f.write(value)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.replace(tmp_path, path)

        except OSError as e:
            logger.error(f"Failed to save {key} to {path}: {e}")
            # If we can't write, switch to read-only to be safe for this run
            self.read_only = True

    def remove(self, key: str) -> None:
        if self.read_only:
            return
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove {key}: {e}")
