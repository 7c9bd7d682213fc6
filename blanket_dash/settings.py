"""
Local persistent settings.

A small string key/value store kept in a JSON document on disk, used to
remember user preferences (autorefresh toggle, last task filter) across
sessions. Storage problems never propagate: if the store can't be used
at startup, every operation quietly does nothing.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from blanket_dash.atomic import AtomicFileWriter, FileLock


logger = logging.getLogger(__name__)


DEFAULT_STORE_FILE = Path.home() / ".config" / "blanket-dash" / "local_store.json"

KEY_PREFIX = "blanket."

# Persisted keys
SHOULD_REFRESH_KEY = "shouldRefresh"
TASK_FILTERS_KEY = "taskFilters"

_PROBE_KEY = "__probe__"


class LocalStore:
    """
    Capability-checked key/value store.

    Values are strings, like browser local storage; booleans are written
    as "true"/"false".
    """

    def __init__(self, path: Optional[Path] = None, prefix: str = KEY_PREFIX):
        """
        Initialize the store and check that it is usable.

        Args:
            path: JSON file backing the store
            prefix: Namespace prepended to every key
        """
        self.path = Path(path) if path else DEFAULT_STORE_FILE
        self.prefix = prefix
        self.lock = FileLock(self.path.with_suffix(".lock"))
        self.available = self._probe()

        if not self.available:
            logger.warning(f"Local storage unavailable at {self.path}; preferences will not be saved")

    def _probe(self) -> bool:
        """Write and remove a probe key once."""
        try:
            self._update(_PROBE_KEY, "1")
            self._update(_PROBE_KEY, None)
            return True
        except (OSError, RuntimeError, TypeError, ValueError) as e:
            logger.debug(f"Local storage probe failed: {e}")
            return False

    def _read(self) -> Dict[str, str]:
        data = AtomicFileWriter.read_json(self.path, default={})
        return data if isinstance(data, dict) else {}

    def _update(self, key: str, value: Optional[str]) -> None:
        with self.lock:
            data = self._read()
            if value is None:
                data.pop(self.prefix + key, None)
            else:
                data[self.prefix + key] = value
            AtomicFileWriter.write_json(self.path, data)

    def get_item(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        value = self._read().get(self.prefix + key)
        return None if value is None else str(value)

    def set_item(self, key: str, value: Any) -> None:
        if not self.available:
            return
        if isinstance(value, bool):
            value = "true" if value else "false"
        try:
            self._update(key, str(value))
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not save '{key}' to local storage: {e}")

    def remove_item(self, key: str) -> None:
        if not self.available:
            return
        try:
            self._update(key, None)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not remove '{key}' from local storage: {e}")

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get_item(key)
        if value is None:
            return default
        return value == "true"

    def get_json(self, key: str, default: Any = None) -> Any:
        """Decode a JSON blob, returning `default` when absent or corrupt."""
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring corrupt JSON stored under '{key}'")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value, sort_keys=True))
