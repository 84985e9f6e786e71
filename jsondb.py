import json
import logging
import os
from typing import Any, Dict

logger = logging.getLogger(__name__)


class JsonFileDb:
    """
    One JSON object per file, keyed by logical names.

    Reads always go back to disk; writes replace the whole document through a
    temp file and an atomic rename.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: Dict[str, Any] = {}

    def _read(self) -> Dict[str, Any]:
        try:
            if os.path.exists(self.path):
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._data = data if isinstance(data, dict) else {}
            else:
                self._data = {}
        except (OSError, ValueError) as e:
            logger.error("[db] Failed to read %s: %s", self.path, e)
            self._data = {}
        return self._data

    def _write(self) -> bool:
        tmp_path = self.path + ".tmp"
        try:
            parent = os.path.dirname(self.path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.error("[db] Failed to write %s: %s", self.path, e)
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as e2:
                    logger.error("[db] Failed to remove temp file %s: %s", tmp_path, e2)
            return False

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> bool:
        self._read()
        self._data[key] = value
        return self._write()

    def has(self, key: str) -> bool:
        return key in self._read()

    def delete(self, key: str) -> bool:
        data = self._read()
        if key not in data:
            return False
        del data[key]
        return self._write()

    def all(self) -> Dict[str, Any]:
        return dict(self._read())
