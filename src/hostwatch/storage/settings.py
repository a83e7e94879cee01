"""
Key/value store for runtime settings (schedules, retention, blacklist, ...).
Values are JSON-compatible structures.
"""
import abc
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..config import StorageConfig

logger = structlog.get_logger(__name__)


class SettingsStoreError(Exception):
    """Raised when settings cannot be read or written."""
    pass


class BaseSettingsStore(abc.ABC):
    """Abstract base class for runtime settings persistence."""

    @abc.abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        pass

    @abc.abstractmethod
    def set(self, key: str, value: Any) -> None:
        pass

    @abc.abstractmethod
    def delete(self, key: str) -> None:
        pass


class InMemorySettingsStore(BaseSettingsStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._values:
            return default
        return copy.deepcopy(self._values[key])

    def set(self, key: str, value: Any) -> None:
        self._values[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class JsonFileSettingsStore(InMemorySettingsStore):
    """Keeps every key in one JSON document, rewritten atomically on change."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logger.bind(storage_type="json_file", file_path=str(self.path))
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            self.logger.warning("Settings file is corrupt, starting empty", error=str(e))
            return {}
        except OSError as e:
            raise SettingsStoreError(f"Cannot read settings file {self.path}: {e}") from e
        if not isinstance(data, dict):
            self.logger.warning("Settings file does not hold an object, starting empty")
            return {}
        return data

    def _flush(self) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._values, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise SettingsStoreError(f"Cannot write settings file {self.path}: {e}") from e

    def set(self, key: str, value: Any) -> None:
        super().set(key, value)
        self._flush()

    def delete(self, key: str) -> None:
        super().delete(key)
        self._flush()


def get_settings_store(storage_config: StorageConfig) -> BaseSettingsStore:
    """Factory function to get a settings store based on configuration."""
    backend = storage_config.settings_backend.lower()
    if backend == "memory":
        return InMemorySettingsStore()
    if backend == "file":
        return JsonFileSettingsStore(storage_config.settings_path)
    raise ValueError(f"Unsupported settings backend: {storage_config.settings_backend}")
