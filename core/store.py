"""
core/store.py
Named-blob state persistence with atomic writes, backup recovery and
coalesced flushing.

Each stateful component owns one blob, described by a pydantic model:
  - Atomic: write <name>.json.tmp, fsync, os.replace over <name>.json
  - Backup: a good primary is copied to <name>.json.prev on load; a missing
    or corrupt primary falls back to .prev, then to the model default
  - Coalesced: set()/mark_dirty() only flag the blob; flush() writes it.
    StoreRegistry.flush_all() is called by the periodic job and at shutdown.

Model validators sanitize loaded data (clamping, truncation) so manual edits
and older schema versions load cleanly.
"""

import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Callable, Generic, Protocol, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class StateStore(Protocol[ModelT]):
    """Interface shared by the on-disk store and the in-memory store."""

    name: str

    def load(self) -> ModelT: ...

    def get(self) -> ModelT: ...

    def set(self, value: ModelT) -> None: ...

    def mark_dirty(self) -> None: ...

    def flush(self) -> bool: ...


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------

class JsonStore(Generic[ModelT]):
    """One pydantic model persisted as ``<data_dir>/<name>.json``."""

    def __init__(
        self,
        name: str,
        model: type[ModelT],
        data_dir: Path,
        default_factory: Callable[[], ModelT] | None = None,
    ) -> None:
        self.name = name
        self._model = model
        self._default = default_factory or model
        self._dir = Path(data_dir)
        self.path = self._dir / f"{name}.json"
        self.backup_path = self._dir / f"{name}.json.prev"
        self.tmp_path = self._dir / f"{name}.json.tmp"
        self._value: ModelT = self._default()
        self._dirty = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Disk helpers
    # ------------------------------------------------------------------

    def _try_read(self, path: Path) -> ModelT | None:
        """Parse and validate a blob; None if missing or unreadable."""
        if not path.exists():
            return None
        try:
            return self._model.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Store %s: %s is unreadable: %s", self.name, path.name, exc)
            return None

    def _atomic_write(self) -> None:
        """Write tmp, fsync, then rename over the primary file."""
        self._dir.mkdir(parents=True, exist_ok=True)
        payload = self._value.model_dump_json(indent=2)
        with open(self.tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(self.tmp_path, self.path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self) -> ModelT:
        """Load primary, else backup, else default. Never raises on bad data."""
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)

            primary = self._try_read(self.path)
            if primary is not None:
                self._value = primary
                self._dirty = False
                try:
                    shutil.copyfile(self.path, self.backup_path)
                except OSError as exc:
                    logger.warning("Store %s: backup copy failed: %s", self.name, exc)
                logger.info("Store %s loaded", self.name)
                return self._value

            backup = self._try_read(self.backup_path)
            if backup is not None:
                self._value = backup
                logger.warning("Store %s recovered from backup", self.name)
                try:
                    self._atomic_write()
                    self._dirty = False
                except OSError as exc:
                    self._dirty = True
                    logger.warning("Store %s: rewrite after recovery failed: %s", self.name, exc)
                return self._value

            self._value = self._default()
            self._dirty = False
            logger.info("Store %s initialized with defaults", self.name)
            return self._value

    def get(self) -> ModelT:
        return self._value

    def set(self, value: ModelT) -> None:
        with self._lock:
            self._value = value
            self._dirty = True

    def mark_dirty(self) -> None:
        with self._lock:
            self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    def flush(self) -> bool:
        """Write the blob if dirty. Returns True when a write happened."""
        with self._lock:
            if not self._dirty:
                return False
            try:
                self._atomic_write()
            except OSError as exc:
                logger.warning("Store %s: flush failed: %s", self.name, exc)
                return False
            self._dirty = False
            return True


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryStore(Generic[ModelT]):
    """Same contract as JsonStore, kept in process memory only."""

    def __init__(
        self,
        name: str,
        model: type[ModelT],
        default_factory: Callable[[], ModelT] | None = None,
        initial: ModelT | None = None,
    ) -> None:
        self.name = name
        self._model = model
        self._default = default_factory or model
        self._value: ModelT = initial if initial is not None else self._default()
        self._dirty = False
        self.flush_count = 0
        self._lock = threading.Lock()

    def load(self) -> ModelT:
        return self._value

    def get(self) -> ModelT:
        return self._value

    def set(self, value: ModelT) -> None:
        with self._lock:
            self._value = value
            self._dirty = True

    def mark_dirty(self) -> None:
        with self._lock:
            self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    def flush(self) -> bool:
        with self._lock:
            if not self._dirty:
                return False
            self._dirty = False
            self.flush_count += 1
            return True


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class StoreRegistry:
    """Creates stores and flushes them together.

    With ``data_dir=None`` every store is a MemoryStore.
    """

    def __init__(self, data_dir: Path | str | None = None) -> None:
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._stores: list[JsonStore | MemoryStore] = []

    def create(
        self,
        name: str,
        model: type[ModelT],
        default_factory: Callable[[], ModelT] | None = None,
    ) -> "JsonStore[ModelT] | MemoryStore[ModelT]":
        store: JsonStore | MemoryStore
        if self._data_dir is None:
            store = MemoryStore(name, model, default_factory)
        else:
            store = JsonStore(name, model, self._data_dir, default_factory)
        self._stores.append(store)
        return store

    @property
    def stores(self) -> list:
        return list(self._stores)

    def flush_all(self) -> int:
        """Flush every dirty store. Safe to call from the job and at shutdown."""
        flushed = 0
        for store in self._stores:
            if store.flush():
                flushed += 1
        if flushed:
            logger.debug("Flushed %d store(s)", flushed)
        return flushed
