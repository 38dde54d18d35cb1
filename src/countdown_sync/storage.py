"""
Shared key-value storage with change notification.

Contexts never talk to each other directly. They write a key here and every
*other* watcher is told about it asynchronously, on the event loop.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str, str], None]


class StorageError(Exception):
    """Base class for storage failures."""


class StorageUnavailableError(StorageError):
    """Storage is disabled or cannot be reached."""


class StorageQuotaExceededError(StorageError):
    """The value does not fit in the store."""


class SharedStorage:
    """Base class: keeps the watcher registry and delivers notifications."""

    def __init__(self):
        self._watchers: dict[str, ChangeCallback] = {}

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def put(self, key: str, value: str, origin: str | None = None) -> None:
        raise NotImplementedError

    def watch(self, context_id: str, callback: ChangeCallback) -> Callable[[], None]:
        """Register a context for change notifications. Returns an unwatch function."""
        self._watchers[context_id] = callback

        def unwatch():
            if self._watchers.get(context_id) is callback:
                del self._watchers[context_id]

        return unwatch

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    def close(self) -> None:
        self._watchers.clear()

    def _notify(self, key: str, value: str, origin: str | None) -> None:
        """Schedule delivery to every watcher except the writer."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Notification is best-effort; the value is already stored
            logger.debug("No running loop, change to %s not announced", key)
            return
        for context_id, callback in list(self._watchers.items()):
            if context_id == origin:
                continue
            loop.call_soon(self._deliver, context_id, callback, key, value)

    def _deliver(self, context_id: str, callback: ChangeCallback, key: str, value: str) -> None:
        # Watcher may have gone away between put and delivery
        if self._watchers.get(context_id) is not callback:
            return
        try:
            callback(key, value)
        except Exception:
            logger.exception("Change callback failed for context %s", context_id)


# ============================================================
# IN-MEMORY STORE
# ============================================================


class InMemorySharedStorage(SharedStorage):
    """Process-local store shared by every context on the same event loop."""

    def __init__(self, max_value_bytes: int | None = None, enabled: bool = True):
        super().__init__()
        self.max_value_bytes = max_value_bytes
        self.enabled = enabled
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        if not self.enabled:
            raise StorageUnavailableError("Storage is disabled")
        return self._data.get(key)

    def put(self, key: str, value: str, origin: str | None = None) -> None:
        if not self.enabled:
            raise StorageUnavailableError("Storage is disabled")
        if self.max_value_bytes is not None and len(value.encode()) > self.max_value_bytes:
            raise StorageQuotaExceededError(
                f"Value of {len(value.encode())} bytes exceeds quota of {self.max_value_bytes}"
            )
        self._data[key] = value
        self._notify(key, value, origin)

    def clear(self) -> None:
        self._data.clear()


# ============================================================
# FILE STORE
# ============================================================


class FileSharedStorage(SharedStorage):
    """JSON file store for contexts living in separate processes.

    Writes from this process notify local watchers straight away. Writes
    from other processes are picked up by the polling task.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)
        self._seen: dict[str, str | None] = {}
        self._poll_task: asyncio.Task | None = None

    def _read_all(self) -> dict[str, str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {self.path}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable storage file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def put(self, key: str, value: str, origin: str | None = None) -> None:
        data = self._read_all()
        data[key] = value
        tmp = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".storage-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except OSError as e:
            if tmp is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
            raise StorageUnavailableError(f"Cannot write {self.path}: {e}") from e
        self._seen[key] = value
        self._notify(key, value, origin)

    def poll_once(self) -> int:
        """Notify watchers of keys changed on disk since last seen. Returns change count."""
        changed = 0
        for key, value in self._read_all().items():
            if not isinstance(value, str) or self._seen.get(key) == value:
                continue
            self._seen[key] = value
            changed += 1
            self._notify(key, value, origin=None)
        return changed

    def start_polling(self, interval: float) -> asyncio.Task:
        if self._poll_task is None or self._poll_task.done():
            # Whatever is on disk now is the baseline, not a change
            for key, value in self._read_all().items():
                if isinstance(value, str):
                    self._seen.setdefault(key, value)
            self._poll_task = asyncio.get_running_loop().create_task(self._poll(interval))
        return self._poll_task

    async def _poll(self, interval: float):
        try:
            while True:
                try:
                    self.poll_once()
                except StorageError as e:
                    logger.warning("Storage poll failed: %s", e)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None
        super().close()
