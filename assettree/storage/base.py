from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
import logging
import os

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised by a backend when it cannot read or write a key."""


class StorageQuotaError(StorageError):
    """Raised when a write would exceed the backend's quota."""


@dataclass(frozen=True)
class StorageEvent:
    """
    A change to `key` made by another context. `new_value` None means removed.

    `old_value` is the text the receiving context last knew for the key, or
    None when it never saw one.
    """
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StorageListener = Callable[[StorageEvent], None]


class Storage(ABC):
    """
    Abstract string key/value storage shared between execution contexts.

    A write made through one Storage object is reported to the listeners of
    every *other* context attached to the same storage, never to its own.
    """

    def __init__(self):
        self._listeners: Dict[int, StorageListener] = {}
        self._next_token = 0

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        """Return the stored text for `key`, or None when absent."""

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        """Store `value` under `key`."""

    @abstractmethod
    def remove_item(self, key: str) -> None:
        """Delete `key`; removing an absent key does nothing."""

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Register a listener for external changes; returns an unsubscribe callable."""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _dispatch(self, event: StorageEvent) -> None:
        for listener in list(self._listeners.values()):
            listener(event)


class _SharedArea:
    """The data behind a group of MemoryStorage contexts."""

    def __init__(self, quota: Optional[int]):
        self.items: Dict[str, str] = {}
        self.quota = quota
        self.contexts: List["MemoryStorage"] = []

    def size_with(self, key: str, value: str) -> int:
        total = sum(len(k) + len(v) for k, v in self.items.items() if k != key)
        return total + len(key) + len(value)


class MemoryStorage(Storage):
    """
    In-process storage; `context()` opens another view onto the same data,
    the way two browser tabs share one origin's local storage.
    """

    def __init__(self, quota: Optional[int] = None, _area: Optional[_SharedArea] = None):
        super().__init__()
        self._area = _area if _area is not None else _SharedArea(quota)
        self._area.contexts.append(self)

    def context(self) -> "MemoryStorage":
        return MemoryStorage(_area=self._area)

    def get_item(self, key: str) -> Optional[str]:
        return self._area.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        quota = self._area.quota
        if quota is not None and self._area.size_with(key, value) > quota:
            raise StorageQuotaError(f"Writing {key!r} would exceed the {quota} byte quota")
        old = self._area.items.get(key)
        self._area.items[key] = value
        self._broadcast(StorageEvent(key, old, value))

    def remove_item(self, key: str) -> None:
        if key not in self._area.items:
            return
        old = self._area.items.pop(key)
        self._broadcast(StorageEvent(key, old, None))

    def _broadcast(self, event: StorageEvent) -> None:
        for other in list(self._area.contexts):
            if other is not self:
                other._dispatch(event)


class FileStorage(Storage):
    """
    One JSON text file per key inside `directory`.

    Changes made by other processes are picked up by `poll()`, which compares
    file stamps with the ones this context last saw.
    """

    SUFFIX = ".json"

    def __init__(self, directory):
        super().__init__()
        self.directory = Path(directory)
        self._seen: Dict[str, Tuple[int, int]] = {}
        # last text this context read, wrote or polled, per key
        self._known: Dict[str, str] = {}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create storage directory {self.directory}: {e}")
        self._seen = self._scan()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}{self.SUFFIX}"

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            value = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._known.pop(key, None)
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e
        self._known[key] = value
        return value

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e
        self._known[key] = value
        self._remember(key)

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e
        self._seen.pop(key, None)
        self._known.pop(key, None)

    def poll(self) -> List[StorageEvent]:
        """Dispatch and return events for keys other contexts changed since the last look."""
        current = self._scan()
        events: List[StorageEvent] = []
        for key in sorted(set(current) | set(self._seen)):
            if current.get(key) == self._seen.get(key):
                continue
            old_value = self._known.pop(key, None)
            new_value = self.get_item(key) if key in current else None
            events.append(StorageEvent(key, old_value, new_value))
        self._seen = current
        for event in events:
            self._dispatch(event)
        return events

    def _stamp(self, path: Path) -> Tuple[int, int]:
        stat = path.stat()
        return stat.st_mtime_ns, stat.st_size

    def _remember(self, key: str) -> None:
        try:
            self._seen[key] = self._stamp(self._path(key))
        except OSError:
            self._seen.pop(key, None)

    def _scan(self) -> Dict[str, Tuple[int, int]]:
        stamps: Dict[str, Tuple[int, int]] = {}
        if not self.directory.is_dir():
            return stamps
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            try:
                stamps[path.name[:-len(self.SUFFIX)]] = self._stamp(path)
            except OSError:
                continue
        return stamps
