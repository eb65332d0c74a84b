"""
A single value kept in memory and mirrored to a Storage key.

Reads and writes are best-effort: a value that cannot be read falls back to
the default, and a value that cannot be written stays in memory only. Both
cases are logged and never raised to the caller.
"""

from typing import Any, Callable, Dict, Generic, TypeVar
import copy
import json
import logging

from pydantic import ValidationError

from assettree.storage.base import Storage, StorageError, StorageEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

# `_last_written` before any write, or after storage changed underneath us.
_UNWRITTEN = object()

# Errors a deserializer is expected to raise on bad input.
DECODE_ERRORS = (ValueError, TypeError, ValidationError)


class PersistentValue(Generic[T]):
    """
    Value of type T persisted under `key` in `storage`.

    With `deep_compare` set, writing a value equal to the one storage is known
    to hold (our last write, or the last change seen from another context) is
    skipped. Changes to the same key made by another context replace the
    in-memory value (or reset it to `default` when the key is removed)
    without being written back.
    """

    def __init__(self, storage: Storage, key: str, default: T, *,
                 deep_compare: bool = False,
                 serialize: Callable[[T], str] = json.dumps,
                 deserialize: Callable[[str], T] = json.loads):
        self.storage = storage
        self.key = key
        self.default = default
        self.deep_compare = deep_compare
        self._serialize = serialize
        self._deserialize = deserialize
        self._listeners: Dict[int, Callable[[T], None]] = {}
        self._next_token = 0
        self._updating = False
        self._last_written: Any = _UNWRITTEN
        self._value: T = self.read(storage, key, default, deserialize)
        self._unsubscribe = storage.subscribe(self._on_storage_event)

    @staticmethod
    def read(storage: Storage, key: str, default: T,
             deserialize: Callable[[str], Any] = json.loads) -> T:
        """Best-effort read of `key`; `default` when absent, unreadable or corrupt."""
        try:
            raw = storage.get_item(key)
        except (StorageError, OSError) as e:
            logger.warning(f"Error reading key '{key}': {e}")
            return default
        if raw is None:
            return default
        try:
            value = deserialize(raw)
        except DECODE_ERRORS as e:
            logger.warning(f"Failed to parse value for key '{key}': {e}")
            return default
        logger.debug(f"Loaded from key '{key}'")
        return value

    def get(self) -> T:
        return self._value

    def set(self, value) -> None:
        """
        Replace the value and persist it.

        `value` may be a callable receiving the current value and returning
        the new one.
        """
        new_value = value(self._value) if callable(value) else value
        self._value = new_value
        self._persist(new_value)
        self._notify()

    def _persist(self, value: T) -> None:
        if self._updating:
            return
        if self.deep_compare and self._last_written is not _UNWRITTEN and self._last_written == value:
            logger.debug(f"Skipping update for '{self.key}' (values equal)")
            return
        try:
            serialized = self._serialize(value)
            self.storage.set_item(self.key, serialized)
        except (StorageError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Error saving to key '{self.key}': {e}")
            return
        self._last_written = copy.deepcopy(value)
        logger.debug(f"Saved to key '{self.key}'")

    def _on_storage_event(self, event: StorageEvent) -> None:
        if event.key != self.key:
            return
        if event.new_value is None:
            logger.debug(f"Key '{self.key}' was removed in another context, reset to default")
            self._apply_external(self.default, removed=True)
            return
        try:
            new_value = self._deserialize(event.new_value)
        except DECODE_ERRORS as e:
            logger.warning(f"Error parsing change from another context for key '{self.key}': {e}")
            return
        logger.debug(f"Updated from another context for key '{self.key}'")
        self._apply_external(new_value)

    def _apply_external(self, value: T, removed: bool = False) -> None:
        # Storage now holds `value` (or nothing), so the next local set must
        # compare against that rather than our own last write.
        self._last_written = _UNWRITTEN if removed else copy.deepcopy(value)
        self._updating = True
        try:
            self._value = value
            self._notify()
        finally:
            self._updating = False

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Call `listener(value)` after every change; returns an unsubscribe callable."""
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = listener

        def unsubscribe() -> None:
            self._listeners.pop(token, None)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners.values()):
            listener(self._value)

    def close(self) -> None:
        self._unsubscribe()
        self._listeners.clear()
