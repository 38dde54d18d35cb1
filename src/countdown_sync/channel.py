"""
Replication channel

Persists the local envelope to shared storage and hands envelopes written by
other contexts to its subscribers. Publishing is fire-and-forget: a failed
write is logged and the next state change writes again.
"""

import logging
from collections.abc import Callable

from .config import STORAGE_KEY
from .envelope import EnvelopeError, TimerEnvelope, deserialize, serialize
from .storage import SharedStorage, StorageError

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[TimerEnvelope], None]


class ReplicationChannel:
    """One context's view of the shared storage key."""

    def __init__(self, storage: SharedStorage, context_id: str, key: str = STORAGE_KEY):
        self.storage = storage
        self.context_id = context_id
        self.key = key
        self._subscribers: set[EnvelopeCallback] = set()
        self._unwatch = storage.watch(context_id, self._on_storage_change)
        self.publish_failures = 0
        self.dropped = 0

    def subscribe(self, callback: EnvelopeCallback) -> Callable[[], None]:
        """Register for envelopes written elsewhere. Returns an unsubscribe function."""
        self._subscribers.add(callback)
        return lambda: self._subscribers.discard(callback)

    def publish(self, envelope: TimerEnvelope) -> bool:
        """Write the envelope to shared storage. Never raises."""
        try:
            self.storage.put(self.key, serialize(envelope), origin=self.context_id)
        except StorageError as e:
            self.publish_failures += 1
            logger.warning("Publish from context %s failed: %s", self.context_id, e)
            return False
        return True

    def load(self) -> TimerEnvelope | None:
        """Read the stored envelope once, or None if absent or unreadable."""
        try:
            raw = self.storage.get(self.key)
        except StorageError as e:
            logger.warning("Context %s could not read storage: %s", self.context_id, e)
            return None
        if raw is None:
            return None
        try:
            return deserialize(raw)
        except EnvelopeError as e:
            logger.warning("Ignoring stored envelope for context %s: %s", self.context_id, e)
            return None

    def on_remote_change(self, raw: str | None) -> TimerEnvelope | None:
        """Adopt an envelope another context wrote; malformed payloads are dropped."""
        try:
            envelope = deserialize(raw)
        except EnvelopeError as e:
            self.dropped += 1
            logger.warning("Dropping remote envelope for context %s: %s", self.context_id, e)
            return None

        for callback in list(self._subscribers):
            callback(envelope)
        return envelope

    def _on_storage_change(self, key: str, value: str):
        if key == self.key:
            self.on_remote_change(value)

    def close(self):
        self._unwatch()
        self._subscribers.clear()
