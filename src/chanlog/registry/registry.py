"""Schema and channel registry.

Schemas and channels live in append-only arenas indexed by their id, so
ids are stable integers and records are never moved or mutated.  All
access goes through a reader–writer lock: lookups on the logging path
take the read side, registrations take the write side.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

from chanlog._internal.rwlock import RWLock
from chanlog.config import DuplicateTopicPolicy
from chanlog.errors import (
    ChannelClosedError,
    DuplicateChannelError,
    UnknownChannelError,
    UnknownSchemaError,
)
from chanlog.registry.models import Channel, ChannelId, Schema, SchemaId, validate_schema_data

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

logger = logging.getLogger(__name__)


class RegistryListener(Protocol):
    """Notified, under the registry write lock, of every registry change."""

    def schema_added(self, schema: Schema) -> None: ...

    def channel_added(self, channel: Channel) -> None: ...

    def channel_closed(self, channel: Channel) -> None: ...


class ChannelSlot:
    """Mutable per-channel state next to the immutable :class:`Channel` record.

    ``lock`` serializes sequence assignment and fan-out for the channel.
    """

    __slots__ = ("channel", "closed", "lock", "_next_sequence", "message_count")

    def __init__(self, channel: Channel) -> None:
        self.channel = channel
        self.closed = False
        self.lock = threading.Lock()
        self._next_sequence = 1
        self.message_count = 0

    def next_sequence(self) -> int:
        """Return the next sequence number. Caller must hold :attr:`lock`."""
        seq = self._next_sequence
        self._next_sequence += 1
        self.message_count += 1
        return seq


class Registry:
    """Append-only schema and channel tables for one context.

    Parameters:
        duplicate_topic_policy: How ``add_channel`` treats an active topic.
        listener: Optional observer of registrations (the owning context).
    """

    def __init__(
        self,
        duplicate_topic_policy: DuplicateTopicPolicy = DuplicateTopicPolicy.REUSE,
        listener: RegistryListener | None = None,
    ) -> None:
        self.lock = RWLock()
        self._policy = duplicate_topic_policy
        self._listener = listener
        self._schemas: list[Schema] = []
        self._schema_keys: dict[tuple[str, str, bytes], SchemaId] = {}
        self._slots: list[ChannelSlot] = []
        self._active_topics: dict[str, ChannelId] = {}

    @property
    def duplicate_topic_policy(self) -> DuplicateTopicPolicy:
        return self._policy

    # -- Registration ---------------------------------------------------------

    def register_schema(self, name: str, encoding: str, data: bytes) -> SchemaId:
        """Register a schema and return its id.

        Identical ``(name, encoding, data)`` registrations share one id.

        Raises:
            SchemaValidationError: If *data* is malformed for *encoding*.
        """
        data = bytes(data)
        validate_schema_data(name, encoding, data)
        with self.lock.write():
            existing = self._schema_keys.get((name, encoding, data))
            if existing is not None:
                return existing

            schema = Schema(id=len(self._schemas) + 1, name=name, encoding=encoding, data=data)
            self._schemas.append(schema)
            self._schema_keys[schema.key()] = schema.id
            logger.debug("Registered schema %d: %s (%s)", schema.id, name, encoding)
            if self._listener is not None:
                self._listener.schema_added(schema)
            return schema.id

    def add_channel(
        self,
        topic: str,
        *,
        message_encoding: str,
        schema_id: SchemaId | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> ChannelId:
        """Register a channel and return its id.

        Raises:
            DuplicateChannelError: If *topic* is active and the policy forbids reuse.
            UnknownSchemaError: If *schema_id* is not registered.
        """
        if not topic:
            raise ValueError("Channel topic must not be empty")
        frozen_metadata = MappingProxyType(dict(metadata or {}))

        with self.lock.write():
            if schema_id is not None and not 1 <= schema_id <= len(self._schemas):
                raise UnknownSchemaError(schema_id)

            existing_id = self._active_topics.get(topic)
            if existing_id is not None:
                existing = self._slots[existing_id - 1].channel
                wanted = (schema_id, message_encoding, dict(frozen_metadata))
                if self._policy is DuplicateTopicPolicy.REUSE and existing.definition() == wanted:
                    return existing_id
                raise DuplicateChannelError(topic, existing_id)

            channel = Channel(
                id=len(self._slots) + 1,
                topic=topic,
                schema_id=schema_id,
                message_encoding=message_encoding,
                metadata=frozen_metadata,
            )
            self._slots.append(ChannelSlot(channel))
            self._active_topics[topic] = channel.id
            logger.debug("Registered channel %d: %s", channel.id, topic)
            if self._listener is not None:
                self._listener.channel_added(channel)
            return channel.id

    def close_channel(self, channel_id: ChannelId) -> Channel:
        """Mark a channel closed and free its topic.  Closing twice is a no-op."""
        with self.lock.write():
            slot = self._slot(channel_id)
            with slot.lock:
                if slot.closed:
                    return slot.channel
                slot.closed = True
            self._active_topics.pop(slot.channel.topic, None)
            logger.debug("Closed channel %d: %s", channel_id, slot.channel.topic)
            if self._listener is not None:
                self._listener.channel_closed(slot.channel)
            return slot.channel

    # -- Lookup ---------------------------------------------------------------

    def _slot(self, channel_id: ChannelId) -> ChannelSlot:
        if not 1 <= channel_id <= len(self._slots):
            raise UnknownChannelError(channel_id)
        return self._slots[channel_id - 1]

    def open_slot(self, channel_id: ChannelId) -> ChannelSlot:
        """Return the slot of an open channel.  Caller must hold the read lock.

        Raises:
            UnknownChannelError: If the id is not registered.
            ChannelClosedError: If the channel is closed.
        """
        slot = self._slot(channel_id)
        if slot.closed:
            raise ChannelClosedError(channel_id, slot.channel.topic)
        return slot

    def get_schema(self, schema_id: SchemaId) -> Schema:
        with self.lock.read():
            if not 1 <= schema_id <= len(self._schemas):
                raise UnknownSchemaError(schema_id)
            return self._schemas[schema_id - 1]

    def get_channel(self, channel_id: ChannelId) -> Channel:
        with self.lock.read():
            return self._slot(channel_id).channel

    def is_closed(self, channel_id: ChannelId) -> bool:
        with self.lock.read():
            return self._slot(channel_id).closed

    def channel_by_topic(self, topic: str) -> Channel | None:
        """Return the active channel for *topic*, or ``None``."""
        with self.lock.read():
            channel_id = self._active_topics.get(topic)
            return None if channel_id is None else self._slots[channel_id - 1].channel

    def message_count(self, channel_id: ChannelId) -> int:
        with self.lock.read():
            return self._slot(channel_id).message_count

    def schemas(self) -> list[Schema]:
        with self.lock.read():
            return list(self._schemas)

    def channels(self, *, include_closed: bool = False) -> list[Channel]:
        with self.lock.read():
            return [s.channel for s in self._slots if include_closed or not s.closed]

    @contextmanager
    def exclusive(self) -> Iterator[tuple[list[Schema], list[Channel]]]:
        """Hold the write lock and yield ``(schemas, active_channels)``.

        Used to replay the current registry to a newly attached sink
        without racing concurrent registrations.
        """
        with self.lock.write():
            yield list(self._schemas), [s.channel for s in self._slots if not s.closed]
