"""Shared fixtures: a recording sink and a context with test-friendly settings."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Any

import pytest

from chanlog.config import ChanlogSettings, DuplicateTopicPolicy
from chanlog.context import Context
from chanlog.registry.models import Channel, Message, Schema
from chanlog.sinks.base import Sink


class RecordingSink(Sink):
    """Sink that remembers every event in order."""

    def __init__(self, name: str = "recorder") -> None:
        self._name = name
        self.events: list[tuple[str, Any]] = []
        self.messages: list[Message] = []
        self.flushes = 0
        self.close_calls = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def on_schema(self, schema: Schema) -> None:
        self.events.append(("schema", schema))

    def on_channel(self, channel: Channel) -> None:
        self.events.append(("channel", channel))

    def on_channel_closed(self, channel: Channel) -> None:
        self.events.append(("channel_closed", channel))

    def on_message(self, channel: Channel, message: Message) -> None:
        with self._lock:
            self.events.append(("message", message))
            self.messages.append(message)

    def flush(self) -> None:
        self.flushes += 1

    def close(self) -> None:
        self.close_calls += 1

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture()
def settings() -> ChanlogSettings:
    return ChanlogSettings(
        duplicate_topic_policy=DuplicateTopicPolicy.REUSE,
        sink_delivery_timeout=5.0,
        sink_close_timeout=5.0,
        max_consecutive_sink_errors=3,
    )


@pytest.fixture()
def ctx(settings: ChanlogSettings) -> Iterator[Context]:
    context = Context(settings)
    yield context
    context.close()


@pytest.fixture()
def make_recorder() -> type[RecordingSink]:
    return RecordingSink
