"""Sink interface, fan-out engine and the queued delivery wrapper."""

from __future__ import annotations

from chanlog.sinks.base import CallbackSink, Sink, SinkId, SinkKind
from chanlog.sinks.fanout import AttachedSink, SinkFailure, SinkFanout
from chanlog.sinks.queued import QueuedSink

__all__ = [
    "AttachedSink",
    "CallbackSink",
    "QueuedSink",
    "Sink",
    "SinkFailure",
    "SinkFanout",
    "SinkId",
    "SinkKind",
]
