"""Schema and channel registry."""

from __future__ import annotations

from chanlog.registry.models import (
    Channel,
    ChannelId,
    Message,
    Schema,
    SchemaId,
    validate_schema_data,
)
from chanlog.registry.registry import ChannelSlot, Registry, RegistryListener

__all__ = [
    "Channel",
    "ChannelId",
    "ChannelSlot",
    "Message",
    "Registry",
    "RegistryListener",
    "Schema",
    "SchemaId",
    "validate_schema_data",
]
