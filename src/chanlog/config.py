"""Configuration models.

Context-wide defaults come from :class:`ChanlogSettings` (environment
variables prefixed ``CHANLOG_`` and an optional ``.env`` file).  Each
sink takes its own pydantic options model.
"""

from __future__ import annotations

import json
import uuid
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DuplicateTopicPolicy(StrEnum):
    """What ``add_channel`` does when the topic is already active.

    ``reuse`` returns the existing channel id when the new definition is
    identical and raises :class:`~chanlog.errors.DuplicateChannelError`
    when it conflicts.  ``error`` always raises.
    """

    REUSE = "reuse"
    ERROR = "error"


class OverflowPolicy(StrEnum):
    """What a live-server connection does when its outbound queue is full."""

    DROP_NEWEST = "drop_newest"
    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


class Capability(StrEnum):
    """Optional live-server features advertised in ``serverInfo``."""

    CLIENT_PUBLISH = "clientPublish"
    PARAMETERS = "parameters"
    PARAMETERS_SUBSCRIBE = "parametersSubscribe"
    SERVICES = "services"
    ASSETS = "assets"
    TIME = "time"


class ChanlogSettings(BaseSettings):
    """Context defaults populated from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CHANLOG_",
        extra="ignore",
    )

    duplicate_topic_policy: DuplicateTopicPolicy = DuplicateTopicPolicy.REUSE
    sink_delivery_timeout: float = Field(default=1.0, gt=0)
    """Seconds a producer waits for a busy sink before dropping the message for it."""
    sink_close_timeout: float = Field(default=10.0, gt=0)
    """Total seconds ``Context.close()`` spends flushing and closing sinks."""
    max_consecutive_sink_errors: int = Field(default=10, ge=1)
    max_pending_failures: int = Field(default=500, ge=1)
    log_level: str | None = None


class ContainerOptions(BaseModel):
    """Options for :class:`~chanlog.container.sink.ContainerSink`."""

    chunk_size_bytes: int = Field(default=768 * 1024, gt=0)
    chunk_duration: int | None = Field(default=None, gt=0)
    """Maximum log-time span of one chunk in nanoseconds (``None`` = unbounded)."""
    compression_codec: str = "zlib"
    checksum_enabled: bool = True
    use_chunking: bool = True
    profile: str = ""
    library: str = Field(default_factory=lambda: f"chanlog/{_version()}")


class ServerOptions(BaseModel):
    """Options for :class:`~chanlog.server.server.LiveServer`."""

    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=0, le=65535)
    name: str = "chanlog"
    outbound_queue_capacity: int = Field(default=1024, ge=1)
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_NEWEST
    idle_timeout: float | None = Field(default=20.0, gt=0)
    """Keep-alive ping interval and timeout in seconds (``None`` disables pings)."""
    drain_timeout: float = Field(default=2.0, ge=0)
    max_frame_size: int = Field(default=16 * 1024 * 1024, gt=0)
    max_client_payload: int = Field(default=1024 * 1024, gt=0)
    capabilities: list[Capability] = Field(default_factory=list)
    supported_encodings: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def load(cls, path: Path | str) -> ServerOptions:
        """Load options from a JSON file, falling back to defaults if it does not exist."""
        resolved = Path(path).expanduser()
        if not resolved.exists():
            return cls()
        raw = json.loads(resolved.read_text(encoding="utf-8"))
        return cls.model_validate(raw)


def _version() -> str:
    from chanlog import __version__

    return __version__
