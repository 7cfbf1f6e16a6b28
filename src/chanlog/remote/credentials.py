"""Cached remote-visualization credentials."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chanlog.remote.client import RemoteVizCredentials
    from chanlog.remote.device import Device

logger = logging.getLogger(__name__)


class CredentialsProvider:
    """Fetches credentials for a device once and reuses them until cleared.

    Concurrent :meth:`load` calls share a single fetch.  Errors from the
    API propagate unchanged and leave the cache empty.
    """

    def __init__(self, device: Device) -> None:
        self._device = device
        self._credentials: RemoteVizCredentials | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> RemoteVizCredentials | None:
        return self._credentials

    async def load(self) -> RemoteVizCredentials:
        """Return cached credentials, fetching them on first use."""
        if self._credentials is not None:
            return self._credentials
        async with self._lock:
            if self._credentials is not None:
                return self._credentials
            return await self._fetch()

    async def refresh(self) -> RemoteVizCredentials:
        """Fetch fresh credentials and replace the cached ones."""
        async with self._lock:
            return await self._fetch()

    def clear(self) -> None:
        self._credentials = None

    async def _fetch(self) -> RemoteVizCredentials:
        credentials = await self._device.authorize_remote_viz()
        self._credentials = credentials
        logger.debug("Fetched remote viz credentials for device %s", self._device.id)
        return credentials
