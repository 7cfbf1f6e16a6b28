"""A registered device: its info plus an authenticated API client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chanlog.remote.client import DEFAULT_API_URL, ApiClient

if TYPE_CHECKING:
    from chanlog.remote.client import DeviceInfo, RemoteVizCredentials


class Device:
    """Device identity resolved from a device token.

    Build with :meth:`connect`, which fetches the device info once.
    """

    def __init__(self, info: DeviceInfo, client: ApiClient) -> None:
        self._info = info
        self._client = client

    @classmethod
    async def connect(
        cls,
        token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        user_agent: str | None = None,
        timeout: float | None = None,
    ) -> Device:
        kwargs = {} if timeout is None else {"timeout": timeout}
        client = ApiClient(base_url, token, user_agent=user_agent, **kwargs)
        info = await client.fetch_device_info()
        return cls(info, client)

    @property
    def id(self) -> str:
        return self._info.id

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def project_id(self) -> str:
        return self._info.project_id

    @property
    def retain_recordings_seconds(self) -> int | None:
        return self._info.retain_recordings_seconds

    @property
    def info(self) -> DeviceInfo:
        return self._info

    @property
    def client(self) -> ApiClient:
        return self._client

    async def authorize_remote_viz(self) -> RemoteVizCredentials:
        return await self._client.authorize_remote_viz(self._info.id)

    def __repr__(self) -> str:
        return f"Device(id={self.id!r}, name={self.name!r})"
