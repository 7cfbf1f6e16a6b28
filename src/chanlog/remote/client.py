"""Device-token HTTP client for the remote platform API."""

from __future__ import annotations

import logging
from typing import TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chanlog.errors import ApiError, ApiParseError, ApiResponseError, NoTokenError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.foxglove.dev"
DEFAULT_TIMEOUT = 30.0


def default_user_agent() -> str:
    from chanlog import __version__

    return f"chanlog/{__version__}"


def encode_path_component(component: str) -> str:
    """Percent-encode everything except ``A-Z a-z 0-9 - . _ ~``."""
    return quote(component, safe="-._~")


# -- Response models ----------------------------------------------------------


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DeviceInfo(_ApiModel):
    id: str
    name: str
    project_id: str = Field(alias="projectId")
    retain_recordings_seconds: int | None = Field(default=None, alias="retainRecordingsSeconds")


class RemoteVizCredentials(_ApiModel):
    """Short-lived URL and token for a remote visualization session."""

    token: str
    url: str


class ErrorBody(_ApiModel):
    error: str
    code: str | None = None


_M = TypeVar("_M", bound=_ApiModel)


# -- Client -------------------------------------------------------------------


class ApiClient:
    """Async client for the device-facing platform endpoints.

    Parameters:
        base_url: API root; a trailing slash is ignored.
        device_token: Sent as ``Authorization: DeviceToken <token>``.
        user_agent: ``User-Agent`` header value.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        device_token: str | None = None,
        *,
        user_agent: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._device_token = device_token
        self._user_agent = user_agent or default_user_agent()
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def device_token(self) -> str | None:
        return self._device_token

    def set_device_token(self, token: str) -> None:
        self._device_token = token

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def fetch_device_info(self) -> DeviceInfo:
        """``GET /internal/platform/v1/device-info``."""
        body = await self._request("GET", "/internal/platform/v1/device-info")
        return _parse(DeviceInfo, body)

    async def authorize_remote_viz(self, device_id: str) -> RemoteVizCredentials:
        """``POST /internal/platform/v1/devices/{device_id}/remote-sessions``."""
        device = encode_path_component(device_id)
        path = f"/internal/platform/v1/devices/{device}/remote-sessions"
        body = await self._request("POST", path)
        return _parse(RemoteVizCredentials, body)

    async def _request(self, method: str, path: str) -> bytes:
        if not self._device_token:
            raise NoTokenError("No device token provided")
        headers = {
            "User-Agent": self._user_agent,
            "Authorization": f"DeviceToken {self._device_token}",
        }
        url = self.url(path)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise ApiError(f"Failed to send request to {url}: {exc}") from exc
        logger.debug("%s %s -> %d", method, url, resp.status_code)
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return resp.content


def _error_from_response(resp: httpx.Response) -> ApiResponseError:
    try:
        error = ErrorBody.model_validate_json(resp.content)
    except ValidationError:
        body = resp.content.decode("utf-8", errors="replace")
        return ApiResponseError(
            f"Received malformed error response {resp.status_code} with body {body!r}",
            status_code=resp.status_code,
            body=body,
        )
    return ApiResponseError(
        f"Received error response {resp.status_code}: {error.error}",
        status_code=resp.status_code,
        code=error.code,
    )


def _parse(model: type[_M], body: bytes) -> _M:
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        raise ApiParseError(f"Failed to parse {model.__name__} response: {exc}") from exc
