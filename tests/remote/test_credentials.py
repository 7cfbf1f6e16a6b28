"""Tests for CredentialsProvider caching."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from chanlog.errors import ApiResponseError
from chanlog.remote.client import ApiClient, DeviceInfo
from chanlog.remote.credentials import CredentialsProvider
from chanlog.remote.device import Device

if TYPE_CHECKING:
    from pytest_httpx import HTTPXMock

BASE = "https://api.example.test"
SESSIONS_URL = f"{BASE}/internal/platform/v1/devices/dev_1/remote-sessions"


@pytest.fixture
def device() -> Device:
    info = DeviceInfo(id="dev_1", name="rover", project_id="prj_1")
    return Device(info, ApiClient(BASE, "tok"))


class TestCredentialsProvider:
    @pytest.mark.asyncio
    async def test_load_is_cached(self, httpx_mock: HTTPXMock, device: Device) -> None:
        httpx_mock.add_response(url=SESSIONS_URL, json={"token": "t1", "url": "wss://a"})
        provider = CredentialsProvider(device)
        assert provider.current is None
        first = await provider.load()
        second = await provider.load()
        assert first is second
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_fetch(
        self, httpx_mock: HTTPXMock, device: Device
    ) -> None:
        httpx_mock.add_response(url=SESSIONS_URL, json={"token": "t1", "url": "wss://a"})
        provider = CredentialsProvider(device)
        results = await asyncio.gather(*(provider.load() for _ in range(5)))
        assert {r.token for r in results} == {"t1"}
        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_refresh_and_clear(self, httpx_mock: HTTPXMock, device: Device) -> None:
        httpx_mock.add_response(url=SESSIONS_URL, json={"token": "t1", "url": "wss://a"})
        httpx_mock.add_response(url=SESSIONS_URL, json={"token": "t2", "url": "wss://b"})
        httpx_mock.add_response(url=SESSIONS_URL, json={"token": "t3", "url": "wss://c"})
        provider = CredentialsProvider(device)
        assert (await provider.load()).token == "t1"
        assert (await provider.refresh()).token == "t2"
        assert provider.current is not None
        assert provider.current.token == "t2"
        provider.clear()
        assert provider.current is None
        assert (await provider.load()).token == "t3"

    @pytest.mark.asyncio
    async def test_failure_leaves_cache_empty(
        self, httpx_mock: HTTPXMock, device: Device
    ) -> None:
        httpx_mock.add_response(url=SESSIONS_URL, status_code=500, json={"error": "down"})
        provider = CredentialsProvider(device)
        with pytest.raises(ApiResponseError):
            await provider.load()
        assert provider.current is None
