"""Client for the remote platform API (device info and remote viz credentials)."""

from __future__ import annotations

from chanlog.remote.client import (
    DEFAULT_API_URL,
    ApiClient,
    DeviceInfo,
    RemoteVizCredentials,
    encode_path_component,
)
from chanlog.remote.credentials import CredentialsProvider
from chanlog.remote.device import Device

__all__ = [
    "DEFAULT_API_URL",
    "ApiClient",
    "CredentialsProvider",
    "Device",
    "DeviceInfo",
    "RemoteVizCredentials",
    "encode_path_component",
]
