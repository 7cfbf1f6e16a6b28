"""Request/response services exposed over the live protocol."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass(frozen=True)
class ServiceMessageSchema:
    """Encoding and schema of a service request or response."""

    encoding: str
    schema_name: str = ""
    schema_encoding: str = ""
    schema: str = ""

    def describe(self) -> dict[str, Any]:
        return {
            "encoding": self.encoding,
            "schemaName": self.schema_name,
            "schemaEncoding": self.schema_encoding,
            "schema": self.schema,
        }


@dataclass(frozen=True)
class ServiceRequest:
    """One call delivered to a service handler."""

    service_name: str
    client_id: int
    call_id: int
    encoding: str
    payload: bytes


@dataclass
class Service:
    """A named service.

    The handler runs on a worker thread, never on the event loop.  Its
    return value is sent back in a ServiceCallResponse using the
    request's encoding; any exception becomes a ``serviceCallFailure``.

    Parameters:
        name: Unique service name.
        type: Free-form service type string shown to clients.
        handler: ``handler(request) -> bytes``.
        request: Optional request schema.
        response: Optional response schema.
    """

    name: str
    type: str
    handler: Callable[[ServiceRequest], bytes]
    request: ServiceMessageSchema | None = None
    response: ServiceMessageSchema | None = None
    id: int = field(default=0, compare=False)

    def describe(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"id": self.id, "name": self.name, "type": self.type}
        if self.request is not None:
            entry["request"] = self.request.describe()
        if self.response is not None:
            entry["response"] = self.response.describe()
        return entry
