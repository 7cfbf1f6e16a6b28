"""Server-side parameter store."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from collections.abc import Iterable


class Parameter(BaseModel):
    """A named value clients can read, write and watch.

    ``type`` disambiguates values JSON cannot express directly:
    ``byte_array`` values travel base64-encoded.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(min_length=1)
    value: Any = None
    type: Literal["byte_array", "float64", "float64_array"] | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ParameterStore:
    """Thread-safe in-memory parameter map."""

    def __init__(self, initial: Iterable[Parameter] = ()) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, Parameter] = {p.name: p for p in initial}

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def get(self, names: Iterable[str] = ()) -> list[Parameter]:
        """Return the named parameters (all of them when *names* is empty).

        Unknown names are skipped.
        """
        wanted = list(names)
        with self._lock:
            if not wanted:
                return list(self._values.values())
            return [self._values[n] for n in wanted if n in self._values]

    def set(self, parameters: Iterable[Parameter]) -> list[Parameter]:
        """Store *parameters* and return them as stored."""
        updated = list(parameters)
        with self._lock:
            for param in updated:
                self._values[param.name] = param
        return updated
