"""Provider adapter interface consumed by the reconciliation engine.

A provider executes single resource operations against the remote system of
record. Calls are synchronous from the provider's point of view and must
return only once the remote object reached its final state, or raise a
definitive error. The engine runs each call in a worker thread with a
timeout, so long-running provisioning (waiters, polling) stays inside the
adapter.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


class ProviderError(Exception):
    """Raised when a provider operation fails.

    Attributes:
        retryable: True when the failure is transient (throttling, capacity)
            and the same call may succeed if repeated.
        code: Provider-specific error code, if any.
    """

    def __init__(self, message: str, *, retryable: bool = False, code: str | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class NotFoundError(ProviderError):
    """Raised when the remote object does not exist (anymore)."""

    pass


class ProviderTimeoutError(ProviderError):
    """Raised by the engine when a provider call exceeds its timeout."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful create."""

    remote_id: str
    outputs: Mapping[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Single-resource CRUD against the remote system."""

    def create(self, kind: str, inputs: Mapping[str, Any]) -> ProviderResult:
        """Create a remote object of `kind` from fully resolved inputs."""
        ...

    def read(self, kind: str, remote_id: str) -> Mapping[str, Any]:
        """Return current outputs of the object; raise NotFoundError if gone."""
        ...

    def update(self, kind: str, remote_id: str, inputs: Mapping[str, Any]) -> Mapping[str, Any]:
        """Converge an existing object to new inputs and return its outputs."""
        ...

    def delete(self, kind: str, remote_id: str) -> None:
        """Delete the object; raise NotFoundError if already gone."""
        ...
