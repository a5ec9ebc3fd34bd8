"""Connection-scoped context helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol


class StatusCallback(Protocol):
    """Emits a server push to the connected client; safe to call from any thread."""

    def __call__(self, type_code: int, payload: Dict[str, Any], request_id: int) -> None:
        ...


@dataclass
class RequestContext:
    """Carries metadata about the connected client."""

    username: str
    connection_id: str
    client_ip: str | None = None
    log_label: str = ""
    status_callback: StatusCallback | None = None
    unsubscribers: List[Callable[[], None]] = field(default_factory=list)

    def push(self, type_code: int, payload: Dict[str, Any], request_id: int = 0) -> None:
        if self.status_callback is not None:
            self.status_callback(type_code, payload, request_id)

    def detach(self) -> None:
        """Drop store subscriptions and stop emitting pushes."""
        while self.unsubscribers:
            self.unsubscribers.pop()()
        self.status_callback = None
