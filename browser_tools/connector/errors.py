"""Error taxonomy for the connector.

- TransportError: socket connect/send/close failures (recovered by reconnect).
- ValidationError: relay identity mismatch or unreachable endpoint.
- InstrumentationError: debugger attach/detach failures.
- ContextError: instrumented tab is stale or unreachable.
- CommandError: handler-specific failure reported back to the relay server.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ConnectorError(Exception):
    pass


class TransportError(ConnectorError):
    pass


class ValidationError(ConnectorError):
    def __init__(self, message: str, *, reason: str = "connection_error", status: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status


class InstrumentationError(ConnectorError):
    pass


class ContextError(ConnectorError):
    """Tab-scoped command rejected because the inspected tab is not usable."""

    def __init__(
        self,
        message: str,
        *,
        tab_id: str | None,
        consecutive_failures: int,
        max_failures: int,
        since_last_success_ms: int,
    ) -> None:
        super().__init__(message)
        self.tab_id = tab_id
        self.consecutive_failures = consecutive_failures
        self.max_failures = max_failures
        self.since_last_success_ms = since_last_success_ms

    def context_info(self) -> dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "consecutiveFailures": self.consecutive_failures,
            "timeSinceLastSuccess": self.since_last_success_ms,
        }


@dataclass
class CommandError(ConnectorError):
    """Structured command failure sent back with the original requestId."""

    kind: str
    reason: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "reason": self.reason,
            **({"details": self.details} if self.details else {}),
        }
