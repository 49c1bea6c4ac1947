from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import ValidationError
from .http_client import HttpClientError, http_get_json
from .notifications import SERVER_VALIDATION_FAILED, SERVER_VALIDATION_SUCCESS, Notifier

_LOGGER = logging.getLogger("browser_tools.connector.identity")

RELAY_IDENTITY_PATH = "/.identity"
RELAY_SIGNATURE = "mcp-browser-connector-24x7"


@dataclass(frozen=True, slots=True)
class ServerIdentity:
    name: str
    version: str
    signature: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version, "signature": self.signature}


def fetch_identity(host: str, port: int, *, timeout: float = 3.0) -> ServerIdentity:
    """Blocking probe of the relay discovery endpoint.

    Raises ValidationError with reason http_error / invalid_signature / connection_error.
    """
    url = f"http://{host}:{int(port)}{RELAY_IDENTITY_PATH}"
    try:
        data = http_get_json(url, timeout=timeout)
    except HttpClientError as exc:
        reason = "http_error" if exc.status is not None else "connection_error"
        raise ValidationError(str(exc), reason=reason, status=exc.status) from exc

    if not isinstance(data, dict):
        raise ValidationError("Identity response is not a JSON object", reason="invalid_signature")
    signature = str(data.get("signature") or "")
    if signature != RELAY_SIGNATURE:
        raise ValidationError("Invalid signature", reason="invalid_signature")
    return ServerIdentity(
        name=str(data.get("name") or ""),
        version=str(data.get("version") or ""),
        signature=signature,
    )


class IdentityValidator:
    """Confirms the configured endpoint is the relay server before the transport trusts it.

    A positive result is cached per host:port for `cache_s` seconds. Failures are never
    cached and always fail closed.
    """

    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        timeout: float = 3.0,
        cache_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        probe: Callable[..., ServerIdentity] = fetch_identity,
    ) -> None:
        self._notifier = notifier
        self._timeout = float(timeout)
        self._cache_s = float(cache_s)
        self._clock = clock
        self._probe = probe
        self._validated_for: tuple[str, int] | None = None
        self.last_validation_time: float | None = None
        self.last_identity: ServerIdentity | None = None

    def is_cached(self, host: str, port: int) -> bool:
        if self.last_validation_time is None or self._validated_for != (host, int(port)):
            return False
        return (self._clock() - self.last_validation_time) < self._cache_s

    def invalidate(self) -> None:
        self._validated_for = None
        self.last_validation_time = None

    async def validate(self, host: str, port: int) -> bool:
        if self.is_cached(host, port):
            _LOGGER.debug("identity cached for %s:%s", host, port)
            return True

        _LOGGER.info("validating relay identity at %s:%s", host, port)
        try:
            identity = await asyncio.to_thread(self._probe, host, int(port), timeout=self._timeout)
        except ValidationError as exc:
            _LOGGER.warning("relay identity validation failed (%s): %s", exc.reason, exc)
            self.invalidate()
            self._notify(
                SERVER_VALIDATION_FAILED,
                reason=exc.reason,
                serverHost=host,
                serverPort=int(port),
                **({"status": exc.status} if exc.status is not None else {}),
                **({"error": str(exc)} if exc.reason == "connection_error" else {}),
            )
            return False
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("unexpected identity probe failure")
            self.invalidate()
            self._notify(
                SERVER_VALIDATION_FAILED,
                reason="connection_error",
                error=str(exc),
                serverHost=host,
                serverPort=int(port),
            )
            return False

        self._validated_for = (host, int(port))
        self.last_validation_time = self._clock()
        self.last_identity = identity
        _LOGGER.info("relay identity confirmed: %s v%s", identity.name, identity.version)
        self._notify(
            SERVER_VALIDATION_SUCCESS,
            serverInfo=identity.to_dict(),
            serverHost=host,
            serverPort=int(port),
        )
        return True

    def _notify(self, event_type: str, **fields) -> None:  # type: ignore[no-untyped-def]
        if self._notifier is not None:
            self._notifier.emit(event_type, **fields)
