from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

# camelCase wire/settings name -> RelaySettings attribute
_SETTINGS_KEYS: dict[str, str] = {
    "serverHost": "server_host",
    "serverPort": "server_port",
    "logLimit": "log_limit",
    "queryLimit": "query_limit",
    "stringSizeLimit": "string_size_limit",
    "maxLogSize": "max_log_size",
    "showRequestHeaders": "show_request_headers",
    "showResponseHeaders": "show_response_headers",
    "screenshotPath": "screenshot_path",
    "allowAutoPaste": "allow_auto_paste",
}


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _coerce_bool(raw: Any) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return bool(raw)


@dataclass(frozen=True, slots=True)
class RelaySettings:
    """Read-only settings snapshot shared by every component."""

    server_host: str = "localhost"
    server_port: int = 3025
    log_limit: int = 50
    query_limit: int = 30000
    string_size_limit: int = 500
    max_log_size: int = 20000
    show_request_headers: bool = False
    show_response_headers: bool = False
    screenshot_path: str = ""
    allow_auto_paste: bool = False

    @classmethod
    def from_env(cls) -> RelaySettings:
        settings = cls(
            server_host=(os.environ.get("BROWSER_TOOLS_SERVER_HOST") or "localhost").strip() or "localhost",
            server_port=_int_env("BROWSER_TOOLS_SERVER_PORT", default=3025, lo=1, hi=65535),
            log_limit=_int_env("BROWSER_TOOLS_LOG_LIMIT", default=50, lo=1, hi=100_000),
            query_limit=_int_env("BROWSER_TOOLS_QUERY_LIMIT", default=30000, lo=1, hi=10_000_000),
            string_size_limit=_int_env("BROWSER_TOOLS_STRING_SIZE_LIMIT", default=500, lo=1, hi=10_000_000),
            max_log_size=_int_env("BROWSER_TOOLS_MAX_LOG_SIZE", default=20000, lo=1, hi=100_000_000),
            show_request_headers=_bool_env("BROWSER_TOOLS_SHOW_REQUEST_HEADERS", default=False),
            show_response_headers=_bool_env("BROWSER_TOOLS_SHOW_RESPONSE_HEADERS", default=False),
            screenshot_path=os.environ.get("BROWSER_TOOLS_SCREENSHOT_PATH", ""),
            allow_auto_paste=_bool_env("BROWSER_TOOLS_ALLOW_AUTO_PASTE", default=False),
        )
        settings_file = (os.environ.get("BROWSER_TOOLS_SETTINGS_FILE") or "").strip()
        if settings_file:
            path = Path(expand_path(settings_file))
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                data = None
            if isinstance(data, dict):
                settings = settings.merged(data)
        return settings

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> RelaySettings:
        return cls().merged(data)

    def merged(self, data: dict[str, Any]) -> RelaySettings:
        """Return a new snapshot with camelCase keys from `data` applied."""
        changes: dict[str, Any] = {}
        for key, attr in _SETTINGS_KEYS.items():
            if key not in data or data[key] is None:
                continue
            raw = data[key]
            current = getattr(self, attr)
            try:
                if isinstance(current, bool):
                    changes[attr] = _coerce_bool(raw)
                elif isinstance(current, int):
                    changes[attr] = int(raw)
                else:
                    changes[attr] = str(raw)
            except (TypeError, ValueError):
                continue
        return replace(self, **changes) if changes else self

    def to_mapping(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in _SETTINGS_KEYS.items()}

    def ingest_settings(self) -> dict[str, Any]:
        """Settings block attached to every /extension-log payload."""
        return {
            "logLimit": self.log_limit,
            "queryLimit": self.query_limit,
            "showRequestHeaders": self.show_request_headers,
            "showResponseHeaders": self.show_response_headers,
        }

    @property
    def server_base_url(self) -> str:
        return f"http://{self.server_host}:{int(self.server_port)}"

    @property
    def websocket_url(self) -> str:
        return f"ws://{self.server_host}:{int(self.server_port)}/extension-ws"


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    delay_s: float = 3.0
    # None means retry forever.
    max_attempts: int | None = None

    def allows(self, attempts: int) -> bool:
        if self.max_attempts is None:
            return True
        return attempts < self.max_attempts


@dataclass
class ConnectorConfig:
    settings: RelaySettings = field(default_factory=RelaySettings)
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    tab_id: str | None = None
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    heartbeat_interval_s: float = 20.0
    max_heartbeat_failures: int = 3
    heartbeat_policy: str = "send"
    validation_timeout_s: float = 3.0
    validation_cache_s: float = 30.0
    script_timeout_s: float = 15.0
    context_max_failures: int = 5
    context_check_interval_s: float = 0.5
    context_settle_s: float = 1.0
    url_retry_count: int = 2
    url_retry_delay_s: float = 0.5
    log_buffer_size: int = 500
    diagnostics_interval_s: float = 10.0

    @staticmethod
    def normalize_heartbeat_policy(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"response", "ack", "reply"}:
            return "response"
        return "send"

    @classmethod
    def from_env(cls) -> ConnectorConfig:
        raw_attempts = (os.environ.get("BROWSER_TOOLS_MAX_RECONNECT_ATTEMPTS") or "").strip()
        max_attempts: int | None = None
        if raw_attempts:
            try:
                max_attempts = max(0, int(raw_attempts))
            except ValueError:
                max_attempts = None
        tab_id = (os.environ.get("BROWSER_TOOLS_TAB_ID") or "").strip() or None
        return cls(
            settings=RelaySettings.from_env(),
            cdp_host=(os.environ.get("BROWSER_TOOLS_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_int_env("BROWSER_TOOLS_CDP_PORT", default=9222, lo=1, hi=65535),
            tab_id=tab_id,
            reconnect=ReconnectPolicy(
                delay_s=_float_env("BROWSER_TOOLS_RECONNECT_DELAY", default=3.0, lo=0.05, hi=300.0),
                max_attempts=max_attempts,
            ),
            heartbeat_interval_s=_float_env("BROWSER_TOOLS_HEARTBEAT_INTERVAL", default=20.0, lo=0.05, hi=600.0),
            heartbeat_policy=cls.normalize_heartbeat_policy(os.environ.get("BROWSER_TOOLS_HEARTBEAT_POLICY")),
            script_timeout_s=_float_env("BROWSER_TOOLS_SCRIPT_TIMEOUT", default=15.0, lo=0.05, hi=600.0),
            context_max_failures=_int_env("BROWSER_TOOLS_CONTEXT_MAX_FAILURES", default=5, lo=1, hi=100),
            log_buffer_size=_int_env("BROWSER_TOOLS_LOG_BUFFER", default=500, lo=1, hi=100_000),
        )
