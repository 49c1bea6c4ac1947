"""Payload bounding for outbound telemetry.

Everything here is best-effort and total: malformed input degrades to truncating the raw
string, nothing raises. Output size is bounded by `max_length` per string and
`max_total_bytes` per array, whatever the input shape.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .config import RelaySettings

_LOGGER = logging.getLogger("browser_tools.connector.bounding")

TRUNCATION_MARKER = "... (truncated)"
MAX_DEPTH = 100
MAX_DEPTH_SENTINEL = "[MAX_DEPTH_EXCEEDED]"
ERROR_SENTINEL = "[ERROR_PROCESSING]"


def _truncate_text(text: str, max_length: int) -> str:
    limit = max(0, int(max_length))
    if len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def serialized_size(obj: Any) -> int:
    """UTF-8 byte length of the compact JSON encoding of `obj`."""
    try:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        text = str(obj)
    return len(text.encode("utf-8", errors="replace"))


def truncate_strings(data: Any, max_length: int, depth: int = 0) -> Any:
    if depth > MAX_DEPTH:
        return MAX_DEPTH_SENTINEL

    if isinstance(data, str):
        return _truncate_text(data, max_length)

    if isinstance(data, (list, tuple)):
        return [truncate_strings(item, max_length, depth + 1) for item in data]

    if isinstance(data, dict):
        result: dict[Any, Any] = {}
        for key, value in data.items():
            try:
                result[key] = truncate_strings(value, max_length, depth + 1)
            except Exception:  # noqa: BLE001
                _LOGGER.debug("failed to bound key %r", key, exc_info=True)
                result[key] = ERROR_SENTINEL
        return result

    return data


def bound_array(
    entries: Iterable[Any],
    max_total_bytes: int,
    transform: Callable[[Any], Any] | None = None,
) -> list[Any]:
    """Transform entries in order and keep the longest prefix within `max_total_bytes`."""
    budget = max(0, int(max_total_bytes))
    # "[" and "]"
    current = 2
    out: list[Any] = []
    for item in entries:
        processed = transform(item) if transform is not None else item
        size = serialized_size(processed) + (1 if out else 0)
        if current + size > budget:
            _LOGGER.debug("size budget reached (%d/%d), dropping remaining entries", current, budget)
            break
        out.append(processed)
        current += size
    return out


def process_json_field(raw: Any, max_length: int, max_total_bytes: int) -> Any:
    """Bound a string field that may carry JSON (request/response bodies, console text).

    Arrays keep a size-bounded prefix of bounded items, other JSON values have their
    strings truncated, and non-JSON text is truncated directly. JSON inputs come back
    re-serialized as text.
    """
    if not isinstance(raw, str):
        return truncate_strings(raw, max_length)
    try:
        try:
            parsed = json.loads(raw)
        except ValueError:
            return _truncate_text(raw, max_length)

        if isinstance(parsed, list):
            processed = bound_array(parsed, max_total_bytes, lambda item: truncate_strings(item, max_length))
            return json.dumps(processed, ensure_ascii=False, separators=(",", ":"))

        return json.dumps(truncate_strings(parsed, max_length), ensure_ascii=False, separators=(",", ":"))
    except Exception:  # noqa: BLE001
        _LOGGER.debug("process_json_field fell back to raw truncation", exc_info=True)
        return _truncate_text(raw, max_length)


def bound_log_entry(entry: dict[str, Any], settings: RelaySettings) -> dict[str, Any]:
    """Return a copy of a LogEntry with its free-form fields bounded."""
    out = dict(entry)
    limit = settings.string_size_limit
    budget = settings.max_log_size
    kind = out.get("type")
    if kind == "network-request":
        for key in ("requestBody", "responseBody"):
            if out.get(key):
                out[key] = process_json_field(out[key], limit, budget)
    elif kind in {"console-log", "console-error"}:
        if out.get("message"):
            out["message"] = process_json_field(out["message"], limit, budget)
    elif kind == "selected-element":
        if out.get("element") is not None:
            out["element"] = truncate_strings(out["element"], limit)
    return out
