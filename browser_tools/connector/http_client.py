from __future__ import annotations

import json
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, build_opener

_USER_AGENT = "browser-tools-connector/1.0"
_MAX_BODY_BYTES = 2_000_000


class HttpClientError(Exception):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def _check_url(url: str) -> None:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    if not parsed.hostname:
        raise HttpClientError(f"Missing host in {url!r}")


def _open(req: Request, timeout: float) -> tuple[int, bytes]:
    opener = build_opener()
    try:
        with opener.open(req, timeout=max(0.05, float(timeout))) as resp:  # noqa: S310
            body = resp.read(_MAX_BODY_BYTES + 1)
            return int(resp.status), body[:_MAX_BODY_BYTES]
    except HTTPError as exc:
        raise HttpClientError(f"HTTP error {exc.code}", status=int(exc.code)) from exc
    except (TimeoutError, URLError, OSError) as exc:
        raise HttpClientError(str(exc)) from exc


def _decode_json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body.decode("utf-8", errors="replace"))
    except ValueError as exc:
        raise HttpClientError(f"Invalid JSON response: {exc}") from exc


def http_get_json(url: str, *, timeout: float = 3.0) -> Any:
    """GET `url` and decode a JSON body. Non-2xx raises HttpClientError with `status`."""
    _check_url(url)
    req = Request(url, method="GET", headers={"User-Agent": _USER_AGENT, "Cache-Control": "no-store"})
    status, body = _open(req, timeout)
    if status < 200 or status >= 300:
        raise HttpClientError(f"HTTP error {status}", status=status)
    return _decode_json(body)


def http_post_json(url: str, payload: Any = None, *, timeout: float = 5.0) -> Any:
    _check_url(url)
    data = json.dumps(payload, ensure_ascii=False).encode("utf-8") if payload is not None else b""
    req = Request(
        url,
        data=data,
        method="POST",
        headers={"User-Agent": _USER_AGENT, "Content-Type": "application/json"},
    )
    status, body = _open(req, timeout)
    if status < 200 or status >= 300:
        raise HttpClientError(f"HTTP error {status}", status=status)
    try:
        return _decode_json(body)
    except HttpClientError:
        # Ingestion endpoints may answer with plain text; the POST itself succeeded.
        return None
