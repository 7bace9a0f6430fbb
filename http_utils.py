"""Thin ``urllib`` wrapper shared by the outbound API clients."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.error import HTTPError
from urllib.request import Request, urlopen

RequestFactory = Callable[..., Any]
Opener = Callable[..., Any]


@dataclass(frozen=True)
class HttpResponse:
    """Status, decoded body and headers of a completed HTTP exchange."""

    status: int
    body: str
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str:
        for key, value in self.headers.items():
            if str(key).lower() == name.lower():
                return str(value or "").strip()
        return ""

    def json(self) -> Any:
        return json.loads(self.body) if self.body.strip() else None


def build_request(
    url: str,
    *,
    method: str = "GET",
    data: bytes | None = None,
    headers: Mapping[str, str] | None = None,
    request_factory: RequestFactory | None = None,
) -> Any:
    """Return a request carrying its own headers."""

    factory = request_factory or Request
    return factory(url, data=data, headers=dict(headers or {}), method=method)


def send_request(request: Any, *, opener: Opener | None = None, timeout: float) -> HttpResponse:
    """Perform ``request`` and return the response, including error statuses.

    Non-2xx answers come back as an :class:`HttpResponse` instead of an
    exception; transport failures (``URLError``, timeouts) propagate.
    """

    open_request = opener or urlopen
    try:
        with open_request(request, timeout=timeout) as response:
            status = getattr(response, "status", None)
            if status is None:
                status = response.getcode()
            raw_body = response.read()
            headers = _headers_to_dict(getattr(response, "headers", None))
    except HTTPError as exc:
        return HttpResponse(
            status=exc.code,
            body=_decode(_read_error_body(exc)),
            headers=_headers_to_dict(exc.headers),
        )
    return HttpResponse(status=int(status), body=_decode(raw_body), headers=headers)


def _decode(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return bytes(raw).decode("utf-8", errors="replace")


def _read_error_body(error: HTTPError) -> bytes:
    try:
        return error.read() or b""
    except (OSError, ValueError):  # pragma: no cover - best effort to capture error body
        return b""


def _headers_to_dict(headers: Any) -> dict[str, str]:
    if headers is None:
        return {}
    try:
        return {str(key): str(value) for key, value in headers.items()}
    except AttributeError:
        return {}


__all__ = ["HttpResponse", "Opener", "RequestFactory", "build_request", "send_request"]
