from __future__ import annotations

import http.client
import json
from dataclasses import dataclass, field
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

USER_AGENT = "vulnscope/0.1"


class NetworkError(Exception):
    pass


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


def http_request(
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    payload: dict[str, Any] | None = None,
    timeout: float = 30,
) -> HttpResponse:
    """Perform one request. HTTP error statuses are returned, not raised.

    Connection failures and timeouts raise ``NetworkError``.
    """
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = Request(url, data=data, method=method)
    request.add_header("User-Agent", USER_AGENT)
    if data is not None:
        request.add_header("Content-Type", "application/json")
    for key, value in (headers or {}).items():
        request.add_header(key, value)
    try:
        with urlopen(request, timeout=timeout) as response:
            return HttpResponse(
                status=response.status,
                body=response.read(),
                headers=_lower_headers(response.headers.items()),
            )
    except HTTPError as exc:
        return HttpResponse(
            status=exc.code,
            body=exc.read() or b"",
            headers=_lower_headers(exc.headers.items() if exc.headers else []),
        )
    except URLError as exc:
        raise NetworkError(f"network_error: {exc.reason}") from exc
    except TimeoutError as exc:
        raise NetworkError("network_error: timed out") from exc
    except (OSError, http.client.HTTPException) as exc:
        raise NetworkError(f"network_error: {exc.__class__.__name__}: {exc}") from exc


def http_get(url: str, headers: dict[str, str] | None = None, timeout: float = 30) -> HttpResponse:
    return http_request("GET", url, headers=headers, timeout=timeout)


def http_post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout: float = 30,
) -> HttpResponse:
    return http_request("POST", url, headers=headers, payload=payload, timeout=timeout)


def _lower_headers(items) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in items}
