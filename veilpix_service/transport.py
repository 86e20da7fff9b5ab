from __future__ import annotations

import json
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}
USER_AGENT = "veilpix-image-service/0.3"


class TransportError(RuntimeError):
    def __init__(self, message: str, status: int | None = None, body: str = "", retry_after: str | None = None):
        self.status = status
        self.body = body
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.status is None or self.status in RETRYABLE_HTTP_STATUS


class InvalidJSONError(TransportError):
    """The server answered but the body is not JSON."""


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.isdigit():
        return float(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def compute_backoff_seconds(attempt_index: int, retry_after_header: Optional[str] = None) -> float:
    retry_after_seconds = parse_retry_after(retry_after_header)
    base = min(30.0, 0.75 * (2 ** attempt_index)) + random.uniform(0.0, 0.4)
    if retry_after_seconds is not None:
        return max(base, retry_after_seconds)
    return base


class HttpTransport:
    """Minimal JSON/bytes HTTP client on top of urllib."""

    def __init__(self, timeout_ms: int = 30_000):
        self.timeout_seconds = timeout_ms / 1000.0

    def _open(self, req: Request) -> tuple[bytes, str]:
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                return resp.read(), resp.headers.get("Content-Type", "") or ""
        except HTTPError as err:
            try:
                body = err.read().decode("utf-8", errors="replace")
            except OSError:
                body = ""
            raise TransportError(
                f"HTTP {err.code} from {req.full_url}: {body[:300]}",
                status=err.code,
                body=body,
                retry_after=err.headers.get("Retry-After") if err.headers else None,
            ) from err
        except (URLError, TimeoutError, OSError) as err:
            raise TransportError(f"Network error calling {req.full_url}: {err}") from err

    def request_json(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        payload: Any = None,
    ) -> Any:
        data = None
        merged = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        merged.update(headers or {})
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            merged["Content-Type"] = "application/json"
        raw, _ = self._open(Request(url, data=data, headers=merged, method=method))
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as err:
            raise InvalidJSONError(f"Invalid JSON from {url}: {err}", status=200, body=raw[:300].decode("latin-1")) from err

    def fetch_bytes(self, url: str) -> tuple[bytes, str]:
        req = Request(
            url,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "image/png,image/*;q=0.9,*/*;q=0.8",
            },
        )
        return self._open(req)
