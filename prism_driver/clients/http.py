import time
from typing import Any

import httpx


class RetryPolicy:
    def __init__(self, attempts: int = 1, sleep_sec: float = 0):
        self.attempts = max(attempts, 1)
        self.sleep_sec = sleep_sec


class RequestFailure(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        url: str,
        attempts: int,
        error_type: str,
        detail: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ):
        self.method = method
        self.url = url
        self.attempts = attempts
        self.error_type = error_type
        self.detail = detail
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(
            f"request failed after {attempts} attempts: {method} {url} ({error_type}: {detail})"
        )


def _error_message(response: httpx.Response) -> str:
    body = (response.text or "").strip()
    try:
        payload = response.json()
    except ValueError:
        return body[:240]
    if isinstance(payload, dict):
        messages = payload.get("message_list")
        if isinstance(messages, list):
            parts = [
                str(item.get("message") or item.get("reason") or "")
                for item in messages
                if isinstance(item, dict)
            ]
            joined = "; ".join(part for part in parts if part)
            if joined:
                return joined[:240]
        for key in ("message", "detail", "error_detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value[:240]
    return body[:240]


def request_json(
    client: httpx.Client, method: str, url: str, retry: RetryPolicy, **kwargs: Any
) -> dict:
    error: Exception | None = None
    status_code: int | None = None
    response_text: str | None = None
    detail = "unknown error"
    error_type = "RuntimeError"
    for attempt in range(1, retry.attempts + 1):
        try:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            if not response.content:
                return {}
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
            return payload
        except httpx.HTTPStatusError as exc:
            error = exc
            status_code = exc.response.status_code
            response_text = exc.response.text
            message = _error_message(exc.response)
            detail = f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}"
            error_type = exc.__class__.__name__
        except httpx.RequestError as exc:
            error = exc
            detail = str(exc)
            error_type = exc.__class__.__name__
        except ValueError as exc:
            error = exc
            detail = f"invalid response body: {exc}"
            error_type = exc.__class__.__name__
        if attempt < retry.attempts:
            time.sleep(retry.sleep_sec)
    raise RequestFailure(
        method=method,
        url=url,
        attempts=retry.attempts,
        error_type=error_type,
        detail=detail,
        status_code=status_code,
        response_text=response_text,
    ) from error
