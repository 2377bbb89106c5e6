from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from gemini_proxy.payloads import PayloadShape

DEFAULT_TIMEOUT_SECONDS = 15.0
API_KEY_HEADER = "x-goog-api-key"

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class UpstreamTarget:
    url: str
    shape: PayloadShape

    @property
    def label(self) -> str:
        return f"{self.shape.value}@{self.url}"


@dataclass(frozen=True, slots=True)
class JsonBody:
    value: Any


@dataclass(frozen=True, slots=True)
class TextBody:
    text: str


ResponseBody = JsonBody | TextBody


def decode_body(text: str) -> ResponseBody:
    try:
        return JsonBody(json.loads(text))
    except ValueError:
        return TextBody(text)


@dataclass(frozen=True, slots=True)
class AttemptResult:
    target: UpstreamTarget
    succeeded: bool
    http_status: int | None = None
    body: ResponseBody | None = None
    raw_text: str | None = None
    transport_error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def status_ok(self) -> bool:
        return (
            self.succeeded
            and self.http_status is not None
            and 200 <= self.http_status < 300
        )

    @property
    def parsed_body(self) -> Any:
        if isinstance(self.body, JsonBody):
            return self.body.value
        return None

    def passthrough_content(self) -> Any:
        if isinstance(self.body, JsonBody):
            return self.body.value
        return self.raw_text or ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "url": self.target.url,
            "shape": self.target.shape.value,
            "succeeded": self.succeeded,
            "status": self.http_status,
            "body": self.parsed_body,
            "raw_text": self.raw_text,
            "transport_error": self.transport_error,
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


def build_upstream_headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers[API_KEY_HEADER] = api_key
    return headers


def _request_error_message(exc: httpx.RequestError | httpx.InvalidURL) -> str:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    error_message = str(exc).strip() or repr(exc)
    return f"{error_type}: {error_message}"


class UpstreamAttemptRunner:
    """Issues exactly one POST per call and folds every outcome into a result."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = max(0.001, float(timeout_seconds))
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def attempt(
        self,
        target: UpstreamTarget,
        body: str,
        headers: dict[str, str],
    ) -> AttemptResult:
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.post(target.url, content=body, headers=headers),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._transport_failure(
                target,
                f"Timeout: no response within {self.timeout_seconds:g}s",
                started,
            )
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            return self._transport_failure(target, _request_error_message(exc), started)

        text = response.text
        return AttemptResult(
            target=target,
            succeeded=True,
            http_status=response.status_code,
            body=decode_body(text),
            raw_text=text,
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )

    @staticmethod
    def _transport_failure(
        target: UpstreamTarget, error: str, started: float
    ) -> AttemptResult:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.warning(
            "proxy_transport_error target=%s elapsed_ms=%.2f error=%s",
            target.label,
            elapsed_ms,
            error,
        )
        return AttemptResult(
            target=target,
            succeeded=False,
            transport_error=error,
            elapsed_ms=elapsed_ms,
        )
