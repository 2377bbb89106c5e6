from __future__ import annotations

import asyncio
import json

import httpx

from gemini_proxy.payloads import PayloadShape
from gemini_proxy.upstream import (
    AttemptResult,
    JsonBody,
    TextBody,
    UpstreamAttemptRunner,
    UpstreamTarget,
    build_upstream_headers,
    decode_body,
)

TARGET = UpstreamTarget(
    url="https://upstream.test/v1/models/m:generateContent",
    shape=PayloadShape.GENERATE_CONTENT,
)


def _runner(handler, timeout_seconds: float = 15.0) -> UpstreamAttemptRunner:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamAttemptRunner(timeout_seconds=timeout_seconds, client=client)


def _attempt(runner: UpstreamAttemptRunner, body: str = "{}") -> AttemptResult:
    async def _run() -> AttemptResult:
        try:
            return await runner.attempt(TARGET, body, build_upstream_headers("key-1"))
        finally:
            await runner.close()

    return asyncio.run(_run())


def test_build_upstream_headers_includes_key_only_when_present() -> None:
    assert build_upstream_headers("abc") == {
        "Content-Type": "application/json",
        "x-goog-api-key": "abc",
    }
    assert build_upstream_headers(None) == {"Content-Type": "application/json"}


def test_decode_body_tags_json_and_text() -> None:
    assert decode_body('{"a": 1}') == JsonBody({"a": 1})
    assert decode_body("<html>oops</html>") == TextBody("<html>oops</html>")
    assert decode_body("") == TextBody("")


def test_attempt_posts_body_and_headers_and_parses_json() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"candidates": [{"content": "hi"}]})

    result = _attempt(_runner(handler), body='{"contents": []}')

    assert len(seen) == 1
    assert seen[0].method == "POST"
    assert str(seen[0].url) == TARGET.url
    assert seen[0].headers["x-goog-api-key"] == "key-1"
    assert seen[0].headers["content-type"] == "application/json"
    assert json.loads(seen[0].content) == {"contents": []}
    assert result.succeeded is True
    assert result.status_ok is True
    assert result.http_status == 200
    assert result.parsed_body == {"candidates": [{"content": "hi"}]}
    assert result.transport_error is None


def test_attempt_keeps_raw_text_when_body_is_not_json() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="plain answer")

    result = _attempt(_runner(handler))

    assert result.succeeded is True
    assert result.parsed_body is None
    assert result.raw_text == "plain answer"
    assert result.body == TextBody("plain answer")
    assert result.passthrough_content() == "plain answer"


def test_attempt_reports_non_2xx_as_completed_call() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"code": 500}})

    result = _attempt(_runner(handler))

    assert result.succeeded is True
    assert result.status_ok is False
    assert result.http_status == 500
    assert result.parsed_body == {"error": {"code": 500}}


def test_attempt_folds_connection_errors_into_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("name resolution failed", request=request)

    result = _attempt(_runner(handler))

    assert result.succeeded is False
    assert result.http_status is None
    assert result.body is None
    assert result.transport_error is not None
    assert "ConnectError" in result.transport_error


def test_attempt_folds_invalid_url_into_result() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    runner = _runner(handler)
    target = UpstreamTarget(
        url="http://upstream.test:generateContent",
        shape=PayloadShape.GENERATE_CONTENT,
    )

    async def _run() -> AttemptResult:
        try:
            return await runner.attempt(target, "{}", build_upstream_headers("key-1"))
        finally:
            await runner.close()

    result = asyncio.run(_run())

    assert seen == []
    assert result.succeeded is False
    assert result.http_status is None
    assert result.transport_error is not None
    assert "InvalidURL" in result.transport_error


def test_attempt_times_out_instead_of_hanging() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={})

    result = _attempt(_runner(handler, timeout_seconds=0.05))

    assert result.succeeded is False
    assert result.transport_error is not None
    assert "Timeout" in result.transport_error
    assert result.elapsed_ms < 2000


def test_attempt_result_as_dict_is_json_serializable() -> None:
    result = AttemptResult(
        target=TARGET,
        succeeded=False,
        transport_error="ConnectError: refused",
        elapsed_ms=1.23456,
    )
    payload = result.as_dict()
    assert payload == {
        "url": TARGET.url,
        "shape": "generateContent",
        "succeeded": False,
        "status": None,
        "body": None,
        "raw_text": None,
        "transport_error": "ConnectError: refused",
        "elapsed_ms": 1.235,
    }
    json.dumps(payload)
