from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from gemini_proxy.audit import AttemptAuditLog
from gemini_proxy.config import build_proxy_config
from gemini_proxy.errors import (
    GeminiProxyError,
    InvalidConfigurationError,
    InvalidRequestError,
)
from gemini_proxy.payloads import parse_messages
from gemini_proxy.proxy import GeminiProxy, ProxyOutcome
from gemini_proxy.settings import Settings, get_settings

app = FastAPI(
    title="Gemini Proxy",
    description="Chat proxy for the Gemini API with request-shape fallback.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

CORS_ALLOW_METHODS = "POST, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"


@app.middleware("http")
async def cors_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    response = await call_next(request)
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    response.headers["Access-Control-Allow-Origin"] = settings.cors_allow_origin
    response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    proxy_config = build_proxy_config(settings)
    audit_log = AttemptAuditLog(
        path=settings.proxy_audit_log_path,
        enabled=settings.proxy_audit_log_enabled,
    )
    app.state.settings = settings
    app.state.audit_log = audit_log
    app.state.gemini_proxy = GeminiProxy(proxy_config, audit_hook=audit_log.record)
    logger.info(
        (
            "startup complete override_url=%s default_targets=%s timeout_s=%.1f "
            "api_key_configured=%s audit_log_enabled=%s"
        ),
        proxy_config.override_url or "-",
        ",".join(target.label for target in proxy_config.default_targets),
        proxy_config.timeout_seconds,
        bool(proxy_config.api_key),
        audit_log.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    proxy: GeminiProxy | None = getattr(app.state, "gemini_proxy", None)
    if proxy is not None:
        await proxy.close()
    audit_log: AttemptAuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


async def _read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


def _outcome_response(outcome: ProxyOutcome) -> Response:
    headers = {
        "x-proxy-request-id": outcome.request_id,
        "x-proxy-attempts": str(len(outcome.attempts)),
    }
    final = outcome.final_attempt
    if final is not None and final.succeeded:
        headers["x-proxy-upstream-shape"] = final.target.shape.value
    if outcome.text_body:
        return PlainTextResponse(
            content=outcome.content,
            status_code=outcome.status_code,
            headers=headers,
        )
    return JSONResponse(
        content=outcome.content,
        status_code=outcome.status_code,
        headers=headers,
    )


@app.options("/api/gemini/chat")
@app.options("/chat")
async def chat_preflight() -> Response:
    return Response(status_code=204)


@app.post("/api/gemini/chat")
@app.post("/chat")
async def chat(request: Request) -> Response:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    body = await _read_json_body(request)
    messages = parse_messages(body)

    proxy: GeminiProxy = app.state.gemini_proxy
    try:
        outcome = await proxy.forward(messages, request_id=request_id)
    except GeminiProxyError:
        raise
    except Exception as exc:
        logger.exception("proxy_error request_id=%s", request_id)
        return JSONResponse(
            status_code=500,
            content={"error": "proxy error", "details": str(exc)},
            headers={"x-proxy-request-id": request_id},
        )
    return _outcome_response(outcome)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(_: Request, exc: InvalidRequestError) -> JSONResponse:
    logger.info("invalid_request error=%s", exc.message)
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "message": exc.message,
            "receivedBody": exc.received_body,
        },
    )


@app.exception_handler(InvalidConfigurationError)
async def invalid_configuration_handler(
    _: Request, exc: InvalidConfigurationError
) -> JSONResponse:
    logger.error("invalid_configuration error=%s", exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run("gemini_proxy.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
