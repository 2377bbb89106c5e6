from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from fastapi import status

from gemini_proxy.errors import InvalidConfigurationError
from gemini_proxy.payloads import ChatMessage, PayloadShape, build_payload, infer_shape
from gemini_proxy.upstream import (
    DEFAULT_TIMEOUT_SECONDS,
    AttemptResult,
    JsonBody,
    UpstreamAttemptRunner,
    UpstreamTarget,
    build_upstream_headers,
)

DEFAULT_MESSAGE_URL = (
    "https://generativelanguage.googleapis.com/v1beta2/models/"
    "chat-bison-001:generateMessage"
)
DEFAULT_CONTENT_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "gemini-1.5-flash:generateContent"
)
DEFAULT_TARGETS = (
    UpstreamTarget(url=DEFAULT_MESSAGE_URL, shape=PayloadShape.GENERATE_MESSAGE),
    UpstreamTarget(url=DEFAULT_CONTENT_URL, shape=PayloadShape.GENERATE_CONTENT),
)
MAX_ATTEMPTS = 2

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class ProxyConfig:
    override_url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    default_targets: tuple[UpstreamTarget, ...] = DEFAULT_TARGETS

    def __post_init__(self) -> None:
        if self.override_url is not None:
            self.override_url = self.override_url.strip() or None
        self.default_targets = tuple(self.default_targets)
        if not self.default_targets:
            raise ValueError("At least one default upstream target is required.")
        if len(self.default_targets) > MAX_ATTEMPTS:
            raise ValueError(
                f"At most {MAX_ATTEMPTS} default upstream targets are supported."
            )


@dataclass(slots=True)
class ProxyOutcome:
    status_code: int
    content: Any
    request_id: str
    attempts: list[AttemptResult] = field(default_factory=list)
    # Set from the attempt's TextBody tag; content is then the raw upstream text.
    text_body: bool = False

    @property
    def final_attempt(self) -> AttemptResult | None:
        return self.attempts[-1] if self.attempts else None


@dataclass(frozen=True, slots=True)
class _PlannedAttempt:
    target: UpstreamTarget
    # Decides whether this attempt ends the chain when another one is planned.
    accept: Callable[[AttemptResult], bool]


def _completed(result: AttemptResult) -> bool:
    return result.succeeded


def _status_ok(result: AttemptResult) -> bool:
    return result.status_ok


def plan_attempts(config: ProxyConfig) -> list[_PlannedAttempt]:
    """Return the ordered (target, stop rule) pairs for one request.

    Probing two shapes against one override URL advances on any non-2xx,
    since a shape mismatch surfaces as an HTTP error. Switching between
    default endpoints advances only when the call never completed.
    """
    override_url = config.override_url
    if override_url:
        hinted = infer_shape(override_url)
        if hinted is not None:
            return [_PlannedAttempt(UpstreamTarget(override_url, hinted), _completed)]
        return [
            _PlannedAttempt(
                UpstreamTarget(override_url, PayloadShape.GENERATE_MESSAGE),
                _status_ok,
            ),
            _PlannedAttempt(
                UpstreamTarget(override_url, PayloadShape.GENERATE_CONTENT),
                _completed,
            ),
        ]
    return [_PlannedAttempt(target, _completed) for target in config.default_targets]


class GeminiProxy:
    def __init__(
        self,
        config: ProxyConfig,
        runner: UpstreamAttemptRunner | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or UpstreamAttemptRunner(
            timeout_seconds=config.timeout_seconds
        )
        self._audit_hook = audit_hook

    async def close(self) -> None:
        await self.runner.close()

    def audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    def require_api_key(self) -> str:
        if not self.config.api_key:
            raise InvalidConfigurationError("GEMINI_API_KEY not set in env")
        return self.config.api_key

    async def forward(
        self,
        messages: list[ChatMessage],
        request_id: str | None = None,
    ) -> ProxyOutcome:
        rid = request_id or uuid4().hex[:12]
        headers = build_upstream_headers(self.require_api_key())
        plan = plan_attempts(self.config)
        request_started = time.perf_counter()
        attempts: list[AttemptResult] = []

        for index, planned in enumerate(plan):
            is_last = index == len(plan) - 1
            result = await self._run_attempt(
                planned.target,
                messages=messages,
                headers=headers,
                request_id=rid,
                attempt_number=index + 1,
                total_attempts=len(plan),
            )
            attempts.append(result)
            if is_last or planned.accept(result):
                break
            logger.info(
                "proxy_fallback request_id=%s from=%s to=%s reason=%s",
                rid,
                planned.target.label,
                plan[index + 1].target.label,
                result.transport_error or f"status={result.http_status}",
            )

        latency_ms = (time.perf_counter() - request_started) * 1000.0
        final = attempts[-1]
        if final.succeeded:
            return self._passthrough_outcome(final, attempts, rid, latency_ms)
        return self._exhausted_outcome(attempts, rid, latency_ms)

    async def _run_attempt(
        self,
        target: UpstreamTarget,
        *,
        messages: list[ChatMessage],
        headers: dict[str, str],
        request_id: str,
        attempt_number: int,
        total_attempts: int,
    ) -> AttemptResult:
        logger.info(
            "proxy_attempt request_id=%s attempt=%d/%d target=%s",
            request_id,
            attempt_number,
            total_attempts,
            target.label,
        )
        body = json.dumps(build_payload(target.shape, messages))
        result = await self.runner.attempt(target, body, headers)
        logger.info(
            "proxy_attempt_result request_id=%s target=%s succeeded=%s status=%s elapsed_ms=%.2f",
            request_id,
            target.label,
            result.succeeded,
            result.http_status,
            result.elapsed_ms,
        )
        self.audit(
            "proxy_attempt",
            request_id=request_id,
            attempt=attempt_number,
            total_attempts=total_attempts,
            url=target.url,
            shape=target.shape.value,
            succeeded=result.succeeded,
            status=result.http_status,
            transport_error=result.transport_error,
            elapsed_ms=round(result.elapsed_ms, 3),
        )
        return result

    def _passthrough_outcome(
        self,
        final: AttemptResult,
        attempts: list[AttemptResult],
        request_id: str,
        latency_ms: float,
    ) -> ProxyOutcome:
        status_code = final.http_status or status.HTTP_502_BAD_GATEWAY
        logger.info(
            "proxy_response request_id=%s target=%s status=%d attempts=%d latency_ms=%.2f",
            request_id,
            final.target.label,
            status_code,
            len(attempts),
            latency_ms,
        )
        self.audit(
            "proxy_response",
            request_id=request_id,
            target=final.target.label,
            status=status_code,
            attempts=len(attempts),
            request_latency_ms=round(latency_ms, 3),
        )
        return ProxyOutcome(
            status_code=status_code,
            content=final.passthrough_content(),
            request_id=request_id,
            attempts=attempts,
            text_body=not isinstance(final.body, JsonBody),
        )

    def _exhausted_outcome(
        self,
        attempts: list[AttemptResult],
        request_id: str,
        latency_ms: float,
    ) -> ProxyOutcome:
        attempted = [attempt.target.label for attempt in attempts]
        logger.error(
            "proxy_exhausted request_id=%s attempted_targets=%s latency_ms=%.2f",
            request_id,
            ",".join(attempted),
            latency_ms,
        )
        self.audit(
            "proxy_exhausted",
            request_id=request_id,
            attempted_targets=attempted,
            request_latency_ms=round(latency_ms, 3),
        )
        return ProxyOutcome(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "error": "All upstream attempts failed",
                "details": {
                    "request_id": request_id,
                    "attempts": [attempt.as_dict() for attempt in attempts],
                },
            },
            request_id=request_id,
            attempts=attempts,
        )
