"""Gateway middleware that runs before any route handler.

Ordering matters: security headers wrap the body limit and rate limiter so their
413/429 responses are hardened too.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse

from obs_todo.config import Settings
from obs_todo.errors import AppError, PayloadTooLarge, RateLimitExceeded
from obs_todo.observability.logging import log_event
from obs_todo.observability.metrics import AppMetrics
from obs_todo.security.rate_limit import RateLimitDecision, SlidingWindowRateLimiter


ASGIApp = Callable[..., Any]

_CSP_BASE: dict[str, list[str]] = {
    "default-src": ["'self'"],
    "script-src": ["'self'", "'unsafe-inline'"],
    "style-src": ["'self'", "'unsafe-inline'"],
    "img-src": ["'self'", "data:"],
    "font-src": ["'self'"],
    "connect-src": ["'self'"],
    "object-src": ["'none'"],
    "base-uri": ["'self'"],
    "form-action": ["'self'"],
    "frame-ancestors": ["'none'"],
}

# Directives that also accept the configured extra origins.
_CSP_EXTENDABLE = ("script-src", "connect-src")

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def build_content_security_policy(extra_origins: Sequence[str] = ()) -> str:
    directives: list[str] = []
    for directive, sources in _CSP_BASE.items():
        values = list(sources)
        if directive in _CSP_EXTENDABLE:
            values.extend(origin for origin in extra_origins if origin not in values)
        directives.append(f"{directive} {' '.join(values)}")
    return "; ".join(directives)


async def _send_error(
    error: AppError,
    scope: dict[str, Any],
    receive: Callable[..., Any],
    send: Callable[..., Any],
    headers: dict[str, str] | None = None,
) -> None:
    response = JSONResponse(
        error.to_payload(),
        status_code=error.status_code,
        headers={**(headers or {}), **error.headers()},
    )
    await response(scope, receive, send)


class SecurityHeadersMiddleware:
    def __init__(self, app: ASGIApp, extra_origins: Sequence[str] = ()) -> None:
        self.app = app
        self.headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "Referrer-Policy": "no-referrer",
            "X-DNS-Prefetch-Control": "off",
            "Content-Security-Policy": build_content_security_policy(extra_origins),
        }

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in self.headers.items():
                    response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _is_limited_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return (
        media_type == "application/json"
        or media_type.endswith("+json")
        or media_type == "application/x-www-form-urlencoded"
    )


class BodySizeLimitMiddleware:
    """Rejects JSON/form bodies above ``max_bytes`` with 413 before they are parsed."""

    def __init__(self, app: ASGIApp, max_bytes: int) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http" or scope.get("method") not in _BODY_METHODS:
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if not _is_limited_content_type(headers.get("content-type")):
            await self.app(scope, receive, send)
            return

        declared = headers.get("content-length")
        if declared is not None:
            try:
                too_large = int(declared) > self.max_bytes
            except ValueError:
                too_large = False
            if too_large:
                await self._reject(scope, receive, send, declared_bytes=declared)
                return
            await self.app(scope, receive, send)
            return

        # No declared length (chunked upload): buffer up to the cap, then replay.
        chunks: list[bytes] = []
        first_message: dict[str, Any]
        size = 0
        while True:
            message = await receive()
            if message.get("type") != "http.request":
                first_message = message
                break
            body = message.get("body", b"")
            size += len(body)
            if size > self.max_bytes:
                await self._reject(scope, receive, send, declared_bytes=None)
                return
            chunks.append(body)
            if not message.get("more_body", False):
                first_message = {"type": "http.request", "body": b"".join(chunks), "more_body": False}
                break

        replayed = False

        async def replay_receive() -> dict[str, Any]:
            nonlocal replayed
            if not replayed:
                replayed = True
                return first_message
            return await receive()

        await self.app(scope, replay_receive, send)

    async def _reject(
        self,
        scope: dict[str, Any],
        receive: Callable[..., Any],
        send: Callable[..., Any],
        declared_bytes: str | None,
    ) -> None:
        log_event(
            "warn",
            "request.body_too_large",
            max_bytes=self.max_bytes,
            declared_bytes=declared_bytes,
        )
        await _send_error(PayloadTooLarge(f"Request body exceeds {self.max_bytes} bytes"), scope, receive, send)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limiter: SlidingWindowRateLimiter
    path_prefix: str
    methods: frozenset[str] | None = None

    def matches(self, method: str, path: str) -> bool:
        if self.methods is not None and method not in self.methods:
            return False
        return path == self.path_prefix.rstrip("/") or path.startswith(self.path_prefix)


def default_rate_limit_rules(settings: Settings) -> list[RateLimitRule]:
    window = settings.rate_limit_window_seconds
    return [
        RateLimitRule(
            name="general",
            limiter=SlidingWindowRateLimiter(settings.rate_limit_max_requests, window),
            path_prefix="/api/",
        ),
        RateLimitRule(
            name="mutation",
            limiter=SlidingWindowRateLimiter(settings.rate_limit_mutation_max_requests, window),
            path_prefix="/api/todos",
            methods=frozenset({"POST", "DELETE"}),
        ),
    ]


def _rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "RateLimit-Limit": str(decision.limit),
        "RateLimit-Remaining": str(decision.remaining),
        "RateLimit-Reset": str(decision.reset_after),
    }


class RateLimitMiddleware:
    """Applies every matching rule in order; the first rejection wins.

    Each rule counts independently, so a request rejected by a later rule has
    still used up quota in the earlier ones.
    """

    def __init__(
        self,
        app: ASGIApp,
        rules: Sequence[RateLimitRule],
        metrics: AppMetrics | None = None,
        trust_proxy_headers: bool = False,
    ) -> None:
        self.app = app
        self.rules = list(rules)
        self.metrics = metrics
        self.trust_proxy_headers = trust_proxy_headers

    def client_key(self, scope: dict[str, Any]) -> str:
        if self.trust_proxy_headers:
            forwarded = Headers(scope=scope).get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",", 1)[0].strip()
        client = scope.get("client")
        if client:
            return str(client[0])
        return "unknown"

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET")
        path = scope.get("path", "/")
        key = self.client_key(scope)

        decision: RateLimitDecision | None = None
        for rule in self.rules:
            if not rule.matches(method, path):
                continue
            decision = rule.limiter.hit(key)
            if not decision.allowed:
                if self.metrics is not None:
                    self.metrics.rate_limit_hits_total.inc((rule.name,))
                log_event("warn", "rate_limit.exceeded", limiter=rule.name, client=key)
                await _send_error(
                    RateLimitExceeded(retry_after=decision.reset_after),
                    scope,
                    receive,
                    send,
                    headers=_rate_limit_headers(decision),
                )
                return

        if decision is None:
            await self.app(scope, receive, send)
            return

        limit_headers = _rate_limit_headers(decision)

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in limit_headers.items():
                    response_headers[name] = value
            await send(message)

        await self.app(scope, receive, send_wrapper)
