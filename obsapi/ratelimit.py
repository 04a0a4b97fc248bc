"""Per-tenant, per-endpoint rate limiting middleware for WSGI applications."""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from http import HTTPStatus
from typing import Any, Callable, Iterable, Optional, Protocol

_log = logging.getLogger(__name__)

REQUEST_NAME = "observatorium:tenant_per_endpoint"

HEADER_KEY_REMAINING = "X-RateLimit-Remaining"
HEADER_KEY_LIMIT = "X-RateLimit-Limit"
HEADER_KEY_RESET = "X-RateLimit-Reset"

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]
Middleware = Callable[[WSGIApp], WSGIApp]
TenantGetter = Callable[[dict], Optional[str]]


@dataclass(frozen=True)
class Config:
    """A rate limit for the paths a matcher selects, for one tenant."""

    tenant: str
    matcher: re.Pattern
    limit: int
    window: timedelta


@dataclass(frozen=True)
class RateLimitRequest:
    """A request to an external rate limiting service."""

    name: str
    key: str
    limit: int
    duration: int


class OverLimitError(Exception):
    """Raised by a shared rate limiter when the limit has been reached."""

    def __init__(self, remaining: int = 0, reset_time: int = 0) -> None:
        super().__init__("over limit")
        self.remaining = remaining
        self.reset_time = reset_time


class SharedRateLimiter(Protocol):
    """An external service that keeps rate limits shared between instances."""

    def get_rate_limits(self, request: RateLimitRequest) -> tuple[int, int]:
        """Count one hit and return (remaining, reset time); raise OverLimitError when over."""


class LocalRateLimiter:
    """An in-memory sliding window counter."""

    def __init__(
        self,
        limit: int,
        window: timedelta,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.limit = limit
        self.window = window
        self._seconds = window.total_seconds()
        self._clock = clock
        self._counts: dict[tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> tuple[bool, int, int]:
        """Count a hit for key; return (allowed, remaining, reset time in Unix seconds)."""
        now = self._clock() if self._clock else time.time()
        index = math.floor(now / self._seconds)
        window_start = index * self._seconds
        reset = int(window_start + self._seconds)

        with self._lock:
            for stale in [k for k in self._counts if k[1] < index - 1]:
                del self._counts[stale]
            current = self._counts.get((key, index), 0)
            previous = self._counts.get((key, index - 1), 0)
            elapsed = now - window_start
            rate = previous * (self._seconds - elapsed) / self._seconds + current
            if rate >= self.limit:
                return False, 0, reset
            self._counts[(key, index)] = current + 1
        return True, max(self.limit - int(rate) - 1, 0), reset


def _http_error(
    start_response: Callable,
    status: HTTPStatus,
    message: str,
    headers: list[tuple[str, str]] | None = None,
) -> list[bytes]:
    body = (message + "\n").encode()
    start_response(
        f"{status.value} {status.phrase}",
        list(headers or [])
        + [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(body))),
        ],
    )
    return [body]


def _adding_headers(start_response: Callable, extra: list[tuple[str, str]]) -> Callable:
    def wrapped(status: str, headers: list[tuple[str, str]], exc_info: Any = None) -> Any:
        names = {name.lower() for name, _ in extra}
        kept = [(n, v) for n, v in headers if n.lower() not in names]
        return start_response(status, kept + extra, exc_info)

    return wrapped


def _limit_headers(limit: int, remaining: int, reset: int) -> list[tuple[str, str]]:
    return [
        (HEADER_KEY_LIMIT, str(limit)),
        (HEADER_KEY_REMAINING, str(remaining)),
        (HEADER_KEY_RESET, str(reset)),
    ]


def _local_handler(limiter: LocalRateLimiter) -> Middleware:
    def wrap(app: WSGIApp) -> WSGIApp:
        def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
            allowed, remaining, reset = limiter.hit("*")
            headers = _limit_headers(limiter.limit, remaining, reset)
            if not allowed:
                status = HTTPStatus.TOO_MANY_REQUESTS
                return _http_error(start_response, status, status.phrase, headers)
            return app(environ, _adding_headers(start_response, headers))

        return handle

    return wrap


def _shared_handler(
    logger: logging.Logger, client: SharedRateLimiter, request: RateLimitRequest
) -> Middleware:
    def wrap(app: WSGIApp) -> WSGIApp:
        def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
            try:
                remaining, reset = client.get_rate_limits(request)
            except OverLimitError as err:
                status = HTTPStatus.TOO_MANY_REQUESTS
                headers = _limit_headers(request.limit, err.remaining, err.reset_time)
                return _http_error(start_response, status, status.phrase, headers)
            except Exception as err:  # any failure of the external service
                logger.warning("rate limiter: API failed: %s", err)
                headers = _limit_headers(request.limit, 0, 0)
                return _http_error(start_response, HTTPStatus.INTERNAL_SERVER_ERROR, str(err), headers)
            headers = _limit_headers(request.limit, remaining, reset)
            return app(environ, _adding_headers(start_response, headers))

        return handle

    return wrap


def _combine(
    limiters: dict[str, list[tuple[re.Pattern, Middleware]]], tenant_getter: TenantGetter
) -> Middleware:
    def middleware(app: WSGIApp) -> WSGIApp:
        routes = {
            tenant: [(matcher, wrap(app)) for matcher, wrap in entries]
            for tenant, entries in limiters.items()
        }

        def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
            tenant = tenant_getter(environ)
            if tenant is None:
                return _http_error(start_response, HTTPStatus.UNAUTHORIZED, "error finding tenant")
            path = environ.get("PATH_INFO", "")
            for matcher, handler in routes.get(tenant, ()):
                if matcher.search(path):
                    return handler(environ, start_response)
            return app(environ, start_response)

        return handle

    return middleware


def with_local_rate_limiter(*args: Config, tenant_getter: TenantGetter) -> Middleware:
    """Limit requests per tenant and endpoint with in-memory counters; args are Configs."""
    limiters: dict[str, list[tuple[re.Pattern, Middleware]]] = {}
    for config in args:
        limiter = LocalRateLimiter(config.limit, config.window)
        limiters.setdefault(config.tenant, []).append((config.matcher, _local_handler(limiter)))
    return _combine(limiters, tenant_getter)


def with_shared_rate_limiter(
    logger: logging.Logger | None,
    client: SharedRateLimiter,
    *args: Config,
    tenant_getter: TenantGetter,
) -> Middleware:
    """Limit requests per tenant and endpoint through an external service; args are Configs."""
    logger = logger or _log
    limiters: dict[str, list[tuple[re.Pattern, Middleware]]] = {}
    for config in args:
        request = RateLimitRequest(
            name=REQUEST_NAME,
            key=f"{config.tenant}:{config.matcher.pattern}",
            limit=config.limit,
            duration=config.window // timedelta(microseconds=1),
        )
        limiters.setdefault(config.tenant, []).append(
            (config.matcher, _shared_handler(logger, client, request))
        )
    return _combine(limiters, tenant_getter)