"""HTTP instrumentation, request logging and path listing for WSGI applications."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from http import HTTPStatus
from typing import Any, Callable, Iterable, Iterator, Optional
from urllib.parse import quote

_log = logging.getLogger(__name__)

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]
TenantGetter = Callable[[dict], Optional[str]]


class _Metric:
    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        if len(set(self.label_names)) != len(self.label_names):
            raise ValueError(f"duplicate label names for {name}: {self.label_names}")
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, Any]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"labels {sorted(labels)} do not match {sorted(self.label_names)} for {self.name}"
            )
        return tuple(str(labels[name]) for name in self.label_names)


class Counter(_Metric):
    """A monotonically increasing counter partitioned by labels."""

    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        super().__init__(name, help_text, label_names)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, labels: dict[str, Any], amount: float = 1.0) -> None:
        """Add amount (never negative) to the series for labels."""
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, labels: dict[str, Any]) -> float:
        """Return the current value of the series for labels."""
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)


class Histogram(_Metric):
    """Observations counted into cumulative buckets, partitioned by labels."""

    def __init__(
        self, name: str, help_text: str, label_names: Iterable[str], buckets: Iterable[float]
    ) -> None:
        super().__init__(name, help_text, label_names)
        self.buckets = tuple(float(b) for b in buckets)
        if not self.buckets:
            raise ValueError("histogram needs at least one bucket")
        if any(a >= b for a, b in zip(self.buckets, self.buckets[1:])):
            raise ValueError("histogram buckets must be in increasing order")
        self._series: dict[tuple[str, ...], list[Any]] = {}

    def observe(self, labels: dict[str, Any], value: float) -> None:
        """Record one observation."""
        key = self._key(labels)
        with self._lock:
            counts, total, count = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            counts = [c + 1 if value <= upper else c for c, upper in zip(counts, self.buckets)]
            self._series[key] = [counts, total + value, count + 1]

    def _state(self, labels: dict[str, Any]) -> list[Any]:
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, [[0] * len(self.buckets), 0.0, 0])

    def sample_count(self, labels: dict[str, Any]) -> int:
        """Return how many observations were made."""
        return self._state(labels)[2]

    def sample_sum(self, labels: dict[str, Any]) -> float:
        """Return the sum of all observations."""
        return self._state(labels)[1]

    def bucket_counts(self, labels: dict[str, Any]) -> dict[float, int]:
        """Return cumulative counts per upper bound, including +Inf."""
        counts, _, count = self._state(labels)
        result = dict(zip(self.buckets, counts))
        result[math.inf] = count
        return result


class Summary(_Metric):
    """The count and sum of observations, partitioned by labels."""

    def __init__(self, name: str, help_text: str, label_names: Iterable[str]) -> None:
        super().__init__(name, help_text, label_names)
        self._series: dict[tuple[str, ...], tuple[float, int]] = {}

    def observe(self, labels: dict[str, Any], value: float) -> None:
        """Record one observation."""
        key = self._key(labels)
        with self._lock:
            total, count = self._series.get(key, (0.0, 0))
            self._series[key] = (total + value, count + 1)

    def sample_count(self, labels: dict[str, Any]) -> int:
        """Return how many observations were made."""
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, (0.0, 0))[1]

    def sample_sum(self, labels: dict[str, Any]) -> float:
        """Return the sum of all observations."""
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, (0.0, 0))[0]


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return count buckets, the first at start and each factor times the one before."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    value = float(start)
    for _ in range(count):
        buckets.append(value)
        value *= factor
    return buckets


class HTTPMetricsCollector:
    """The HTTP metrics kept per code, method and tenant, plus fixed extra labels."""

    def __init__(self, hardcoded_labels: Iterable[str]) -> None:
        self.hardcoded_labels = tuple(hardcoded_labels)
        labels = (*self.hardcoded_labels, "code", "method", "tenant")
        self.request_counter = Counter("http_requests_total", "Counter of HTTP requests.", labels)
        self.request_size = Summary("http_request_size_bytes", "Size of HTTP requests.", labels)
        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "Histogram of latencies for HTTP requests.",
            labels,
            (0.1, 0.2, 0.4, 1, 2.5, 5, 8, 20, 60, 120),
        )
        self.response_size = Histogram(
            "http_response_size_bytes",
            "Histogram of response size for HTTP requests.",
            labels,
            exponential_buckets(100, 10, 8),
        )


def compute_approximate_request_size(environ: dict) -> int:
    """Approximate the size of a request from its URL, method, protocol, headers, host and body."""
    path = quote(environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", ""), safe="/:@!$&'()*+,;=-._~")
    query = environ.get("QUERY_STRING", "")
    url = f"{path}?{query}" if query else path

    size = len(url) + len(environ.get("REQUEST_METHOD", "")) + len(environ.get("SERVER_PROTOCOL", ""))
    for key, value in environ.items():
        if key == "HTTP_HOST":
            continue
        if key.startswith("HTTP_"):
            size += len(key) - len("HTTP_") + len(str(value))
        elif key in ("CONTENT_TYPE", "CONTENT_LENGTH") and value != "":
            size += len(key) + len(str(value))
    size += len(environ.get("HTTP_HOST", ""))

    raw_length = environ.get("CONTENT_LENGTH", "")
    if raw_length == "":
        return size
    try:
        length = int(raw_length)
    except ValueError:
        return size
    return size + length if length >= 0 else size


class _ResponseRecorder:
    def __init__(self, start_response: Callable) -> None:
        self.status = 0
        self.bytes_written = 0
        self._start_response = start_response

    def start_response(self, status: str, headers: list, exc_info: Any = None) -> Callable:
        self.status = int(status.split(" ", 1)[0])
        write = self._start_response(status, headers, exc_info)

        def counting_write(data: bytes) -> Any:
            self.bytes_written += len(data)
            return write(data)

        return counting_write


class _ObservedBody:
    """A response body that counts bytes and runs a callback once it is closed."""

    def __init__(self, body: Iterable[bytes], recorder: _ResponseRecorder, on_close: Callable[[], None]):
        self._body = body
        self._recorder = recorder
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._body:
            self._recorder.bytes_written += len(chunk)
            yield chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._body, "close", None)
            if close is not None:
                close()
        finally:
            self._on_close()


class InstrumentedHandlerFactory:
    """Wraps WSGI applications so that each request is recorded in HTTP metrics."""

    def __init__(self, hardcoded_labels: Iterable[str], tenant_getter: TenantGetter | None = None):
        self.metrics_collector = HTTPMetricsCollector(hardcoded_labels)
        self._tenant_getter = tenant_getter

    def new_handler(self, extra_labels: dict[str, str], app: WSGIApp) -> WSGIApp:
        """Return app instrumented with the given values for the hard-coded labels."""
        expected = set(self.metrics_collector.hardcoded_labels)
        if set(extra_labels) != expected:
            raise ValueError(f"extra labels {sorted(extra_labels)} do not match {sorted(expected)}")
        extra = dict(extra_labels)
        collector = self.metrics_collector

        def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
            recorder = _ResponseRecorder(start_response)
            started = time.monotonic()
            body = app(environ, recorder.start_response)

            def record() -> None:
                tenant = (self._tenant_getter(environ) if self._tenant_getter else None) or ""
                labels = {
                    **extra,
                    "code": str(recorder.status),
                    "method": environ.get("REQUEST_METHOD", ""),
                    "tenant": tenant,
                }
                collector.request_counter.inc(labels)
                collector.request_size.observe(labels, float(compute_approximate_request_size(environ)))
                collector.request_duration.observe(labels, time.monotonic() - started)
                collector.response_size.observe(labels, float(recorder.bytes_written))

            return _ObservedBody(body, recorder, record)

        return handle


def _logfmt_value(value: Any) -> str:
    text = str(value)
    if text == "" or any(c in text for c in ' ="\\') or any(ord(c) < 0x20 for c in text):
        return json.dumps(text)
    return text


def request_logger(logger: logging.Logger | None = None) -> Callable[[WSGIApp], WSGIApp]:
    """Return a middleware logging each request: warnings for 5xx, debug otherwise."""
    logger = logger or _log

    def middleware(app: WSGIApp) -> WSGIApp:
        def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
            recorder = _ResponseRecorder(start_response)
            started = time.monotonic()
            body = app(environ, recorder.start_response)

            def record() -> None:
                elapsed = time.monotonic() - started
                keyvals = [
                    ("request", environ.get("HTTP_X_REQUEST_ID", "")),
                    ("proto", environ.get("SERVER_PROTOCOL", "")),
                    ("method", environ.get("REQUEST_METHOD", "")),
                    ("status", recorder.status),
                    ("content", environ.get("CONTENT_TYPE", "")),
                    ("path", environ.get("PATH_INFO", "")),
                    ("duration", f"{elapsed * 1000:.3f}ms"),
                    ("bytes", recorder.bytes_written),
                ]
                message = " ".join(f"{key}={_logfmt_value(value)}" for key, value in keyvals)
                level = logging.WARNING if recorder.status // 100 == 5 else logging.DEBUG
                logger.log(level, "%s", message)

            return _ObservedBody(body, recorder, record)

        return handle

    return middleware


def paths_handler(logger: logging.Logger | None, routes: Iterable[Any]) -> WSGIApp:
    """Return a WSGI app that lists the patterns of routes as JSON."""
    logger = logger or _log
    paths = [route if isinstance(route, str) else route.pattern for route in routes]
    document = (
        json.dumps({"paths": paths}, indent=2)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )
    body = document.encode()

    def handle(environ: dict, start_response: Callable) -> Iterable[bytes]:
        status = HTTPStatus.OK
        start_response(
            f"{status.value} {status.phrase}",
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]

    return handle