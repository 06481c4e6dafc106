"""Composable HTTP round trippers: context injection, request logging and retries."""

from __future__ import annotations

import dataclasses
import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from typing import Any, Callable, Optional, Protocol

from . import logger
from .ctxdata import Context, background
from .logger import Field

_REDACTED_HEADERS = {"authorization", "x-secret-key"}


@dataclass
class HTTPRequest:
    """An outgoing HTTP request together with the context it runs in."""

    method: str = "GET"
    url: str = ""
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: Optional[bytes] = None
    ctx: Context = field(default_factory=background)

    def with_context(self, ctx: Context) -> "HTTPRequest":
        """Return a copy of the request running in ``ctx``."""
        return dataclasses.replace(self, ctx=ctx)


@dataclass
class HTTPResponse:
    """The response to an HTTP request."""

    status_code: int
    headers: dict[str, list[str]] = field(default_factory=dict)
    body: Optional[bytes] = None


class RoundTripper(Protocol):
    def round_trip(self, req: HTTPRequest) -> HTTPResponse: ...


@dataclass(frozen=True)
class ContextOption:
    """A key/value pair added to the context of every request."""

    key: str
    value: Any

    def apply(self, ctx: Context) -> Context:
        return ctx.with_value(self.key, self.value)


class ContextRoundTripper:
    """Adds values to each request's context before passing it on."""

    def __init__(self, next_tripper: RoundTripper, options: tuple[ContextOption, ...] = ()) -> None:
        self._next = next_tripper
        self._options = tuple(options)

    def round_trip(self, req: HTTPRequest) -> HTTPResponse:
        ctx = req.ctx
        for option in self._options:
            ctx = option.apply(ctx)
        return self._next.round_trip(req.with_context(ctx))


def new_context(next_tripper: RoundTripper, *options: ContextOption) -> ContextRoundTripper:
    return ContextRoundTripper(next_tripper, options)


def with_context_round_tripper_option(key: str, value: Any) -> ContextOption:
    return ContextOption(key, value)


def _compact_json(data: Optional[bytes]) -> str:
    """Return ``data`` as JSON with insignificant whitespace removed, or "" if invalid."""
    if data is None:
        return ""
    try:
        text = data.decode("utf-8")
        json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return ""
    out = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            out.append(ch)
        elif ch not in " \t\n\r":
            out.append(ch)
    return "".join(out)


def _headers_json(headers: dict[str, list[str]]) -> str:
    return json.dumps(headers, sort_keys=True, separators=(",", ":"))


@dataclass
class _LogOptions:
    operation: str = ""
    service: str = ""


LogOption = Callable[[_LogOptions], _LogOptions]


class LogRoundTripper:
    """Logs each request and its response through the default logger."""

    def __init__(self, next_tripper: RoundTripper, options: _LogOptions) -> None:
        self._next = next_tripper
        self._options = options

    def round_trip(self, req: HTTPRequest) -> HTTPResponse:
        ctx = req.ctx
        started = time.monotonic()
        timestamp = datetime.now().astimezone().isoformat(timespec="seconds")
        service = self._options.service
        operation = self._options.operation

        headers = {k: list(v) for k, v in req.headers.items() if k.lower() not in _REDACTED_HEADERS}

        logger.info(
            ctx,
            f"start request {service} to {req.url}",
            Field("endpoint", req.url),
            Field("method", req.method),
            Field("operation", operation),
            Field("service", service),
            Field("timestamp", timestamp),
            Field("request", _compact_json(req.body)),
            Field("header", _headers_json(headers)),
        )

        res = self._next.round_trip(req)

        latency = int((time.monotonic() - started) * 1_000_000)
        logger.info(
            ctx,
            f"finish request {service} to {req.url}",
            Field("endpoint", req.url),
            Field("operation", operation),
            Field("service", service),
            Field("method", req.method),
            Field("timestamp", timestamp),
            Field("response", _compact_json(res.body)),
            Field("header", _headers_json(res.headers)),
            Field("status", res.status_code),
            Field("latency", f"{latency}ms"),
        )
        return res


def with_log_round_tripper_operation_option(operation: str) -> LogOption:
    def apply(options: _LogOptions) -> _LogOptions:
        options.operation = operation
        return options

    return apply


def with_log_round_tripper_service_option(service: str) -> LogOption:
    def apply(options: _LogOptions) -> _LogOptions:
        options.service = service
        return options

    return apply


def new_log_round_tripper(next_tripper: RoundTripper, *options: LogOption) -> LogRoundTripper:
    opts = _LogOptions()
    for option in options:
        opts = option(opts)
    return LogRoundTripper(next_tripper, opts)


DEFAULT_MAX_RETRIES = 5
_DEFAULT_BACKOFF_SECONDS = 2.0


def is_internal_error(res: HTTPResponse) -> bool:
    """Return True when the response is a 500 Internal Server Error."""
    return res.status_code == HTTPStatus.INTERNAL_SERVER_ERROR


@dataclass
class _RetryOptions:
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: Callable[[], float] = lambda: _DEFAULT_BACKOFF_SECONDS
    is_retryable: Callable[[HTTPResponse], bool] = is_internal_error


RetryOption = Callable[[_RetryOptions], None]


class RetryRoundTripper:
    """Repeats a request while its response is retryable, up to a maximum of attempts."""

    def __init__(self, next_tripper: RoundTripper, options: Optional[_RetryOptions] = None) -> None:
        self._next = next_tripper
        self._options = options or _RetryOptions()

    def round_trip(self, req: HTTPRequest) -> HTTPResponse:
        attempts = 0
        while True:
            res = self._next.round_trip(req)
            attempts += 1
            if attempts == self._options.max_retries:
                return res
            if not self._options.is_retryable(res):
                return res
            time.sleep(self._options.backoff())

    def with_backoff(self, func: Callable[[], float]) -> "RetryRoundTripper":
        """Set the function giving the pause, in seconds, between attempts."""
        self._options.backoff = func
        return self

    def with_is_retryable(self, func: Callable[[HTTPResponse], bool]) -> "RetryRoundTripper":
        self._options.is_retryable = func
        return self

    def with_max_retries(self, max_retries: int) -> "RetryRoundTripper":
        self._options.max_retries = max_retries
        return self


def new_retry_round_tripper(next_tripper: RoundTripper, *options: RetryOption) -> RetryRoundTripper:
    opts = _RetryOptions()
    for option in options:
        option(opts)
    return RetryRoundTripper(next_tripper, opts)