"""Structured JSON logging enriched with request-scoped context data."""

from __future__ import annotations

import base64
import copy
import dataclasses
import enum
import io
import json
import logging
import logging.handlers
import os
import sys
import threading
import traceback
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from types import FrameType
from typing import Any, Callable, Iterable, Optional, Union

from . import ctxdata
from .ctxdata import Context

LOG_KEY_TRACEPARENT = "traceparent"
LOG_KEY_TRACE_ID = "logging.googleapis.com/trace"
LOG_KEY_SPAN_ID = "logging.googleapis.com/spanId"
LOG_KEY_TRACE_SAMPLED = "logging.googleapis.com/trace_sampled"

LOG_KEY_CORRELATION_ID = "correlation-id"
LOG_KEY_USER_AGENT = "user-agent"
LOG_KEY_HOST = "host"
LOG_KEY_IP = "ip"
LOG_KEY_FORWARDED_FOR = "x-forwarded-for"
LOG_KEY_PID = "pid"

DEFAULT_LOGGER = "default"

_DEFAULT_MAX_BYTES = 1024 * 1024 * 1024
_MAX_BACKUPS = 7


class _Level(enum.IntEnum):
    DEBUG = -1
    INFO = 0
    WARN = 1
    ERROR = 2
    DPANIC = 3
    PANIC = 4
    FATAL = 5


_LEVEL_NAMES = {
    "debug": _Level.DEBUG,
    "info": _Level.INFO,
    "warn": _Level.WARN,
    "error": _Level.ERROR,
    "dpanic": _Level.DPANIC,
    "panic": _Level.PANIC,
    "fatal": _Level.FATAL,
}

_SEVERITY = {
    _Level.DEBUG: "DEBUG",
    _Level.INFO: "INFO",
    _Level.WARN: "WARNING",
    _Level.ERROR: "ERROR",
    _Level.DPANIC: "CRITICAL",
    _Level.PANIC: "ALERT",
    _Level.FATAL: "EMERGENCY",
}


def _parse_level(text: str) -> _Level:
    try:
        return _LEVEL_NAMES[text.lower()]
    except KeyError:
        raise ValueError(f'unrecognized level: "{text}"') from None


class _LogTo(enum.Enum):
    FILE = "file"
    FILE_AND_STDOUT = "filestdout"
    STDOUT = "stdout"


_LOG_TO_NAMES = {
    "file": _LogTo.FILE,
    "stdout": _LogTo.STDOUT,
    "filestdout": _LogTo.FILE_AND_STDOUT,
    "stdoutfile": _LogTo.FILE_AND_STDOUT,
}


class _Env(enum.Enum):
    LOCAL = "local"
    DEV = "dev"
    PROD = "prod"


@dataclass(frozen=True)
class Field:
    """A key/value pair attached to a log entry.

    A field that opens a namespace nests every later field under its key.
    """

    key: str
    value: Any = None
    opens_namespace: bool = False


def namespace(key: str) -> Field:
    """Return a field that nests all following fields under ``key``."""
    return Field(key, opens_namespace=True)


def _format_duration(value: timedelta) -> str:
    return f"{value.total_seconds():g}s"


def _encode(value: Any) -> Any:
    if isinstance(value, BaseException):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, timedelta):
        return _format_duration(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return value


class _StdoutSink:
    def write(self, text: str) -> None:
        sys.stdout.write(text)

    def flush(self) -> None:
        sys.stdout.flush()


class _FileSink:
    """A size-rotated log file."""

    def __init__(self, path: str) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._handler = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=_DEFAULT_MAX_BYTES,
            backupCount=_MAX_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
        self._handler.setFormatter(logging.Formatter("%(message)s"))

    def write(self, text: str) -> None:
        self._handler.emit(logging.makeLogRecord({"msg": text.rstrip("\n")}))

    def flush(self) -> None:
        self._handler.flush()


_WRITE_LOCK = threading.Lock()


class Logger:
    """Writes JSON log entries to a set of sinks."""

    def __init__(
        self,
        sinks: Iterable[Any],
        level: Union[str, int] = "info",
        *,
        name: str = "",
        fields: Iterable[Field] = (),
        development: bool = False,
        with_caller: bool = False,
        caller_skip: int = 1,
        full_caller: bool = True,
    ) -> None:
        self._sinks = tuple(sinks)
        self._level = _parse_level(level) if isinstance(level, str) else _Level(level)
        self._name = name
        self._fields = tuple(fields)
        self._development = development
        self._with_caller = with_caller
        self._caller_skip = caller_skip
        self._full_caller = full_caller

    def with_fields(self, *fields: Field) -> "Logger":
        """Return a logger that adds ``fields`` to every entry."""
        child = copy.copy(self)
        child._fields = self._fields + tuple(fields)
        return child

    def named(self, name: str) -> "Logger":
        """Return a logger whose name has ``name`` appended, dot separated."""
        child = copy.copy(self)
        child._name = f"{self._name}.{name}" if self._name else name
        return child

    def debug(self, message: str, *fields: Field) -> None:
        self._log(_Level.DEBUG, message, fields)

    def info(self, message: str, *fields: Field) -> None:
        self._log(_Level.INFO, message, fields)

    def warn(self, message: str, *fields: Field) -> None:
        self._log(_Level.WARN, message, fields)

    def error(self, message: str, *fields: Field) -> None:
        self._log(_Level.ERROR, message, fields)

    def dpanic(self, message: str, *fields: Field) -> None:
        """Log at critical level; raise RuntimeError in development mode."""
        self._log(_Level.DPANIC, message, fields)

    def panic(self, message: str, *fields: Field) -> None:
        """Log at alert level, then raise RuntimeError."""
        self._log(_Level.PANIC, message, fields)

    def fatal(self, message: str, *fields: Field) -> None:
        """Log at emergency level, then exit with status 1."""
        self._log(_Level.FATAL, message, fields)

    def sync(self) -> None:
        """Flush every sink, ignoring flush errors."""
        for sink in self._sinks:
            try:
                sink.flush()
            except (OSError, ValueError):
                pass

    def _log(self, level: _Level, message: str, fields: tuple) -> None:
        if level >= self._level:
            self._write(level, message, fields)
        if level is _Level.PANIC or (level is _Level.DPANIC and self._development):
            raise RuntimeError(message)
        if level is _Level.FATAL:
            raise SystemExit(1)

    def _caller_frame(self) -> Optional[FrameType]:
        try:
            # _caller_frame, _write, _log, the level method, then the caller.
            return sys._getframe(4 + self._caller_skip)
        except ValueError:
            return None

    def _format_caller(self, frame: FrameType) -> str:
        path = frame.f_code.co_filename
        if not self._full_caller:
            head, tail = os.path.split(path)
            path = os.path.join(os.path.basename(head), tail) if head else tail
        return f"{path}:{frame.f_lineno}"

    def _write(self, level: _Level, message: str, fields: tuple) -> None:
        frame = self._caller_frame() if (self._with_caller or self._development) else None

        entry: dict[str, Any] = {
            "severity": _SEVERITY[level],
            "time": datetime.now().astimezone().isoformat(),
        }
        if self._name:
            entry["logger"] = self._name
        if self._with_caller and frame is not None:
            entry["caller"] = self._format_caller(frame)
            entry["func"] = frame.f_code.co_name
        entry["message"] = message

        target = entry
        for item in (*self._fields, *fields):
            if item.opens_namespace:
                nested: dict[str, Any] = {}
                target[item.key] = nested
                target = nested
            else:
                target[item.key] = _encode(item.value)

        if self._development and level >= _Level.ERROR:
            stack = traceback.format_stack(frame) if frame is not None else traceback.format_stack()
            entry["stacktrace"] = "".join(stack)

        line = json.dumps(entry, default=str, ensure_ascii=False) + "\n"
        with _WRITE_LOCK:
            for sink in self._sinks:
                sink.write(line)


loggers: dict[str, Logger] = {}
_REGISTRY_LOCK = threading.Lock()


def _store(name: str, lg: Logger) -> None:
    with _REGISTRY_LOCK:
        loggers[name] = lg


@dataclass
class _Config:
    service_name: str
    log_to: _LogTo = _LogTo.STDOUT
    env: _Env = _Env.LOCAL
    with_caller: bool = False
    caller_skip: int = 1
    level: str = "info"


LogConfig = Callable[[_Config], None]


def with_log_to_option(log_to: str) -> LogConfig:
    """Choose the destination: file, stdout, filestdout or stdoutfile (case-insensitive).

    Unknown values leave the default, stdout, in place.
    """

    def apply(cfg: _Config) -> None:
        choice = _LOG_TO_NAMES.get(log_to.lower())
        if choice is not None:
            cfg.log_to = choice

    return apply


def with_log_env_option(env: str) -> LogConfig:
    """Choose the environment: local, dev or prod (case-insensitive); default local."""

    def apply(cfg: _Config) -> None:
        try:
            cfg.env = _Env(env.lower())
        except ValueError:
            pass

    return apply


def with_caller(enabled: bool) -> LogConfig:
    """Record the file, line and function a log call came from."""

    def apply(cfg: _Config) -> None:
        cfg.with_caller = enabled

    return apply


def add_caller_skip(skip: int) -> LogConfig:
    """Skip ``skip`` more stack frames when finding the caller."""

    def apply(cfg: _Config) -> None:
        cfg.caller_skip += skip

    return apply


def _level_option(name: str) -> LogConfig:
    def apply(cfg: _Config) -> None:
        cfg.level = name

    return apply


def debug_log_level() -> LogConfig:
    return _level_option("debug")


def info_log_level() -> LogConfig:
    return _level_option("info")


def warn_log_level() -> LogConfig:
    return _level_option("warn")


def error_log_level() -> LogConfig:
    return _level_option("error")


def panic_log_level() -> LogConfig:
    return _level_option("panic")


def _file_name(app_name: str) -> str:
    suffix = datetime.now().strftime("%Y-%m-%dT%H-%M-%S.%f") + "000"
    return os.path.join("storages", "logs", f"log_{suffix}_{app_name}.log")


def init(service_name: str, *options: LogConfig) -> Logger:
    """Create the default logger; call once where the program sets itself up."""
    cfg = _Config(service_name=service_name)
    for option in options:
        option(cfg)

    sinks: list[Any] = []
    if cfg.log_to in (_LogTo.FILE, _LogTo.FILE_AND_STDOUT):
        sinks.append(_FileSink(_file_name(cfg.service_name)))
    if cfg.log_to in (_LogTo.STDOUT, _LogTo.FILE_AND_STDOUT):
        sinks.append(_StdoutSink())

    try:
        level = _parse_level(cfg.level)
    except ValueError as exc:
        print(f"error during set log level: {exc}, will use default value", file=sys.stderr)
        level = _Level.INFO

    lg = Logger(
        sinks,
        level,
        fields=(Field("service-name", cfg.service_name),),
        development=cfg.env in (_Env.LOCAL, _Env.DEV),
        with_caller=cfg.with_caller,
        caller_skip=cfg.caller_skip,
        full_caller=cfg.env is not _Env.PROD,
    )
    _store(DEFAULT_LOGGER, lg)
    return lg


def init_for_test() -> Logger:
    """Register a silent in-memory logger under the empty name and return it."""
    lg = Logger([io.StringIO()], _Level.INFO)
    _store("", lg)
    return lg


def sync() -> None:
    """Flush every registered logger."""
    with _REGISTRY_LOCK:
        registered = list(loggers.values())
    for lg in registered:
        lg.sync()


def _context_fields(ctx: Context) -> list[Field]:
    return [
        Field(LOG_KEY_CORRELATION_ID, ctxdata.get_correlation_id(ctx)),
        Field(LOG_KEY_TRACEPARENT, ctxdata.get_trace_parent(ctx)),
        Field(LOG_KEY_TRACE_ID, ctxdata.get_trace_id(ctx)),
        Field(LOG_KEY_SPAN_ID, ctxdata.get_span_id(ctx)),
        Field(LOG_KEY_TRACE_SAMPLED, ctxdata.get_trace_sampled(ctx)),
        Field(LOG_KEY_USER_AGENT, ctxdata.get_user_agent(ctx)),
        Field(LOG_KEY_HOST, ctxdata.get_host(ctx)),
        Field(LOG_KEY_IP, ctxdata.get_ip(ctx)),
        Field(LOG_KEY_FORWARDED_FOR, ctxdata.get_forwarded_for(ctx)),
        Field(LOG_KEY_PID, ctxdata.get_pid(ctx)),
    ]


def _sprintf(message: str, args: tuple) -> str:
    return message % args if args else message


def _contextual(ctx: Context) -> Optional[Logger]:
    lg = loggers.get(DEFAULT_LOGGER)
    if lg is None:
        return None
    return lg.with_fields(*_context_fields(ctx))


def with_fields(ctx: Context, *fields: Field) -> Optional[Logger]:
    """Return the default logger carrying the context's data and ``fields``, or None."""
    lg = _contextual(ctx)
    return lg.with_fields(*fields) if lg is not None else None


def info(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.info(message, *fields)


def infof(ctx: Context, message: str, *args: Any) -> None:
    """Log a printf-style formatted message at info level."""
    lg = _contextual(ctx)
    if lg is not None:
        lg.info(_sprintf(message, args))


def debug(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.debug(message, *fields)


def debugf(ctx: Context, message: str, *args: Any) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.debug(_sprintf(message, args))


def warn(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.warn(message, *fields)


def warnf(ctx: Context, message: str, *args: Any) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.warn(_sprintf(message, args))


def error(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.error(message, *fields)


def errorf(ctx: Context, message: str, *args: Any) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.error(_sprintf(message, args))


def fatal(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.fatal(message, *fields)


def fatalf(ctx: Context, message: str, *args: Any) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.fatal(_sprintf(message, args))


def panic(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.panic(message, *fields)


def dpanic(ctx: Context, message: str, *fields: Field) -> None:
    lg = _contextual(ctx)
    if lg is not None:
        lg.dpanic(message, *fields)