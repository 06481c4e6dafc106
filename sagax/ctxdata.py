"""Request-scoped tracing and audit data carried in contexts and RPC metadata."""

from __future__ import annotations

import enum
import ipaddress
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Union

HEADER_TRACEPARENT = "Traceparent"
HEADER_TRACE = "X-Cloud-Trace-Context"
HEADER_X_FORWARDED_FOR = "X-Forwarded-For"
HEADER_X_CORRELATION_ID = "X-Correlation-Id"
HEADER_X_REAL_IP = "X-Real-IP"

CORRELATION_ID_MD_KEY = "correlation-id-md-key"
TRACE_PARENT_MD_KEY = "trace-parent-md-key"
TRACE_ID_MD_KEY = "trace-id-md-key"
SPAN_ID_MD_KEY = "span-id-md-key"
TRACE_SAMPLED_MD_KEY = "trace-sampled-md-key"
USER_AGENT_MD_KEY = "user-agent-md-key"
HOST_MD_KEY = "host-md-key"
IP_MD_KEY = "ip-md-key"
FORWARDED_FOR_MD_KEY = "forwarded-for-md-key"
PID_MD_KEY = "pid-md-key"


class _Key(enum.Enum):
    CORRELATION_ID = "correlation-id"
    TRACE_PARENT = "trace-parent"
    TRACE_ID = "trace-id"
    SPAN_ID = "span-id"
    TRACE_SAMPLED = "trace-sampled"
    USER_AGENT = "user-agent"
    HOST = "host"
    IP = "ip"
    FORWARDED_FOR = "forwarded-for"
    PID = "pid"
    INCOMING_METADATA = "incoming-metadata"


class Context:
    """An immutable chain of key/value pairs; later values shadow earlier ones."""

    __slots__ = ("_entries",)
    __hash__ = None  # type: ignore[assignment]

    def __init__(self, entries: tuple = ()) -> None:
        self._entries = entries

    def with_value(self, key: Any, value: Any) -> "Context":
        """Return a new context that also carries ``value`` under ``key``."""
        return Context(self._entries + ((key, value),))

    def value(self, key: Any) -> Any:
        """Return the most recent value stored under ``key``, or None."""
        for entry_key, entry_value in reversed(self._entries):
            if entry_key == key:
                return entry_value
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Context):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Context({list(self._entries)!r})"


def background() -> Context:
    """Return an empty root context."""
    return Context()


class Metadata(dict):
    """RPC metadata: lower-cased keys mapping to lists of string values."""

    def __init__(self, mapping: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        super().__init__()
        for key, values in (mapping or {}).items():
            self[key] = values

    def __setitem__(self, key: str, values: Iterable[str]) -> None:
        if isinstance(values, str):
            values = [values]
        super().__setitem__(key.lower(), list(values))

    def get_all(self, key: str) -> list[str]:
        """Return every value stored for ``key`` (case-insensitive)."""
        return list(super().get(key.lower(), []))


def new_incoming_context(ctx: Context, md: Mapping[str, Iterable[str]]) -> Context:
    """Attach incoming RPC metadata to a context."""
    if not isinstance(md, Metadata):
        md = Metadata(md)
    return ctx.with_value(_Key.INCOMING_METADATA, md)


def from_incoming_context(ctx: Context) -> Optional[Metadata]:
    """Return the incoming RPC metadata of a context, or None if it has none."""
    md = ctx.value(_Key.INCOMING_METADATA)
    return md if isinstance(md, Metadata) else None


@dataclass
class Request:
    """The parts of an HTTP request that the context helpers read."""

    headers: dict[str, Union[str, list[str]]] = field(default_factory=dict)
    host: str = ""
    remote_addr: str = ""

    def header(self, name: str) -> str:
        """Return the first value of a header (case-insensitive), or ""."""
        wanted = name.lower()
        for key, values in self.headers.items():
            if key.lower() != wanted:
                continue
            if isinstance(values, str):
                return values
            return values[0] if values else ""
        return ""

    @property
    def user_agent(self) -> str:
        return self.header("User-Agent")


Set = Callable[[Context], Context]
SetMD = Callable[[Metadata], Metadata]
ClientIP = Callable[[Request], str]
TrustedProxyCheck = Callable[[Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]], bool]


def sets(ctx: Context, *setters: Set) -> Context:
    """Apply context setters in order."""
    for setter in setters:
        ctx = setter(ctx)
    return ctx


def sets_md(md: Metadata, *setters: SetMD) -> Metadata:
    """Apply metadata setters in order."""
    for setter in setters:
        md = setter(md)
    return md


def _ctx_setter(key: _Key, value: Any) -> Set:
    return lambda ctx: ctx.with_value(key, value)


def _md_setter(md_key: str, value: str) -> SetMD:
    def apply(md: Metadata) -> Metadata:
        md[md_key] = [value]
        return md

    return apply


def _ctx_str(ctx: Context, key: _Key) -> str:
    value = ctx.value(key)
    return value if isinstance(value, str) else ""


def _md_first(md: Metadata, md_key: str) -> str:
    values = md.get_all(md_key)
    return values[0] if values else ""


_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean: {text!r}")


def set_correlation_id(value: str) -> Set:
    return _ctx_setter(_Key.CORRELATION_ID, value)


def set_md_correlation_id(value: str) -> SetMD:
    return _md_setter(CORRELATION_ID_MD_KEY, value)


def get_correlation_id(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.CORRELATION_ID)


def get_md_correlation_id(md: Metadata) -> str:
    return _md_first(md, CORRELATION_ID_MD_KEY)


def set_trace_parent(value: str) -> Set:
    return _ctx_setter(_Key.TRACE_PARENT, value)


def set_md_trace_parent(value: str) -> SetMD:
    return _md_setter(TRACE_PARENT_MD_KEY, value)


def get_trace_parent(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.TRACE_PARENT)


def get_md_trace_parent(md: Metadata) -> str:
    return _md_first(md, TRACE_PARENT_MD_KEY)


def set_trace_id(value: str) -> Set:
    return _ctx_setter(_Key.TRACE_ID, value)


def set_md_trace_id(value: str) -> SetMD:
    return _md_setter(TRACE_ID_MD_KEY, value)


def get_trace_id(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.TRACE_ID)


def get_md_trace_id(md: Metadata) -> str:
    return _md_first(md, TRACE_ID_MD_KEY)


def set_span_id(value: str) -> Set:
    return _ctx_setter(_Key.SPAN_ID, value)


def set_md_span_id(value: str) -> SetMD:
    return _md_setter(SPAN_ID_MD_KEY, value)


def get_span_id(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.SPAN_ID)


def get_md_span_id(md: Metadata) -> str:
    return _md_first(md, SPAN_ID_MD_KEY)


def set_trace_sampled(value: bool) -> Set:
    return _ctx_setter(_Key.TRACE_SAMPLED, value)


def set_md_trace_sampled(value: bool) -> SetMD:
    return _md_setter(TRACE_SAMPLED_MD_KEY, "true" if value else "false")


def get_trace_sampled(ctx: Context) -> bool:
    value = ctx.value(_Key.TRACE_SAMPLED)
    return value if isinstance(value, bool) else False


def get_md_trace_sampled(md: Metadata) -> bool:
    values = md.get_all(TRACE_SAMPLED_MD_KEY)
    if not values:
        return False
    try:
        return _parse_bool(values[0])
    except ValueError:
        return False


def set_user_agent(value: str) -> Set:
    return _ctx_setter(_Key.USER_AGENT, value)


def set_md_user_agent(value: str) -> SetMD:
    return _md_setter(USER_AGENT_MD_KEY, value)


def get_user_agent(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.USER_AGENT)


def get_md_user_agent(md: Metadata) -> str:
    return _md_first(md, USER_AGENT_MD_KEY)


def set_host(value: str) -> Set:
    return _ctx_setter(_Key.HOST, value)


def set_md_host(value: str) -> SetMD:
    return _md_setter(HOST_MD_KEY, value)


def get_host(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.HOST)


def get_md_host(md: Metadata) -> str:
    return _md_first(md, HOST_MD_KEY)


def set_ip(value: str) -> Set:
    return _ctx_setter(_Key.IP, value)


def set_md_ip(value: str) -> SetMD:
    return _md_setter(IP_MD_KEY, value)


def get_ip(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.IP)


def get_md_ip(md: Metadata) -> str:
    return _md_first(md, IP_MD_KEY)


def set_forwarded_for(value: str) -> Set:
    return _ctx_setter(_Key.FORWARDED_FOR, value)


def set_md_forwarded_for(value: str) -> SetMD:
    return _md_setter(FORWARDED_FOR_MD_KEY, value)


def get_forwarded_for(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.FORWARDED_FOR)


def get_md_forwarded_for(md: Metadata) -> str:
    return _md_first(md, FORWARDED_FOR_MD_KEY)


def set_pid(value: str) -> Set:
    return _ctx_setter(_Key.PID, value)


def set_md_pid(value: str) -> SetMD:
    return _md_setter(PID_MD_KEY, value)


def get_pid(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.PID)


def get_md_pid(md: Metadata) -> str:
    return _md_first(md, PID_MD_KEY)


@dataclass(frozen=True)
class _RequestData:
    correlation_id: str
    trace_parent: str
    trace_id: str
    span_id: str
    trace_sampled: bool
    user_agent: str
    host: str
    ip: str
    forwarded_for: str
    pid: str


def _collect(req: Request, gcp_project_id: str, client_ips: Iterable[Optional[ClientIP]]) -> _RequestData:
    correlation_id = req.header(HEADER_X_CORRELATION_ID) or str(uuid.uuid4())
    trace_id, span_id, sampled = deconstruct_x_cloud_trace_context(req.header(HEADER_TRACE))

    ip = ""
    for client_ip in [*client_ips, _default_client_ip()]:
        if client_ip is None:
            continue
        ip = client_ip(req)
        if ip:
            break

    return _RequestData(
        correlation_id=correlation_id,
        trace_parent=req.header(HEADER_TRACEPARENT),
        trace_id=f"projects/{gcp_project_id}/traces/{trace_id}",
        span_id=span_id,
        trace_sampled=sampled,
        user_agent=req.user_agent,
        host=req.host,
        ip=ip,
        forwarded_for=req.header(HEADER_X_FORWARDED_FOR),
        pid=str(os.getpid()),
    )


def _apply_to_context(ctx: Context, data: _RequestData) -> Context:
    return sets(
        ctx,
        set_correlation_id(data.correlation_id),
        set_trace_parent(data.trace_parent),
        set_trace_id(data.trace_id),
        set_span_id(data.span_id),
        set_trace_sampled(data.trace_sampled),
        set_user_agent(data.user_agent),
        set_host(data.host),
        set_ip(data.ip),
        set_forwarded_for(data.forwarded_for),
        set_pid(data.pid),
    )


def set_context_from_http(ctx: Context, req: Request, gcp_project_id: str, *client_ips: Optional[ClientIP]) -> Context:
    """Store audit data from an HTTP request in a context.

    Client IP resolvers are tried in order; the first non-empty answer wins,
    and the request's remote address is tried last.
    """
    return _apply_to_context(ctx, _collect(req, gcp_project_id, client_ips))


def set_context_and_metadata_from_http(
    ctx: Context, req: Request, gcp_project_id: str, *client_ips: Optional[ClientIP]
) -> tuple[Context, Metadata]:
    """Like set_context_from_http, also returning the same data as RPC metadata."""
    data = _collect(req, gcp_project_id, client_ips)
    md = sets_md(
        Metadata(),
        set_md_correlation_id(data.correlation_id),
        set_md_trace_parent(data.trace_parent),
        set_md_trace_id(data.trace_id),
        set_md_span_id(data.span_id),
        set_md_trace_sampled(data.trace_sampled),
        set_md_user_agent(data.user_agent),
        set_md_host(data.host),
        set_md_ip(data.ip),
        set_md_forwarded_for(data.forwarded_for),
        set_md_pid(data.pid),
    )
    return _apply_to_context(ctx, data), md


def set_context_from_grpc(ctx: Context, gcp_project_id: str) -> Context:
    """Store audit data from a context's incoming RPC metadata in the context."""
    md = from_incoming_context(ctx)
    if md is None:
        return ctx

    traces = md.get_all(HEADER_TRACE)
    if traces:
        trace_parent = md.get_all(HEADER_TRACEPARENT)[0]
        trace_id, span_id, sampled = deconstruct_x_cloud_trace_context(traces[0])
        return sets(
            ctx,
            set_trace_parent(trace_parent),
            set_trace_id(f"projects/{gcp_project_id}/traces/{trace_id}"),
            set_span_id(span_id),
            set_trace_sampled(sampled),
        )

    return sets(
        ctx,
        set_correlation_id(get_md_correlation_id(md)),
        set_trace_parent(get_md_trace_parent(md)),
        set_trace_id(get_md_trace_id(md)),
        set_span_id(get_md_span_id(md)),
        set_trace_sampled(get_md_trace_sampled(md)),
        set_user_agent(get_md_user_agent(md)),
        set_host(get_md_host(md)),
        set_ip(get_md_ip(md)),
        set_forwarded_for(get_md_forwarded_for(md)),
        set_pid(get_md_pid(md)),
    )


def _default_client_ip() -> ClientIP:
    return with_remote_addr_client_ip()


def with_remote_addr_client_ip() -> ClientIP:
    """Resolve the client IP from the request's remote address."""
    return lambda req: req.remote_addr


def with_xri_client_ip() -> ClientIP:
    """Resolve the client IP from the X-Real-IP header."""
    return lambda req: req.header(HEADER_X_REAL_IP)


def _forwarded_for(req: Request) -> list[str]:
    value = req.header(HEADER_X_FORWARDED_FOR)
    return value.split(",") if value else []


def with_xff_trusted_proxy_count(count: int) -> ClientIP:
    """Resolve the client IP from X-Forwarded-For, skipping ``count`` rightmost proxies."""

    def resolve(req: Request) -> str:
        parts = _forwarded_for(req)
        pos = len(parts) - count
        if parts and pos > 0:
            return parts[pos - 1].strip()
        return ""

    return resolve


def _parse_ip(text: str):
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def with_xff_trusted_proxy_checker(trusted: TrustedProxyCheck) -> ClientIP:
    """Resolve the rightmost X-Forwarded-For address that is not a trusted proxy."""

    def resolve(req: Request) -> str:
        for part in reversed(_forwarded_for(req)):
            ip = part.strip()
            if not trusted(_parse_ip(ip)):
                return ip
        return ""

    return resolve


_CLOUD_TRACE_CONTEXT = re.compile(r"([a-f\d]+)?(?:/([a-f\d]+))?(?:;o=(\d))?", re.ASCII)


def deconstruct_x_cloud_trace_context(value: str) -> tuple[str, str, bool]:
    """Split a ``TRACE_ID/SPAN_ID;o=TRACE_TRUE`` header into its parts."""
    match = _CLOUD_TRACE_CONTEXT.match(value)
    trace_id = match.group(1) or ""
    span_id = match.group(2) or ""
    sampled = match.group(3) == "1"
    if span_id == "0":
        span_id = ""
    return trace_id, span_id, sampled