"""Request-scoped values carried in contexts and RPC metadata, with idempotency and device data."""

from __future__ import annotations

import enum
import os
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .ctxdata import (
    CORRELATION_ID_MD_KEY,
    FORWARDED_FOR_MD_KEY,
    HEADER_TRACE,
    HEADER_TRACEPARENT,
    HEADER_X_CORRELATION_ID,
    HEADER_X_FORWARDED_FOR,
    HEADER_X_REAL_IP,
    HOST_MD_KEY,
    IP_MD_KEY,
    PID_MD_KEY,
    SPAN_ID_MD_KEY,
    TRACE_ID_MD_KEY,
    TRACE_PARENT_MD_KEY,
    TRACE_SAMPLED_MD_KEY,
    USER_AGENT_MD_KEY,
    ClientIP,
    Context,
    Metadata,
    Request,
    TrustedProxyCheck,
    deconstruct_x_cloud_trace_context,
    from_incoming_context,
    _parse_ip,
)

Set = Callable[[Context], Context]
SetMD = Callable[[Metadata], Metadata]


class _Key(enum.Enum):
    CORRELATION_ID = "correlation-id"
    TRACE_PARENT = "trace-parent"
    TRACE_ID = "trace-id"
    SPAN_ID = "span-id"
    TRACE_SAMPLED = "trace-sampled"
    IDEMPOTENCY = "idempotency"
    USER_AGENT = "user-agent"
    USER_DEVICE = "user-device"
    HOST = "host"
    IP = "ip"
    FORWARDED_FOR = "forwarded-for"
    PID = "pid"


_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


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


def _ctx_str(ctx: Context, key: _Key) -> str:
    value = ctx.value(key)
    return value if isinstance(value, str) else ""


def _md_setter(md_key: str, value: str) -> SetMD:
    def apply(md: Metadata) -> Metadata:
        md[md_key] = [value]
        return md

    return apply


def _md_first(md: Metadata, md_key: str) -> str:
    values = md.get_all(md_key)
    return values[0] if values else ""


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
    text = values[0]
    if text in _TRUE_WORDS:
        return True
    return False if text in _FALSE_WORDS else False


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


def set_idempotency(value: str) -> Set:
    return _ctx_setter(_Key.IDEMPOTENCY, value)


def get_idempotency(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.IDEMPOTENCY)


def set_user_device(value: str) -> Set:
    return _ctx_setter(_Key.USER_DEVICE, value)


def get_user_device(ctx: Context) -> str:
    return _ctx_str(ctx, _Key.USER_DEVICE)


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
    for client_ip in [*client_ips, with_remote_addr_client_ip()]:
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


def with_xff_trusted_proxy_checker(trusted: TrustedProxyCheck) -> ClientIP:
    """Resolve the rightmost X-Forwarded-For address that is not a trusted proxy."""

    def resolve(req: Request) -> str:
        for part in reversed(_forwarded_for(req)):
            ip = part.strip()
            if not trusted(_parse_ip(ip)):
                return ip
        return ""

    return resolve