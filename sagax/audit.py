"""Audit log entries carrying client, user and activity data."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from . import ctxdata
from .ctxdata import Context
from .logger import (
    DEFAULT_LOGGER,
    LOG_KEY_FORWARDED_FOR,
    LOG_KEY_HOST,
    LOG_KEY_IP,
    LOG_KEY_PID,
    LOG_KEY_SPAN_ID,
    LOG_KEY_TRACE_ID,
    LOG_KEY_TRACE_SAMPLED,
    LOG_KEY_TRACEPARENT,
    LOG_KEY_USER_AGENT,
    Field,
    Logger,
    loggers,
    namespace,
)

AUDIT = "audit"
_LOG_KEY_CLIENT_APP_NAME = "client-app-name"
_LOG_KEY_USER_ID = "user-id"
_LOG_KEY_ACTIVITY_DATA = "activity-data"
_LOG_MESSAGE = f"[{AUDIT.upper()}]"


@dataclass
class Message:
    """What an audit entry records."""

    client_app_name: str = ""
    user_id: str = ""
    activity_data: Any = None


def _context_fields(ctx: Context) -> list[Field]:
    return [
        Field(LOG_KEY_TRACEPARENT, ctxdata.get_trace_parent(ctx)),
        Field(LOG_KEY_TRACE_ID, ctxdata.get_trace_id(ctx)),
        Field(LOG_KEY_SPAN_ID, ctxdata.get_span_id(ctx)),
        Field(LOG_KEY_TRACE_SAMPLED, ctxdata.get_trace_sampled(ctx)),
        namespace(AUDIT),
        Field(LOG_KEY_USER_AGENT, ctxdata.get_user_agent(ctx)),
        Field(LOG_KEY_HOST, ctxdata.get_host(ctx)),
        Field(LOG_KEY_IP, ctxdata.get_ip(ctx)),
        Field(LOG_KEY_FORWARDED_FOR, ctxdata.get_forwarded_for(ctx)),
        Field(LOG_KEY_PID, ctxdata.get_pid(ctx)),
    ]


def _audit_logger(ctx: Context, message: Message) -> Optional[Logger]:
    lg = loggers.get(DEFAULT_LOGGER)
    if lg is None:
        return None
    return (
        lg.named(AUDIT)
        .with_fields(*_context_fields(ctx))
        .with_fields(
            Field(_LOG_KEY_CLIENT_APP_NAME, message.client_app_name),
            Field(_LOG_KEY_USER_ID, message.user_id),
        )
    )


def info(ctx: Context, message: Message) -> None:
    lg = _audit_logger(ctx, message)
    if lg is not None:
        lg.info(_LOG_MESSAGE, Field(_LOG_KEY_ACTIVITY_DATA, message.activity_data))


def debug(ctx: Context, message: Message) -> None:
    lg = _audit_logger(ctx, message)
    if lg is not None:
        lg.debug(_LOG_MESSAGE, Field(_LOG_KEY_ACTIVITY_DATA, message.activity_data))


def warn(ctx: Context, message: Message) -> None:
    lg = _audit_logger(ctx, message)
    if lg is not None:
        lg.warn(_LOG_MESSAGE, Field(_LOG_KEY_ACTIVITY_DATA, message.activity_data))


def error(ctx: Context, message: Message) -> None:
    lg = _audit_logger(ctx, message)
    if lg is not None:
        lg.error(_LOG_MESSAGE, Field(_LOG_KEY_ACTIVITY_DATA, message.activity_data))