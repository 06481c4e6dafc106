"""Uniform JSON response envelopes in a standard or SNAP BI layout."""

from __future__ import annotations

import abc
import dataclasses
import enum
import json
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional

from .ctxdata import Context


@dataclass
class Pagination:
    """Paging parameters of a list request."""

    page: int = 0
    limit: int = 0


@dataclass
class Info:
    """Paging information of a list response."""

    count: int = 0
    total_page: int = 0


def _encode_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _plain(value: Any) -> Any:
    """Return ``value`` as plain JSON data (dicts, lists, strings, numbers)."""
    return json.loads(json.dumps(value, default=_encode_default))


def _dump(data: dict) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode_default)


@dataclass
class Meta(abc.ABC):
    """The status part of a response envelope."""

    code: str = ""
    message: str = ""
    info: Optional[Info] = None

    @abc.abstractmethod
    def templating(self, ctx: Context, clue: "Clue") -> "Clue":
        """Fill in the defaults of ``clue``'s meta before it is sent."""

    @abc.abstractmethod
    def marshall(self, clue: "Clue") -> str:
        """Encode ``clue`` as a JSON document."""

    @abc.abstractmethod
    def _as_dict(self) -> dict:
        """Return the meta's own JSON fields."""


@dataclass
class StdMeta(Meta):
    """Standard layout: ``status``, ``message``, optional ``info`` and ``data``."""

    def _as_dict(self) -> dict:
        out: dict = {"status": self.code, "message": self.message}
        if self.info is not None:
            out["info"] = dataclasses.asdict(self.info)
        return out

    def templating(self, ctx: Context, clue: "Clue") -> "Clue":
        meta = clue.meta
        if not meta.message and clue.http_code == HTTPStatus.OK:
            meta.message = "Successful"
        return clue

    def marshall(self, clue: "Clue") -> str:
        data: dict = {}
        if clue.meta is not None:
            data.update(_plain(clue.meta._as_dict()))
        data["data"] = _plain(clue.data) if clue.data is not None else None
        return _dump(data)


@dataclass
class SnapMeta(Meta):
    """SNAP BI layout: ``responseCode`` and ``responseMessage`` merged with the data."""

    def _as_dict(self) -> dict:
        return {"responseCode": self.code, "responseMessage": self.message}

    def templating(self, ctx: Context, clue: "Clue") -> "Clue":
        meta = clue.meta
        case = meta.code or "00"
        service = get_ctx_service_code(ctx) or "00"
        message = meta.message
        if not message and clue.http_code == HTTPStatus.OK:
            message = "Successful"
        meta.code = f"{clue.http_code}{service}{case}"
        meta.message = message
        return clue

    def marshall(self, clue: "Clue") -> str:
        data: dict = {}
        if clue.meta is not None:
            data.update(_plain(clue.meta._as_dict()))
        if clue.data is not None:
            body = _plain(clue.data)
            if not isinstance(body, dict):
                raise TypeError(
                    f"cannot merge {type(body).__name__} data into a SNAP BI response object"
                )
            data.update(body)
        return _dump(data)


@dataclass
class Clue:
    """A response: HTTP status, meta and payload."""

    http_code: int
    meta: Meta
    data: Any = None

    def to_json(self) -> str:
        """Encode the response in its meta's layout."""
        return self.meta.marshall(self)


class Builder(Exception):
    """A response under construction; also usable as an error carrying it."""

    def __init__(self, clue: Clue) -> None:
        super().__init__(clue.meta.message)
        self.clue = clue

    def __str__(self) -> str:
        return self.clue.meta.message

    def std(self) -> "Builder":
        """Switch to the standard layout."""
        self.clue.meta = mew_std(self.clue.meta.code, self.clue.meta.message)
        return self

    def snap_bi(self) -> "Builder":
        """Switch to the SNAP BI layout."""
        self.clue.meta = mew_snap_bi(self.clue.meta.code, self.clue.meta.message)
        return self

    def send(self, ctx: Context) -> tuple[int, str]:
        """Apply templating and return the HTTP status and JSON body to send."""
        self.clue = self.clue.meta.templating(ctx, self.clue)
        return self.clue.http_code, self.clue.to_json()


def build(http_code: int, code: str, data: Any, message: str) -> Builder:
    """Start a response in the standard layout."""
    return Builder(Clue(http_code=http_code, meta=StdMeta(code=code, message=message), data=data))


def cover_builder(err: BaseException, data: Any) -> Builder:
    """Attach ``data`` to a builder error, or wrap any other error as a 500 response."""
    if isinstance(err, Builder):
        err.clue.data = data
        return err
    return build(HTTPStatus.INTERNAL_SERVER_ERROR, "00", data, str(err))


def mew_std(code: str, message: str) -> StdMeta:
    """Create a standard-layout meta."""
    return StdMeta(code=code, message=message)


def mew_snap_bi(code: str, message: str) -> SnapMeta:
    """Create a SNAP BI meta."""
    return SnapMeta(code=code, message=message)


class _ServiceCodeKey(enum.Enum):
    KEY = "snap-service-code"


def define_ctx_service_code(ctx: Context, code: str) -> Context:
    """Return a context carrying the SNAP BI service code."""
    return ctx.with_value(_ServiceCodeKey.KEY, code)


def get_ctx_service_code(ctx: Context) -> str:
    """Return the SNAP BI service code of a context, or ""."""
    value = ctx.value(_ServiceCodeKey.KEY)
    return value if isinstance(value, str) else ""