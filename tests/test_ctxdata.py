import ipaddress
import os
import uuid

import pytest

from sagax import ctxdata
from sagax.ctxdata import _Key

PID = str(os.getpid())
TRACE_ID = "projects/amartha-local/traces/105445aa7843bc8bf206b120001000"


def _complete_md():
    return {
        ctxdata.CORRELATION_ID_MD_KEY: ["correlationId"],
        ctxdata.TRACE_PARENT_MD_KEY: ["trace-parent"],
        ctxdata.TRACE_ID_MD_KEY: [TRACE_ID],
        ctxdata.SPAN_ID_MD_KEY: ["1"],
        ctxdata.TRACE_SAMPLED_MD_KEY: ["true"],
        ctxdata.USER_AGENT_MD_KEY: ["unittesting"],
        ctxdata.HOST_MD_KEY: ["http://example.net"],
        ctxdata.IP_MD_KEY: ["127.0.0.1"],
        ctxdata.FORWARDED_FOR_MD_KEY: ["127.0.0.1"],
        ctxdata.PID_MD_KEY: [PID],
    }


def _expected_chain(base):
    pairs = [
        (_Key.CORRELATION_ID, "correlationId"),
        (_Key.TRACE_PARENT, "trace-parent"),
        (_Key.TRACE_ID, TRACE_ID),
        (_Key.SPAN_ID, "1"),
        (_Key.TRACE_SAMPLED, True),
        (_Key.USER_AGENT, "unittesting"),
        (_Key.HOST, "http://example.net"),
        (_Key.IP, "127.0.0.1"),
        (_Key.FORWARDED_FOR, "127.0.0.1"),
        (_Key.PID, PID),
    ]
    ctx = base
    for key, value in pairs:
        ctx = ctx.with_value(key, value)
    return ctx


def test_sets_with_no_setters_returns_empty_context():
    assert ctxdata.sets(ctxdata.background()) == ctxdata.background()


def test_sets_with_pid_setter():
    result = ctxdata.sets(ctxdata.background(), ctxdata.set_pid("test"))
    assert result == ctxdata.background().with_value(_Key.PID, "test")
    assert ctxdata.get_pid(result) == "test"


def test_sets_md_with_no_setters_returns_empty_metadata():
    assert ctxdata.sets_md(ctxdata.Metadata()) == {}


def test_sets_md_with_pid_setter():
    result = ctxdata.sets_md(ctxdata.Metadata(), ctxdata.set_md_pid("test"))
    assert result == {ctxdata.PID_MD_KEY: ["test"]}


def test_set_context_and_metadata_from_http_complete():
    req = ctxdata.Request(
        headers={
            ctxdata.HEADER_X_CORRELATION_ID: ["correlationId"],
            ctxdata.HEADER_TRACEPARENT: ["trace-parent"],
            ctxdata.HEADER_TRACE: ["105445aa7843bc8bf206b120001000/1;o=1"],
            ctxdata.HEADER_X_FORWARDED_FOR: ["127.0.0.1"],
            "User-Agent": ["unittesting"],
        },
        host="http://example.net",
        remote_addr="127.0.0.1",
    )
    ctx, md = ctxdata.set_context_and_metadata_from_http(ctxdata.background(), req, "amartha-local")
    assert ctx == _expected_chain(ctxdata.background())
    assert md == _complete_md()


def test_set_context_from_grpc_complete():
    incoming = ctxdata.new_incoming_context(ctxdata.background(), _complete_md())
    ctx = ctxdata.set_context_from_grpc(incoming, "amartha-local")
    expected = _expected_chain(ctxdata.new_incoming_context(ctxdata.background(), _complete_md()))
    assert ctx == expected


def test_set_context_from_grpc_without_metadata_returns_same_context():
    base = ctxdata.background().with_value("k", "v")
    assert ctxdata.set_context_from_grpc(base, "proj") == base


def test_set_context_from_grpc_with_forwarded_trace_header():
    md = {
        "Traceparent": ["tp"],
        "X-Cloud-Trace-Context": ["abc/7;o=0"],
    }
    ctx = ctxdata.set_context_from_grpc(ctxdata.new_incoming_context(ctxdata.background(), md), "p")
    assert ctxdata.get_trace_parent(ctx) == "tp"
    assert ctxdata.get_trace_id(ctx) == "projects/p/traces/abc"
    assert ctxdata.get_span_id(ctx) == "7"
    assert ctxdata.get_trace_sampled(ctx) is False
    assert ctxdata.get_correlation_id(ctx) == ""


def test_set_context_from_http_generates_correlation_id():
    req = ctxdata.Request(remote_addr="10.1.1.1")
    ctx = ctxdata.set_context_from_http(ctxdata.background(), req, "p")
    parsed = uuid.UUID(ctxdata.get_correlation_id(ctx))
    assert parsed.version == 4
    assert ctxdata.get_ip(ctx) == "10.1.1.1"
    assert ctxdata.get_trace_id(ctx) == "projects/p/traces/"
    assert ctxdata.get_pid(ctx) == PID


def test_client_ip_resolvers_in_order():
    req = ctxdata.Request(headers={"X-Real-IP": "198.51.100.7"}, remote_addr="10.0.0.9")
    ctx = ctxdata.set_context_from_http(
        ctxdata.background(), req, "p", None, ctxdata.with_xff_trusted_proxy_count(1), ctxdata.with_xri_client_ip()
    )
    assert ctxdata.get_ip(ctx) == "198.51.100.7"


def test_client_ip_falls_back_to_remote_addr():
    req = ctxdata.Request(remote_addr="10.0.0.9")
    ctx = ctxdata.set_context_from_http(ctxdata.background(), req, "p", ctxdata.with_xri_client_ip())
    assert ctxdata.get_ip(ctx) == "10.0.0.9"


@pytest.mark.parametrize(
    "header, count, expected",
    [
        ("203.0.113.1, 10.0.0.1, 10.0.0.2", 1, "10.0.0.1"),
        ("203.0.113.1, 10.0.0.1, 10.0.0.2", 2, "203.0.113.1"),
        ("203.0.113.1, 10.0.0.1", 2, ""),
        ("", 0, ""),
    ],
)
def test_xff_trusted_proxy_count(header, count, expected):
    req = ctxdata.Request(headers={"X-Forwarded-For": header})
    assert ctxdata.with_xff_trusted_proxy_count(count)(req) == expected


def test_xff_trusted_proxy_checker():
    def trusted(ip):
        return ip is not None and ip in ipaddress.ip_network("10.0.0.0/8")

    resolve = ctxdata.with_xff_trusted_proxy_checker(trusted)
    req = ctxdata.Request(headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1, 10.0.0.2"})
    assert resolve(req) == "203.0.113.5"
    all_trusted = ctxdata.Request(headers={"X-Forwarded-For": "10.0.0.1,10.0.0.2"})
    assert resolve(all_trusted) == ""


def test_xff_trusted_proxy_checker_gets_none_for_invalid_ip():
    seen = []

    def trusted(ip):
        seen.append(ip)
        return False

    req = ctxdata.Request(headers={"X-Forwarded-For": "garbage"})
    assert ctxdata.with_xff_trusted_proxy_checker(trusted)(req) == "garbage"
    assert seen == [None]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("105445aa7843bc8bf206b120001000/1;o=1", ("105445aa7843bc8bf206b120001000", "1", True)),
        ("105445aa7843bc8bf206b120001000/0;o=1", ("105445aa7843bc8bf206b120001000", "", True)),
        ("abc", ("abc", "", False)),
        ("", ("", "", False)),
        ("abc/12;o=0", ("abc", "12", False)),
    ],
)
def test_deconstruct_x_cloud_trace_context(value, expected):
    assert ctxdata.deconstruct_x_cloud_trace_context(value) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("1", True), ("T", True), ("false", False), ("nope", False)],
)
def test_get_md_trace_sampled(raw, expected):
    md = ctxdata.Metadata({ctxdata.TRACE_SAMPLED_MD_KEY: [raw]})
    assert ctxdata.get_md_trace_sampled(md) is expected


def test_md_getters_return_empty_when_missing():
    md = ctxdata.Metadata()
    assert ctxdata.get_md_host(md) == ""
    assert ctxdata.get_md_trace_sampled(md) is False


def test_set_md_trace_sampled_false():
    md = ctxdata.sets_md(ctxdata.Metadata(), ctxdata.set_md_trace_sampled(False))
    assert md == {ctxdata.TRACE_SAMPLED_MD_KEY: ["false"]}


def test_context_getters_ignore_wrong_types():
    ctx = ctxdata.background().with_value(_Key.HOST, 5).with_value(_Key.TRACE_SAMPLED, "yes")
    assert ctxdata.get_host(ctx) == ""
    assert ctxdata.get_trace_sampled(ctx) is False


def test_later_value_shadows_earlier():
    ctx = ctxdata.sets(ctxdata.background(), ctxdata.set_user_agent("a"), ctxdata.set_user_agent("b"))
    assert ctxdata.get_user_agent(ctx) == "b"


def test_metadata_keys_are_case_insensitive():
    md = ctxdata.Metadata({"X-Key": ["v"]})
    assert md.get_all("x-key") == ["v"]
    assert md.get_all("missing") == []


def test_request_header_lookup():
    req = ctxdata.Request(headers={"user-agent": ["ua"], "Empty": []})
    assert req.header("User-Agent") == "ua"
    assert req.header("Empty") == ""
    assert req.header("Absent") == ""