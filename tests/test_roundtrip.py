import json

import pytest

from sagax import logger, roundtrip
from sagax.ctxdata import background
from sagax.roundtrip import HTTPRequest, HTTPResponse


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def round_trip(self, req):
        self.requests.append(req)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class Sink:
    def __init__(self):
        self.lines = []

    def write(self, text):
        self.lines.append(text)

    def flush(self):
        pass


@pytest.fixture
def sink(monkeypatch):
    s = Sink()
    monkeypatch.setitem(logger.loggers, logger.DEFAULT_LOGGER, logger.Logger([s], "debug"))
    return s


def test_is_internal_error():
    assert roundtrip.is_internal_error(HTTPResponse(500)) is True
    assert roundtrip.is_internal_error(HTTPResponse(200)) is False


def test_context_option_apply():
    opt = roundtrip.with_context_round_tripper_option("k", "v")
    assert opt.apply(background()).value("k") == "v"


def test_context_round_tripper_sets_values():
    rec = Recorder([HTTPResponse(200)])
    tripper = roundtrip.new_context(
        rec,
        roundtrip.with_context_round_tripper_option("a", 1),
        roundtrip.with_context_round_tripper_option("b", "two"),
    )
    res = tripper.round_trip(HTTPRequest(url="http://example.com"))
    assert res.status_code == 200
    sent = rec.requests[0]
    assert sent.ctx.value("a") == 1
    assert sent.ctx.value("b") == "two"


def test_retry_stops_at_max_retries():
    rec = Recorder([HTTPResponse(500)])
    tripper = roundtrip.new_retry_round_tripper(rec).with_backoff(lambda: 0).with_max_retries(3)
    res = tripper.round_trip(HTTPRequest())
    assert res.status_code == 500
    assert len(rec.requests) == 3


def test_retry_default_max_retries():
    rec = Recorder([HTTPResponse(500)])
    tripper = roundtrip.new_retry_round_tripper(rec).with_backoff(lambda: 0)
    tripper.round_trip(HTTPRequest())
    assert len(rec.requests) == roundtrip.DEFAULT_MAX_RETRIES


def test_retry_returns_first_non_retryable():
    rec = Recorder([HTTPResponse(500), HTTPResponse(200)])
    tripper = roundtrip.new_retry_round_tripper(rec).with_backoff(lambda: 0)
    res = tripper.round_trip(HTTPRequest())
    assert res.status_code == 200
    assert len(rec.requests) == 2


def test_retry_custom_predicate():
    rec = Recorder([HTTPResponse(503), HTTPResponse(500)])
    tripper = (
        roundtrip.new_retry_round_tripper(rec)
        .with_backoff(lambda: 0)
        .with_is_retryable(lambda r: r.status_code == 503)
    )
    res = tripper.round_trip(HTTPRequest())
    assert res.status_code == 500
    assert len(rec.requests) == 2


def test_log_round_tripper_logs_start_and_finish(sink):
    rec = Recorder([HTTPResponse(200, {"Content-Type": ["application/json"]}, b'{ "ok" : true }')])
    tripper = roundtrip.new_log_round_tripper(
        rec,
        roundtrip.with_log_round_tripper_operation_option("create"),
        roundtrip.with_log_round_tripper_service_option("billing"),
    )
    req = HTTPRequest(
        method="POST",
        url="http://example.com/pay",
        headers={"Authorization": ["Bearer token"], "X-Secret-Key": ["secret"], "Accept": ["*/*"]},
        body=b'{ "a" : "b c" ,\n "n": [1, 2] }',
    )
    res = tripper.round_trip(req)
    assert res.status_code == 200
    assert rec.requests[0].body == req.body

    start, finish = (json.loads(line) for line in sink.lines)
    assert start["message"] == "start request billing to http://example.com/pay"
    assert start["request"] == '{"a":"b c","n":[1,2]}'
    assert json.loads(start["header"]) == {"Accept": ["*/*"]}
    assert start["operation"] == "create"
    assert start["method"] == "POST"

    assert finish["message"] == "finish request billing to http://example.com/pay"
    assert finish["response"] == '{"ok":true}'
    assert finish["status"] == 200
    assert json.loads(finish["header"]) == {"Content-Type": ["application/json"]}
    assert finish["latency"].endswith("ms")


def test_log_round_tripper_invalid_json_body(sink):
    rec = Recorder([HTTPResponse(200, {}, b"not json")])
    tripper = roundtrip.new_log_round_tripper(rec)
    tripper.round_trip(HTTPRequest(url="http://example.com", body=b"plain text"))
    start, finish = (json.loads(line) for line in sink.lines)
    assert start["request"] == ""
    assert finish["response"] == ""