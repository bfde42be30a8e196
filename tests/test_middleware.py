"""
TestMaster AI
Tests — request timing headers and log record stamping.
"""

import json
import logging

from flask import g

from testmaster.middleware.logging_config import JSONFormatter, RequestContextFilter


class TestRequestTiming:
    def test_headers_added(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.headers["X-Request-ID"]
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_caller_request_id_kept(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "trace-42"})
        assert res.headers["X-Request-ID"] == "trace-42"


def _record(msg="hello", **extra):
    record = logging.LogRecord("testmaster.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRequestContextFilter:
    def test_stamps_request_values(self, app):
        with app.test_request_context("/api/v1/plans"):
            g.request_id = "rid-1"
            g.user_id = "tester-1"
            record = _record()
            assert RequestContextFilter().filter(record) is True
        assert record.request_id == "rid-1"
        assert record.user_id == "tester-1"

    def test_explicit_extra_wins(self, app):
        with app.test_request_context("/"):
            g.user_id = "tester-1"
            record = _record(user_id="someone-else")
            RequestContextFilter().filter(record)
        assert record.user_id == "someone-else"

    def test_outside_request(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert not hasattr(record, "request_id")


class TestJSONFormatter:
    def test_extras_promoted(self):
        line = JSONFormatter().format(_record("generated", task="plan-generation", model_id="gemini-flash"))
        data = json.loads(line)
        assert data["msg"] == "generated"
        assert data["task"] == "plan-generation"
        assert data["model_id"] == "gemini-flash"
        assert "request_id" not in data
