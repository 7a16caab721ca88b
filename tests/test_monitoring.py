"""Tests for the kill-switch and error reporters."""

import json
import logging

import httpx
import pytest

from commitcrawl.crawler.errors import PlatformError
from commitcrawl.crawler.monitoring import (
    HttpKillSwitch,
    LoggingErrorReporter,
    StaticKillSwitch,
    WebhookErrorReporter,
)

from conftest import run

KILL_URL = "https://control.test/kill-switch"
HOOK_URL = "https://hooks.test/alerts"


def answering(body, status=200):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(status, content=body)

    return handler, seen


@pytest.mark.parametrize("body, expected", [(b"true", True), (b"false", False), (b"null", False)])
def test_http_kill_switch_answers(body, expected):
    handler, seen = answering(body)
    switch = HttpKillSwitch(KILL_URL, transport=httpx.MockTransport(handler))

    assert run(switch.should_stop()) is expected
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {}


def test_http_kill_switch_error_status_raises():
    handler, _ = answering(b"oops", status=503)
    switch = HttpKillSwitch(KILL_URL, transport=httpx.MockTransport(handler))

    with pytest.raises(PlatformError):
        run(switch.should_stop())


def test_http_kill_switch_malformed_body_raises():
    handler, _ = answering(b"<html>")
    switch = HttpKillSwitch(KILL_URL, transport=httpx.MockTransport(handler))

    with pytest.raises(PlatformError):
        run(switch.should_stop())


def test_static_kill_switch_counts_queries():
    switch = StaticKillSwitch(True)
    assert run(switch.should_stop()) is True
    assert switch.queries == 1


def test_logging_reporter_logs_context(caplog):
    with caplog.at_level(logging.ERROR):
        run(LoggingErrorReporter().capture(PlatformError("boom"), stage="crawl"))

    assert "boom" in caplog.text
    assert '"stage": "crawl"' in caplog.text


def test_webhook_reporter_posts_alert():
    handler, seen = answering(b"")
    reporter = WebhookErrorReporter(HOOK_URL, transport=httpx.MockTransport(handler))

    run(reporter.capture(PlatformError("HTTP 500"), stage="crawl", repository_id=2))

    content = json.loads(seen[0].content)["content"]
    assert "PlatformError: HTTP 500" in content
    assert "- repository_id: 2" in content
    assert "- stage: crawl" in content


def test_webhook_delivery_failure_is_not_raised(caplog):
    handler, _ = answering(b"", status=500)
    reporter = WebhookErrorReporter(HOOK_URL, transport=httpx.MockTransport(handler))

    with caplog.at_level(logging.WARNING):
        run(reporter.capture(PlatformError("boom"), stage="crawl"))

    assert "delivery failed" in caplog.text
