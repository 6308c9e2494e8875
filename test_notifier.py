"""
ALERT WEBHOOK TESTS
Delivery, retry with backoff and background dispatch from the alert book.
"""

import asyncio
import json
from datetime import datetime

import httpx

from fairplay.config import EngineConfig
from fairplay.engine import FairPlayEngine
from fairplay.models import FraudAlert, Severity
from fairplay.notifier import AlertDispatcher, send_alert_with_retry

HOOK_URL = "http://hooks.test/fraud"


def make_alert():
    return FraudAlert(
        id=7, user_id="u1", alert_type="multi_account", severity=Severity.MEDIUM,
        description="Multiple accounts detected", created_at=datetime(2026, 3, 2, 12),
    )


def scripted_transport(statuses, received):
    """Answer each request with the next status code; the last one repeats."""

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        status = statuses[min(len(received), len(statuses)) - 1]
        return httpx.Response(status)

    return httpx.MockTransport(handler)


def test_delivered_first_time():
    received = []
    ok = asyncio.run(send_alert_with_retry(
        make_alert(), HOOK_URL, transport=scripted_transport([200], received)))
    assert ok
    assert len(received) == 1
    assert received[0]["alert_type"] == "multi_account"
    assert received[0]["severity"] == "medium"


def test_retries_until_success():
    received = []
    ok = asyncio.run(send_alert_with_retry(
        make_alert(), HOOK_URL, base_delay=0, transport=scripted_transport([500, 503, 200], received)))
    assert ok
    assert len(received) == 3


def test_gives_up_after_max_retries():
    received = []
    ok = asyncio.run(send_alert_with_retry(
        make_alert(), HOOK_URL, base_delay=0, transport=scripted_transport([500], received)))
    assert not ok
    assert len(received) == 3


def test_connection_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    ok = asyncio.run(send_alert_with_retry(
        make_alert(), HOOK_URL, max_retries=2, base_delay=0, transport=httpx.MockTransport(handler)))
    assert not ok
    assert len(calls) == 2


def test_dispatcher_without_loop_only_logs():
    received = []
    dispatcher = AlertDispatcher(HOOK_URL, transport=scripted_transport([200], received))
    dispatcher(make_alert())
    assert dispatcher.pending == set()
    assert received == []


def test_dispatcher_without_url_is_inert():
    async def scenario():
        dispatcher = AlertDispatcher(None)
        dispatcher(make_alert())
        return dispatcher.pending

    assert asyncio.run(scenario()) == set()


def test_alert_book_forwards_in_background(clock):
    received = []

    async def scenario():
        engine = FairPlayEngine(config=EngineConfig(alert_webhook_url=HOOK_URL), clock=clock)
        engine.dispatcher.transport = scripted_transport([200], received)

        outcome = engine.observe_ip("u1", "192.168.1.1")
        assert outcome.ok
        await asyncio.gather(*engine.dispatcher.pending)

    asyncio.run(scenario())
    assert [r["alert_type"] for r in received] == ["vpn_usage"]
