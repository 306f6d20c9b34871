"""Tests for workflow/delivery.py -- HTTP transport and the delivery service.

HTTP calls go to an httpx.MockTransport; nothing leaves the process.
"""

import json
from collections.abc import Callable
from unittest.mock import patch

import httpx
import pytest

from events.bus import EventBus
from events.types import EventType
from metrics import MetricsCollector
from tests.conftest import RecordingDeliverer
from workflow.delivery import DeliveryError, DeliveryService, HttpDeliverer

_RealAsyncClient = httpx.AsyncClient


def _mock_transport(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[..., httpx.AsyncClient]:
    def factory(*args, **kwargs) -> httpx.AsyncClient:
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return factory


@pytest.fixture()
def captured() -> list[httpx.Request]:
    return []


@pytest.fixture()
def ok_transport(captured: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"ok": True})

    with patch("workflow.delivery.httpx.AsyncClient", _mock_transport(handler)):
        yield


# =========================================================================
# HttpDeliverer
# =========================================================================


class TestHttpDeliverer:
    async def test_webhook_posts_content(self, ok_transport, captured: list[httpx.Request]) -> None:
        ack = await HttpDeliverer().deliver("webhook", "https://hooks.test/in", "hello")

        assert ack == "webhook sent to https://hooks.test/in"
        assert str(captured[0].url) == "https://hooks.test/in"
        assert json.loads(captured[0].content) == {"content": "hello"}

    async def test_email_goes_through_relay(self, ok_transport, captured: list[httpx.Request]) -> None:
        deliverer = HttpDeliverer(email_relay_url="https://relay.test/email")
        ack = await deliverer.deliver("email", "a@b.com", "report")

        assert ack == "email sent to a@b.com"
        assert str(captured[0].url) == "https://relay.test/email"
        assert json.loads(captured[0].content) == {"to": "a@b.com", "content": "report"}

    async def test_missing_relay(self) -> None:
        with pytest.raises(DeliveryError, match="no relay configured for whatsapp"):
            await HttpDeliverer(whatsapp_relay_url="").deliver("whatsapp", "+5511", "hi")

    async def test_http_error_becomes_delivery_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        with patch("workflow.delivery.httpx.AsyncClient", _mock_transport(handler)):
            with pytest.raises(DeliveryError) as exc_info:
                await HttpDeliverer().deliver("webhook", "https://hooks.test/in", "x")
        assert exc_info.value.channel == "webhook"

    async def test_notification_published_on_bus(self, event_bus: EventBus) -> None:
        ack = await HttpDeliverer(event_bus=event_bus).deliver("notification", "in-app", "done")

        assert ack == "notification sent to in-app"
        history = event_bus.get_event_history("notifications")
        assert history[0].data["content"] == "done"

    async def test_notification_without_bus(self) -> None:
        with pytest.raises(DeliveryError):
            await HttpDeliverer().deliver("notification", "in-app", "done")


# =========================================================================
# DeliveryService
# =========================================================================


class TestDeliveryService:
    async def test_success_receipt_and_event(self, event_bus: EventBus) -> None:
        deliverer = RecordingDeliverer()
        collector = MetricsCollector()
        collector.start("run_1")
        service = DeliveryService(deliverer, event_bus=event_bus, metrics_collector=collector)

        receipt = await service.send("email", "a@b.com", "hi", run_id="run_1")

        assert receipt.ok
        assert receipt.ack == "email sent to a@b.com"
        assert deliverer.to("email") == [("a@b.com", "hi")]
        assert [e.type for e in event_bus.get_event_history("run_1")] == [EventType.DELIVERY_SENT]
        metrics = collector.get("run_1")
        assert metrics is not None and metrics.deliveries == 1

    async def test_failure_never_raises(self, event_bus: EventBus) -> None:
        collector = MetricsCollector()
        collector.start("run_1")
        service = DeliveryService(
            RecordingDeliverer(fail_destinations={"x@y.com"}),
            event_bus=event_bus,
            metrics_collector=collector,
        )

        receipt = await service.send("email", "x@y.com", "hi", run_id="run_1")

        assert not receipt.ok
        assert receipt.ack == "email to x@y.com failed: relay refused the message"
        event = event_bus.get_event_history("run_1")[0]
        assert event.type == EventType.DELIVERY_FAILED
        metrics = collector.get("run_1")
        assert metrics is not None and metrics.delivery_failures == 1

    async def test_no_run_id_no_event(self, event_bus: EventBus) -> None:
        service = DeliveryService(RecordingDeliverer(), event_bus=event_bus)
        await service.send("webhook", "https://hooks.test", "hi")
        assert event_bus.get_event_history("") == []
