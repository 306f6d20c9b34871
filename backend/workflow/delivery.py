"""Outbound delivery of workflow and orchestrator messages.

``Deliverer`` is the transport contract: send ``content`` to ``destination``
over ``channel`` and return an acknowledgement, or raise ``DeliveryError``.
``DeliveryService`` wraps a transport for the engines: it never raises,
logs every failure, publishes delivery events and counts deliveries.
"""

from dataclasses import dataclass
from typing import Literal, Protocol

import httpx
import structlog

from config import settings
from events.bus import EventBus
from events.types import EventType, RunEvent
from metrics import MetricsCollector

logger = structlog.get_logger()

Channel = Literal["email", "whatsapp", "webhook", "notification"]

NOTIFICATION_DESTINATION = "in-app"


class DeliveryError(Exception):
    def __init__(self, channel: str, destination: str, message: str) -> None:
        super().__init__(message)
        self.channel = channel
        self.destination = destination


class Deliverer(Protocol):
    async def deliver(self, channel: str, destination: str, content: str) -> str: ...


class HttpDeliverer:
    """Deliver over HTTP.

    Webhooks receive ``{"content": ...}`` at the destination URL. Email and
    WhatsApp go through configured relay endpoints as ``{"to", "content"}``.
    Internal notifications are published on the event bus under the
    ``notifications`` stream.
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        email_relay_url: str | None = None,
        whatsapp_relay_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.relays = {
            "email": email_relay_url if email_relay_url is not None else settings.email_relay_url,
            "whatsapp": (
                whatsapp_relay_url if whatsapp_relay_url is not None
                else settings.whatsapp_relay_url
            ),
        }
        self.timeout = timeout or settings.webhook_timeout_seconds

    async def deliver(self, channel: str, destination: str, content: str) -> str:
        if channel == "notification":
            if self.event_bus is None:
                raise DeliveryError(channel, destination, "no event bus for notifications")
            await self.event_bus.publish(
                RunEvent(
                    type=EventType.DELIVERY_SENT,
                    run_id="notifications",
                    data={"channel": channel, "destination": destination, "content": content},
                )
            )
            return f"notification sent to {destination}"

        if channel == "webhook":
            await self._post(channel, destination, destination, {"content": content})
            return f"webhook sent to {destination}"

        relay = self.relays.get(channel)
        if not relay:
            raise DeliveryError(channel, destination, f"no relay configured for {channel}")
        await self._post(channel, destination, relay, {"to": destination, "content": content})
        return f"{channel} sent to {destination}"

    async def _post(self, channel: str, destination: str, url: str, payload: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(channel, destination, str(e) or type(e).__name__) from e


@dataclass(frozen=True)
class DeliveryReceipt:
    channel: str
    destination: str
    ok: bool
    ack: str


class DeliveryService:
    """Best-effort delivery used by nodes and the orchestrator."""

    def __init__(
        self,
        deliverer: Deliverer,
        event_bus: EventBus | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        self.deliverer = deliverer
        self.event_bus = event_bus
        self.metrics_collector = metrics_collector

    async def send(
        self,
        channel: str,
        destination: str,
        content: str,
        run_id: str | None = None,
    ) -> DeliveryReceipt:
        try:
            ack = await self.deliverer.deliver(channel, destination, content)
            receipt = DeliveryReceipt(channel, destination, True, ack)
        except DeliveryError as e:
            logger.warning(
                "delivery_failed",
                run_id=run_id,
                channel=channel,
                destination=destination,
                error=str(e),
            )
            receipt = DeliveryReceipt(channel, destination, False, f"{channel} to {destination} failed: {e}")

        if self.metrics_collector and run_id:
            self.metrics_collector.record_delivery(run_id, receipt.ok)
        if self.event_bus and run_id:
            await self.event_bus.publish(
                RunEvent(
                    type=EventType.DELIVERY_SENT if receipt.ok else EventType.DELIVERY_FAILED,
                    run_id=run_id,
                    data={
                        "channel": channel,
                        "destination": destination,
                        "ack": receipt.ack,
                    },
                )
            )
        return receipt
