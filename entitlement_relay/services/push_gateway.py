"""
Push Gateway - Silent push notifications to registered devices.

Push is a hint, not a delivery guarantee: a device that misses one catches
up through the socket stream or the change-log poll.
"""

from dataclasses import dataclass
from typing import Protocol

import httpx
from structlog import get_logger

from entitlement_relay.exceptions import DownstreamUnavailableError
from entitlement_relay.models.domain import ChangeType, ContentUnlockEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class PushPayload:
    """Content-available push telling the app which content changed."""

    change_type: ChangeType
    content_ids: tuple[str, ...]
    product_id: str
    transaction_id: str

    @classmethod
    def from_event(cls, event: ContentUnlockEvent) -> "PushPayload":
        return cls(
            change_type=event.change_type,
            content_ids=tuple(sorted(event.content_ids)),
            product_id=event.product_id,
            transaction_id=event.transaction_id,
        )

    def to_wire(self) -> dict[str, object]:
        """APNs-style body: silent push plus custom keys."""
        return {
            "aps": {"content-available": 1},
            "type": self.change_type.value,
            "contentIds": list(self.content_ids),
            "productId": self.product_id,
            "transactionId": self.transaction_id,
        }


class PushGateway(Protocol):
    """Outbound push delivery."""

    async def send(self, device_token: str, payload: PushPayload) -> None:
        """
        Deliver one push.

        Raises:
            DownstreamUnavailableError: If the push could not be handed off
        """
        ...


class HttpPushGateway:
    """Push gateway reached over HTTP (APNs relay or provider API)."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def send(self, device_token: str, payload: PushPayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/v1/push",
                    json={"deviceToken": device_token, "payload": payload.to_wire()},
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise DownstreamUnavailableError("push_gateway", str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            logger.error(
                "push_gateway_error",
                status=response.status_code,
                error=response.text[:500],
            )
            raise DownstreamUnavailableError("push_gateway", f"HTTP {response.status_code}")
