"""
Channel Gateway Adapter

Sends rendered messages through the outbound channel gateway. One adapter
instance per channel; the gateway owns provider specifics.
"""

import logging
from typing import Optional

import httpx

from core.service_client_base import BaseServiceClient

from ..models import ChannelType, DeliveryOutcome, OutcomeStatus, RenderedContent
from ..protocols import TransientChannelError

logger = logging.getLogger(__name__)


class ChannelGatewayAdapter(BaseServiceClient):
    """HTTP channel adapter"""

    service_name = "channel_gateway"
    default_port = 8206

    def __init__(
        self,
        channel: ChannelType,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)
        self.channel = channel

    async def send(
        self,
        recipient_id: str,
        content: RenderedContent,
        idempotency_key: str,
    ) -> DeliveryOutcome:
        """
        Send one message.

        Raises:
            TransientChannelError: timeout, connection failure, 429 or 5xx
        """
        payload = {
            "recipient_id": recipient_id,
            "content_id": content.content_id,
            "content_version": content.version,
            "variant_id": content.variant_id,
            "body": content.body,
        }
        try:
            response = await self.post(
                f"/api/v1/channels/{self.channel.value}/messages",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            raise TransientChannelError(f"{self.channel.value} gateway unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientChannelError(f"{self.channel.value} gateway returned {response.status_code}")

        if response.status_code >= 400:
            logger.warning(f"{self.channel.value} send to {recipient_id} rejected: {response.status_code}")
            return DeliveryOutcome(status=OutcomeStatus.FAILED, reason=f"rejected_{response.status_code}")

        data = response.json() if response.content else {}
        return DeliveryOutcome(
            status=OutcomeStatus(data.get("status", OutcomeStatus.ACCEPTED.value)),
            provider_message_id=data.get("message_id"),
            reason=data.get("reason"),
        )


__all__ = ["ChannelGatewayAdapter"]
