"""
Webhook Client

Calls external URLs for `call_webhook` workflow steps. The idempotency key
is sent as a header; receivers see at-least-once delivery.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.service_client_base import BaseServiceClient

from ..protocols import WorkflowStepError

logger = logging.getLogger(__name__)


class WebhookClient(BaseServiceClient):
    """Outbound webhook caller"""

    service_name = "webhook"

    async def call(
        self,
        url: str,
        payload: Dict[str, Any],
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        request_headers = dict(headers or {})
        if idempotency_key:
            request_headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self.client.request(method, url, json=payload, headers=request_headers)
        except httpx.HTTPError as e:
            raise WorkflowStepError(f"Webhook {url} unreachable: {e}") from e

        if response.status_code >= 400:
            raise WorkflowStepError(f"Webhook {url} returned {response.status_code}")

        logger.debug(f"Webhook {method} {url} -> {response.status_code}")
        return response.status_code


__all__ = ["WebhookClient"]
