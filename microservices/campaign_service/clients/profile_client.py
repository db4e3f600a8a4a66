"""
Profile Service Client

Client for the customer profile store: paginated full scans for segment
refresh and batch lookups for incremental refresh.
"""

import logging
from typing import AsyncIterator, List, Optional

import httpx

from core.service_client_base import BaseServiceClient

from ..models import CustomerRecord
from ..protocols import DataSourceUnavailableError

logger = logging.getLogger(__name__)


class ProfileClient(BaseServiceClient):
    """Client for profile_service"""

    service_name = "profile_service"
    default_port = 8202

    async def _checked(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Issue a request, mapping transport errors and 5xx to DataSourceUnavailableError"""
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Profile store unreachable ({method} {path}): {e}")
            raise DataSourceUnavailableError(f"Profile store unavailable: {e}") from e

        if response.status_code >= 500:
            logger.warning(f"Profile store error {response.status_code} on {method} {path}")
            raise DataSourceUnavailableError(f"Profile store returned {response.status_code}")
        return response

    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        response = await self._checked("GET", f"/api/v1/customers/{customer_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return CustomerRecord.model_validate(response.json())

    async def batch_get_customers(self, customer_ids: List[str]) -> List[CustomerRecord]:
        """Look up customers by id; unknown ids are omitted"""
        if not customer_ids:
            return []
        response = await self._checked(
            "POST",
            "/api/v1/customers/batch",
            json={"customer_ids": list(customer_ids)},
        )
        response.raise_for_status()
        data = response.json()
        return [CustomerRecord.model_validate(c) for c in data.get("customers", [])]

    async def iter_customers(self, batch_size: int) -> AsyncIterator[List[CustomerRecord]]:
        """
        Page through every customer.

        Args:
            batch_size: Page size requested from the store

        Yields:
            Lists of customer records, one per page
        """
        cursor = None
        while True:
            params = {"limit": batch_size}
            if cursor:
                params["cursor"] = cursor
            response = await self._checked("GET", "/api/v1/customers", params=params)
            response.raise_for_status()
            data = response.json()

            customers = [CustomerRecord.model_validate(c) for c in data.get("customers", [])]
            if customers:
                yield customers

            cursor = data.get("next_cursor")
            if not cursor:
                break


__all__ = ["ProfileClient"]
