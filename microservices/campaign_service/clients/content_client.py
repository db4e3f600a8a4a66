"""
Content Service Client

Fetches content definitions and renders variants. Renders are cached per
content version, so a new version never serves a stale body.
"""

import logging
from typing import Dict, Optional, Tuple

import httpx

from core.service_client_base import BaseServiceClient

from ..models import ChannelType, Content, RenderedContent
from ..protocols import ContentNotFoundError, DataSourceUnavailableError

logger = logging.getLogger(__name__)


class ContentClient(BaseServiceClient):
    """Client for content_service"""

    service_name = "content_service"
    default_port = 8241

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._render_cache: Dict[Tuple[str, int, Optional[str], str], RenderedContent] = {}

    async def _checked(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Content service unreachable ({method} {path}): {e}")
            raise DataSourceUnavailableError(f"Content service unavailable: {e}") from e

        if response.status_code >= 500:
            raise DataSourceUnavailableError(f"Content service returned {response.status_code}")
        return response

    async def get_content(self, content_id: str) -> Optional[Content]:
        response = await self._checked("GET", f"/api/v1/contents/{content_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Content.model_validate(response.json())

    async def render(
        self,
        content_id: str,
        variant_id: Optional[str],
        channel: ChannelType,
    ) -> RenderedContent:
        """Render a variant for a channel"""
        content = await self.get_content(content_id)
        if content is None:
            raise ContentNotFoundError(f"Content not found: {content_id}")

        key = (content_id, content.version, variant_id, channel.value)
        cached = self._render_cache.get(key)
        if cached is not None:
            return cached

        response = await self._checked(
            "POST",
            f"/api/v1/contents/{content_id}/render",
            json={"variant_id": variant_id, "channel": channel.value, "version": content.version},
        )
        if response.status_code == 404:
            raise ContentNotFoundError(f"Content not found: {content_id}")
        response.raise_for_status()
        data = response.json()

        rendered = RenderedContent(
            content_id=content_id,
            version=content.version,
            variant_id=variant_id,
            body=data.get("body", ""),
        )
        self._render_cache[key] = rendered
        logger.debug(f"Rendered {content_id} v{content.version} variant={variant_id} for {channel.value}")
        return rendered


__all__ = ["ContentClient"]
