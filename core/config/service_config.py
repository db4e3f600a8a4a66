#!/usr/bin/env python3
"""Collaborator service configuration

External collaborators the engine reaches through narrow HTTP interfaces:
the customer profile store, the content rendering service and the outbound
channel gateway (email/SMS/push/social adapters sit behind it).
"""
import os
from dataclasses import dataclass

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Collaborator service endpoints"""

    profile_service_url: str = "http://localhost:8202"
    content_service_url: str = "http://localhost:8241"
    channel_gateway_url: str = "http://localhost:8206"

    # Timeouts (seconds)
    request_timeout: float = 30.0
    channel_timeout: float = 10.0
    webhook_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            profile_service_url=os.getenv("PROFILE_SERVICE_URL", "http://localhost:8202"),
            content_service_url=os.getenv("CONTENT_SERVICE_URL", "http://localhost:8241"),
            channel_gateway_url=os.getenv("CHANNEL_GATEWAY_URL", "http://localhost:8206"),
            request_timeout=_float(os.getenv("SERVICE_REQUEST_TIMEOUT", "30"), 30.0),
            channel_timeout=_float(os.getenv("CHANNEL_TIMEOUT", "10"), 10.0),
            webhook_timeout=_float(os.getenv("WEBHOOK_TIMEOUT", "10"), 10.0),
        )
