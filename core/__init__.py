#!/usr/bin/env python3
"""
Core Module

Shared infrastructure for the campaign engine.

COMPONENTS:
    - config/: dataclass configuration loaded from environment (+ .env files)
    - postgres_client.py: asyncpg pool wrapper used by the repositories
    - nats_client.py: NATS JetStream event bus
    - service_client_base.py: httpx base client for collaborator services

USAGE:
    from core.config import get_settings
    from core.postgres_client import PostgresClientWrapper
    from core.nats_client import NATSEventBus

    settings = get_settings()
"""

__version__ = "1.0.0"
