#!/usr/bin/env python3
"""Infrastructure services configuration

PostgreSQL (relational store for segments, campaigns, ledger, workflows and
rollups) and NATS JetStream (the event stream).
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


DEFAULT_STREAM_SUBJECTS = [
    "campaign.>",
    "segment.>",
    "customer.>",
    "conversion.>",
    "email.>",
    "sms.>",
    "push.>",
    "social.>",
]


@dataclass
class InfraConfig:
    """Infrastructure service endpoints"""

    # ===========================================
    # PostgreSQL (native asyncpg - port 5432)
    # ===========================================
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_schema: str = "campaign_engine"
    postgres_min_pool: int = 2
    postgres_max_pool: int = 10

    # ===========================================
    # NATS JetStream (native - port 4222)
    # ===========================================
    nats_host: str = "localhost"
    nats_port: int = 4222
    nats_url: Optional[str] = None
    event_stream_name: str = "campaign-engine-events"
    event_stream_subjects: List[str] = field(default_factory=lambda: list(DEFAULT_STREAM_SUBJECTS))

    @property
    def resolved_nats_url(self) -> str:
        return self.nats_url or f"nats://{self.nats_host}:{self.nats_port}"

    @classmethod
    def from_env(cls) -> 'InfraConfig':
        """Load infrastructure config from environment"""
        subjects = os.getenv("EVENT_STREAM_SUBJECTS")
        return cls(
            # PostgreSQL
            postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
            postgres_port=_int(os.getenv("POSTGRES_PORT", "5432"), 5432),
            postgres_db=os.getenv("POSTGRES_DB", "postgres"),
            postgres_user=os.getenv("POSTGRES_USER", "postgres"),
            postgres_password=os.getenv("POSTGRES_PASSWORD", "postgres"),
            postgres_schema=os.getenv("POSTGRES_SCHEMA", "campaign_engine"),
            postgres_min_pool=_int(os.getenv("POSTGRES_MIN_POOL", "2"), 2),
            postgres_max_pool=_int(os.getenv("POSTGRES_MAX_POOL", "10"), 10),

            # NATS
            nats_host=os.getenv("NATS_HOST", "localhost"),
            nats_port=_int(os.getenv("NATS_PORT", "4222"), 4222),
            nats_url=os.getenv("NATS_URL"),
            event_stream_name=os.getenv("EVENT_STREAM_NAME", "campaign-engine-events"),
            event_stream_subjects=(
                [s.strip() for s in subjects.split(",") if s.strip()]
                if subjects else list(DEFAULT_STREAM_SUBJECTS)
            ),
        )
