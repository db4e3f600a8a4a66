#!/usr/bin/env python3
"""Campaign engine main configuration

Combines the sub-configs and the engine tunables (batching, retries,
refresh parallelism, dedup window, scheduler cadence).
"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class EngineConfig:
    """Engine tunables"""

    # Campaign dispatch
    batch_size: int = 1000
    max_send_attempts: int = 3
    retry_backoff_multiplier: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    failure_ratio_threshold: float = 0.5
    send_concurrency: int = 50

    # Segment refresh
    refresh_batch_size: int = 10000
    refresh_parallelism: int = 4
    default_refresh_cadence_minutes: int = 60

    # Ingest
    dedup_window_size: int = 100000
    attribution_window_days: int = 7

    # Automation
    step_max_attempts: int = 3

    # Scheduler
    tick_interval_seconds: int = 5

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        return cls(
            batch_size=_int(os.getenv("DISPATCH_BATCH_SIZE", "1000"), 1000),
            max_send_attempts=_int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3"), 3),
            retry_backoff_multiplier=_float(os.getenv("DISPATCH_BACKOFF_MULTIPLIER", "1.0"), 1.0),
            retry_backoff_max_seconds=_float(os.getenv("DISPATCH_BACKOFF_MAX_SECONDS", "30"), 30.0),
            failure_ratio_threshold=_float(os.getenv("DISPATCH_FAILURE_RATIO", "0.5"), 0.5),
            send_concurrency=_int(os.getenv("DISPATCH_CONCURRENCY", "50"), 50),
            refresh_batch_size=_int(os.getenv("SEGMENT_REFRESH_BATCH_SIZE", "10000"), 10000),
            refresh_parallelism=_int(os.getenv("SEGMENT_REFRESH_PARALLELISM", "4"), 4),
            default_refresh_cadence_minutes=_int(os.getenv("SEGMENT_REFRESH_CADENCE_MINUTES", "60"), 60),
            dedup_window_size=_int(os.getenv("INGEST_DEDUP_WINDOW", "100000"), 100000),
            attribution_window_days=_int(os.getenv("ATTRIBUTION_WINDOW_DAYS", "7"), 7),
            step_max_attempts=_int(os.getenv("WORKFLOW_STEP_MAX_ATTEMPTS", "3"), 3),
            tick_interval_seconds=_int(os.getenv("SCHEDULER_TICK_SECONDS", "5"), 5),
        )


@dataclass
class AppConfig:
    """Main campaign engine configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Health app
    default_host: str = "0.0.0.0"
    default_port: int = 8240

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    services: ServiceConfig = field(default_factory=ServiceConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),
            default_host=os.getenv("HOST", "0.0.0.0"),
            default_port=_int(os.getenv("PORT", "8240"), 8240),
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            services=ServiceConfig.from_env(),
            engine=EngineConfig.from_env(),
        )
