#!/usr/bin/env python3
"""Logging configuration for the engine process"""
import logging
import os
from dataclasses import dataclass

# Chatty third-party loggers held at WARNING unless LOG_LEVEL is DEBUG
NOISY_LOGGERS = ("apscheduler", "asyncio", "httpx", "nats")


@dataclass
class LoggingConfig:
    """Root logger level, format and optional file output"""
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_file: str = ""

    service_name: str = "campaign_engine"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        """Load logging config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=os.getenv("LOG_FILE", ""),
            service_name=os.getenv("SERVICE_NAME", "campaign_engine"),
            environment=env,
        )

    @property
    def level(self) -> int:
        return getattr(logging, self.log_level.upper(), logging.INFO)

    def configure(self) -> None:
        """Install console (and file, if LOG_FILE is set) handlers on the root logger"""
        handlers = [logging.StreamHandler()]
        if self.log_file:
            handlers.append(logging.FileHandler(self.log_file))
        logging.basicConfig(level=self.level, format=self.log_format, handlers=handlers)

        if self.level > logging.DEBUG:
            for name in NOISY_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)
