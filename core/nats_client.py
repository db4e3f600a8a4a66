"""
NATS JetStream Client for the campaign engine

Provides the ordered, replayable event stream shared by the aggregator and the
automation engine. Thin wrapper around nats-py JetStream:

- publish: JSON envelopes with a `Nats-Msg-Id` header so the server drops
  duplicate publishes of the same idempotency id inside its dedup window
- subscribe: durable pull consumers; a message is acked only after its handler
  returns, so delivery is at-least-once and handlers must be idempotent
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import nats
from nats.aio.client import Client as NATS
from nats.errors import TimeoutError as NATSTimeoutError
from nats.js import JetStreamContext
from nats.js.errors import NotFoundError

from core.config import InfraConfig

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class NATSEventBus:
    """
    NATS JetStream event bus.

    One stream carries every engine subject; consumers are durable and
    pull-based so a restarted worker resumes where it left off.
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (used as connection name)
            config: Infrastructure config (defaults to environment)
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.url = self.config.resolved_nats_url
        self.stream_name = self.config.event_stream_name

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[str, bool] = {}  # durable -> active
        self._subscription_tasks: List[asyncio.Task] = []
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.url} stream={self.stream_name}")

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """Connect to NATS and make sure the engine stream exists"""
        try:
            self._nc = await nats.connect(self.url, name=self.service_name)
            self._js = self._nc.jetstream()
            await self._ensure_stream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def _ensure_stream(self) -> None:
        try:
            await self._js.stream_info(self.stream_name)
        except NotFoundError:
            await self._js.add_stream(
                name=self.stream_name,
                subjects=self.config.event_stream_subjects,
            )
            logger.info(f"Created JetStream stream {self.stream_name}")

    async def publish_event(self, event: Dict[str, Any]) -> bool:
        """
        Publish an event envelope to JetStream.

        The envelope's `type` is the subject and its `id` becomes the
        `Nats-Msg-Id` dedup header.
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            data = json.dumps(event, cls=DecimalEncoder).encode()
            ack = await self._js.publish(
                event["type"],
                data,
                stream=self.stream_name,
                headers={"Nats-Msg-Id": str(event["id"])},
            )
            logger.debug(f"Published event {event['type']} [{event['id']}] seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.get('id')}: {e}")
            return False

    async def subscribe(
        self,
        subject: str,
        handler: MessageHandler,
        durable: str,
        batch_size: int = 50,
    ) -> str:
        """
        Subscribe with a durable pull consumer.

        Args:
            subject: Subject filter (e.g. "email.>" or ">")
            handler: Async callback receiving the decoded envelope
            durable: Durable consumer name
            batch_size: Messages pulled per fetch
        """
        if not self._is_connected or not self._js:
            raise RuntimeError("Not connected to NATS")

        psub = await self._js.pull_subscribe(subject, durable=durable, stream=self.stream_name)
        self._subscriptions[durable] = True
        task = asyncio.create_task(self._consumer_loop(psub, handler, durable, batch_size))
        self._subscription_tasks.append(task)
        logger.info(f"Subscribed to {subject} (durable={durable})")
        return durable

    async def _consumer_loop(self, psub, handler: MessageHandler, durable: str, batch_size: int) -> None:
        """Pull, handle, ack. Failed handlers nak so the message is redelivered."""
        try:
            while self._subscriptions.get(durable, False):
                try:
                    messages = await psub.fetch(batch=batch_size, timeout=1)
                except NATSTimeoutError:
                    continue
                except Exception as pull_e:
                    logger.warning(f"Pull error on {durable} (will retry): {pull_e}")
                    await asyncio.sleep(5)
                    continue

                for msg in messages:
                    try:
                        envelope = json.loads(msg.data.decode())
                        await handler(envelope)
                        await msg.ack()
                    except Exception as msg_e:
                        logger.error(f"Error processing message on {durable}: {msg_e}", exc_info=True)
                        await msg.nak()
        except asyncio.CancelledError:
            raise
        finally:
            self._subscriptions[durable] = False
            logger.info(f"JetStream consumer stopped: {durable}")

    async def close(self) -> None:
        """Stop consumers and drain the connection"""
        for durable in list(self._subscriptions.keys()):
            self._subscriptions[durable] = False

        for task in self._subscription_tasks:
            if not task.done():
                task.cancel()
        if self._subscription_tasks:
            await asyncio.gather(*self._subscription_tasks, return_exceptions=True)
        self._subscription_tasks.clear()

        if self._nc is not None and not self._nc.is_closed:
            await self._nc.drain()
        self._is_connected = False
        logger.info("NATS connection closed")


__all__ = ["NATSEventBus", "DecimalEncoder"]
