"""
Campaign Engine Factory

Factory for creating campaign engine components with proper dependency injection.
"""

import logging
from typing import Dict, List, Optional

from core.config import AppConfig, get_settings
from core.nats_client import NATSEventBus
from core.postgres_client import PostgresClientWrapper

from .aggregator_service import AggregatorService
from .automation_repository import AutomationRepository
from .automation_service import AutomationService
from .campaign_repository import CampaignRepository
from .campaign_service import CampaignService
from .clients import ChannelGatewayAdapter, ContentClient, ProfileClient, WebhookClient
from .dispatcher import Dispatcher
from .events.handlers import CampaignEventHandler
from .events.models import CampaignStreamConfig
from .events.publishers import CampaignEventPublisher
from .metrics_repository import MetricsRepository
from .models import ChannelType
from .scheduler import EngineScheduler
from .segment_repository import SegmentRepository
from .segment_service import SegmentService

logger = logging.getLogger(__name__)

SERVICE_NAME = "campaign_engine"


class CampaignEngineFactory:
    """Factory for creating campaign engine components"""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or get_settings()
        self._db: Optional[PostgresClientWrapper] = None
        self._nats_client: Optional[NATSEventBus] = None
        self._segment_repository: Optional[SegmentRepository] = None
        self._campaign_repository: Optional[CampaignRepository] = None
        self._automation_repository: Optional[AutomationRepository] = None
        self._metrics_repository: Optional[MetricsRepository] = None
        self._clients: List = []
        self._segments: Optional[SegmentService] = None
        self._campaigns: Optional[CampaignService] = None
        self._automation: Optional[AutomationService] = None
        self._aggregator: Optional[AggregatorService] = None
        self._event_handler: Optional[CampaignEventHandler] = None
        self._event_publisher: Optional[CampaignEventPublisher] = None
        self._scheduler: Optional[EngineScheduler] = None

    async def initialize(self) -> None:
        """Initialize all components"""
        logger.info("Initializing campaign engine components...")
        infra = self.config.infrastructure
        services = self.config.services
        engine = self.config.engine

        # Repositories share one pool
        self._db = PostgresClientWrapper(SERVICE_NAME, config=infra)
        self._segment_repository = SegmentRepository(self._db)
        self._campaign_repository = CampaignRepository(self._db)
        self._automation_repository = AutomationRepository(self._db)
        self._metrics_repository = MetricsRepository(self._db)
        for repository in (
            self._segment_repository,
            self._campaign_repository,
            self._automation_repository,
            self._metrics_repository,
        ):
            await repository.initialize()

        # Initialize NATS client
        try:
            self._nats_client = NATSEventBus(service_name=SERVICE_NAME, config=infra)
            await self._nats_client.connect()
            logger.info("NATS client connected")
        except Exception as e:
            logger.warning(f"NATS client initialization failed: {e}")
            self._nats_client = None
        self._event_publisher = CampaignEventPublisher(self._nats_client)

        # Collaborator clients
        profile_client = ProfileClient(base_url=services.profile_service_url, timeout=services.request_timeout)
        content_client = ContentClient(base_url=services.content_service_url, timeout=services.request_timeout)
        webhook_client = WebhookClient(timeout=services.webhook_timeout)
        channel_adapters: Dict[ChannelType, ChannelGatewayAdapter] = {
            channel: ChannelGatewayAdapter(
                channel,
                base_url=services.channel_gateway_url,
                timeout=services.channel_timeout,
            )
            for channel in ChannelType
        }
        self._clients = [profile_client, content_client, webhook_client, *channel_adapters.values()]

        # Services
        self._segments = SegmentService(
            repository=self._segment_repository,
            profile_client=profile_client,
            event_bus=self._nats_client,
            config=engine,
        )
        self._aggregator = AggregatorService(
            repository=self._metrics_repository,
            publisher=self._event_publisher,
            config=engine,
        )
        dispatcher = Dispatcher(
            repository=self._campaign_repository,
            segments=self._segments,
            content_client=content_client,
            channel_adapters=channel_adapters,
            publisher=self._event_publisher,
            config=engine,
        )
        self._campaigns = CampaignService(
            repository=self._campaign_repository,
            segments=self._segments,
            content_client=content_client,
            dispatcher=dispatcher,
            publisher=self._event_publisher,
            aggregator=self._aggregator,
            config=engine,
        )
        self._automation = AutomationService(
            repository=self._automation_repository,
            segments=self._segments,
            content_client=content_client,
            channel_adapters=channel_adapters,
            webhook_client=webhook_client,
            config=engine,
        )

        # Initialize event handler
        self._event_handler = CampaignEventHandler(
            aggregator=self._aggregator,
            automation=self._automation,
            segments=self._segments,
        )

        self._scheduler = EngineScheduler(interval_seconds=engine.tick_interval_seconds)
        self.register_scheduled_jobs()

        logger.info("Campaign engine components initialized")

    def register_scheduled_jobs(self) -> None:
        """Register due-time handlers in tick order"""
        self.scheduler.register("campaign_starts", self.campaigns.start_due_campaigns)
        self.scheduler.register("campaign_dispatch", self.campaigns.dispatch_active_campaigns)
        self.scheduler.register("workflow_resumes", self.automation.resume_due_instances)
        self.scheduler.register("segment_refresh", self.segments.refresh_due_segments)
        self.scheduler.register("segment_incremental_refresh", self.segments.refresh_changed_segments)

    async def recover(self) -> None:
        """Resolve work left behind by a previous process"""
        resumed = await self.campaigns.resume_active_runs()
        recovered = await self.automation.recover_instances()
        logger.info(f"Recovery complete: {len(resumed)} campaign runs, {len(recovered)} workflow instances")

    async def subscribe(self) -> None:
        """Attach durable consumers for the aggregator and the automation engine"""
        if not self._nats_client:
            logger.warning("NATS not connected, event consumers not started")
            return

        consumers = [
            (CampaignStreamConfig.AGGREGATOR_DURABLE, self.event_handler.handle_metrics_event),
            (CampaignStreamConfig.AUTOMATION_DURABLE, self.event_handler.handle_automation_event),
        ]
        for durable, handler in consumers:
            for subject in self.config.infrastructure.event_stream_subjects:
                prefix = subject.split(".")[0]
                await self._nats_client.subscribe(subject, handler, durable=f"{durable}-{prefix}")

    async def health_check(self) -> Dict[str, str]:
        """Dependency health for the health endpoint"""
        dependencies = {}
        try:
            db_healthy = self._db is not None and await self._db.health_check()
            dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        except Exception:
            dependencies["postgres"] = "unhealthy"

        if self._nats_client:
            dependencies["nats"] = "healthy" if self._nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

        dependencies["scheduler"] = "running" if self._scheduler and self._scheduler.running else "stopped"
        return dependencies

    async def close(self) -> None:
        """Close all components"""
        logger.info("Closing campaign engine components...")

        if self._scheduler:
            self._scheduler.shutdown()

        if self._nats_client:
            await self._nats_client.close()

        for client in self._clients:
            await client.close()

        if self._segments:
            await self._segments.close()

        if self._db:
            await self._db.close()

        logger.info("Campaign engine components closed")

    def _require(self, component):
        if component is None:
            raise RuntimeError("Factory not initialized. Call initialize() first.")
        return component

    @property
    def segments(self) -> SegmentService:
        return self._require(self._segments)

    @property
    def campaigns(self) -> CampaignService:
        return self._require(self._campaigns)

    @property
    def automation(self) -> AutomationService:
        return self._require(self._automation)

    @property
    def aggregator(self) -> AggregatorService:
        return self._require(self._aggregator)

    @property
    def event_handler(self) -> CampaignEventHandler:
        return self._require(self._event_handler)

    @property
    def scheduler(self) -> EngineScheduler:
        return self._require(self._scheduler)

    @property
    def nats_client(self) -> Optional[NATSEventBus]:
        """Get NATS client"""
        return self._nats_client

    @property
    def event_publisher(self) -> Optional[CampaignEventPublisher]:
        """Get event publisher"""
        return self._event_publisher


# Global factory instance
_factory: Optional[CampaignEngineFactory] = None


async def get_factory() -> CampaignEngineFactory:
    """Get or create factory instance"""
    global _factory
    if _factory is None:
        _factory = CampaignEngineFactory()
        await _factory.initialize()
    return _factory


async def close_factory() -> None:
    """Close factory instance"""
    global _factory
    if _factory:
        await _factory.close()
        _factory = None


__all__ = [
    "CampaignEngineFactory",
    "get_factory",
    "close_factory",
]
