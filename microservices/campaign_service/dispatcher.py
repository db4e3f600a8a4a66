"""
Campaign Dispatcher

Executes a campaign run batch by batch against its pinned snapshot.

Every recipient is claimed in the dispatch ledger (insert-if-absent, status
`dispatching`) before its channel adapter is called, so a batch that is
retried, resumed or recovered after a crash never sends twice.
"""

import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Set, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import EngineConfig

from .events.publishers import CampaignEventPublisher
from .models import (
    BatchResult,
    Campaign,
    CampaignRun,
    CampaignStatus,
    ChannelType,
    Content,
    ContentVariant,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchRecord,
    DispatchSummary,
    OutcomeStatus,
    RenderedContent,
    RunStatus,
    SegmentSnapshot,
)
from .protocols import (
    CampaignRepositoryProtocol,
    ChannelAdapterProtocol,
    ClockProtocol,
    ConsistencyViolationError,
    ContentClientProtocol,
    ContentNotFoundError,
    TransientChannelError,
)
from .scheduler import SystemClock
from .segment_service import SegmentService

logger = logging.getLogger(__name__)

RenderKey = Tuple[Optional[str], ChannelType]


def choose_variant(campaign_id: str, recipient_id: str, variants: List[ContentVariant]) -> ContentVariant:
    """
    Deterministic weighted variant assignment.

    Uses hash of campaign_id + recipient_id for consistent assignment.
    """
    sorted_variants = sorted(variants, key=lambda v: v.variant_id)
    total = sum(v.weight for v in sorted_variants)
    if total <= 0:
        return sorted_variants[0]

    hash_value = hashlib.md5(f"{campaign_id}:{recipient_id}".encode()).hexdigest()
    bucket = int(hash_value, 16) % total

    cumulative = 0
    for variant in sorted_variants:
        cumulative += variant.weight
        if bucket < cumulative:
            return variant
    return sorted_variants[-1]


def batch_slice(snapshot: SegmentSnapshot, batch_size: int, index: int) -> Tuple[str, ...]:
    """Recipients of batch `index` in the snapshot's sorted order"""
    start = index * batch_size
    return snapshot.member_ids[start:start + batch_size]


def batch_count(total_recipients: int, batch_size: int) -> int:
    return (total_recipients + batch_size - 1) // batch_size


class Dispatcher:
    """Batch executor for campaign runs"""

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        segments: SegmentService,
        content_client: ContentClientProtocol,
        channel_adapters: Dict[ChannelType, ChannelAdapterProtocol],
        publisher: Optional[CampaignEventPublisher] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.repository = repository
        self.segments = segments
        self.content_client = content_client
        self.channel_adapters = channel_adapters
        self.publisher = publisher or CampaignEventPublisher()
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()

    async def run(
        self,
        campaign: Campaign,
        run: CampaignRun,
        max_batches: Optional[int] = None,
    ) -> DispatchSummary:
        """
        Dispatch batches until the run is exhausted, paused, failed or capped.

        Pause, deletion of the segment and the failure ratio are checked at
        batch boundaries only. The returned summary's status tells the caller
        which campaign transition applies.
        """
        summary = DispatchSummary(
            campaign_id=campaign.campaign_id,
            run_id=run.run_id,
            status=CampaignStatus.ACTIVE,
        )
        snapshot = await self.segments.get_snapshot(run.segment_id, run.snapshot_version)

        while not run.is_exhausted:
            if max_batches is not None and len(summary.batches) >= max_batches:
                break

            current = await self.repository.get_campaign(campaign.campaign_id)
            if current is None or current.status != CampaignStatus.ACTIVE:
                summary.status = current.status if current else CampaignStatus.FAILED
                if summary.status == CampaignStatus.PAUSED and run.status == RunStatus.RUNNING:
                    run.status = RunStatus.PAUSED
                    await self.repository.save_run(run)
                logger.info(f"Dispatch of {campaign.campaign_id} stopped at batch {run.next_batch_index}: {summary.status.value}")
                break

            if await self.segments.is_deleted(run.segment_id):
                summary.status = CampaignStatus.FAILED
                summary.reason = ConsistencyViolationError.reason_code
                break

            result = await self.dispatch_batch(current, run, snapshot, run.next_batch_index)
            summary.batches.append(result)

            run.next_batch_index += 1
            run.sent_count += result.sent
            run.failed_count += result.failed
            run.skipped_count += result.skipped
            await self.repository.save_run(run)

            if self._failure_ratio_exceeded(run):
                summary.status = CampaignStatus.FAILED
                summary.reason = "failure_ratio_exceeded"
                logger.warning(
                    f"Campaign {campaign.campaign_id} failure ratio exceeded: "
                    f"{run.failed_count} failed / {run.sent_count} sent"
                )
                break

        if run.is_exhausted and summary.status == CampaignStatus.ACTIVE:
            summary.status = CampaignStatus.COMPLETED
        return summary

    def _failure_ratio_exceeded(self, run: CampaignRun) -> bool:
        attempted = run.sent_count + run.failed_count
        if attempted == 0:
            return False
        return run.failed_count / attempted > self.config.failure_ratio_threshold

    # ====================
    # Batch execution
    # ====================

    async def dispatch_batch(
        self,
        campaign: Campaign,
        run: CampaignRun,
        snapshot: SegmentSnapshot,
        index: int,
    ) -> BatchResult:
        """Dispatch one batch; recipients already in the ledger are left alone"""
        batch_id = run.batch_id(index)
        recipients = batch_slice(snapshot, run.batch_size, index)
        result = BatchResult(batch_id=batch_id, batch_index=index)

        claimed = {r.recipient_id for r in await self.repository.list_dispatches(campaign.campaign_id, batch_id=batch_id)}
        suppressed = await self.segments.suppressed_ids(refresh=True)
        remaining_budget = campaign.budget.remaining_sends()

        content = await self._load_content(campaign)
        to_send: List[Tuple[str, ContentVariant]] = []
        for recipient_id in recipients:
            if recipient_id in claimed:
                result.already_dispatched += 1
                continue
            if recipient_id in suppressed:
                self._count_skip(result, await self._record_skip(campaign, run, batch_id, recipient_id, "consent_revoked"))
                continue
            if remaining_budget is not None:
                if remaining_budget <= 0:
                    self._count_skip(result, await self._record_skip(campaign, run, batch_id, recipient_id, "budget_exhausted"))
                    continue
                remaining_budget -= 1
            to_send.append((recipient_id, choose_variant(campaign.campaign_id, recipient_id, content.variants)))

        renders = await self._render_batch(campaign, {variant.variant_id for _, variant in to_send})

        semaphore = asyncio.Semaphore(self.config.send_concurrency)
        records = await asyncio.gather(*(
            self._send_one(campaign, run, batch_id, recipient_id, variant.variant_id, renders, semaphore)
            for recipient_id, variant in to_send
        ))

        for record in records:
            if record is None:
                result.already_dispatched += 1
            elif record.status == DeliveryStatus.SENT:
                result.sent += 1
            elif record.status == DeliveryStatus.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        logger.info(
            f"Batch {batch_id} dispatched: sent={result.sent} failed={result.failed} "
            f"skipped={result.skipped} already={result.already_dispatched}"
        )
        return result

    async def _load_content(self, campaign: Campaign) -> Content:
        content = await self.content_client.get_content(campaign.content_id)
        if content is None:
            raise ContentNotFoundError(f"Content not found: {campaign.content_id}")
        return content

    async def _render_batch(self, campaign: Campaign, variant_ids: Set[str]) -> Dict[RenderKey, RenderedContent]:
        """Render each (variant, channel) pair once for the batch"""
        renders: Dict[RenderKey, RenderedContent] = {}
        for variant_id in sorted(variant_ids):
            for channel in campaign.channels:
                renders[(variant_id, channel)] = await self.content_client.render(
                    campaign.content_id, variant_id, channel
                )
        return renders

    async def _record_skip(
        self,
        campaign: Campaign,
        run: CampaignRun,
        batch_id: str,
        recipient_id: str,
        reason: str,
    ) -> Optional[DispatchRecord]:
        now = self.clock.now()
        record = DispatchRecord(
            campaign_id=campaign.campaign_id,
            recipient_id=recipient_id,
            batch_id=batch_id,
            run_id=run.run_id,
            status=DeliveryStatus.SKIPPED,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        return record if await self.repository.claim_dispatch(record) else None

    @staticmethod
    def _count_skip(result: BatchResult, record: Optional[DispatchRecord]) -> None:
        if record is None:
            result.already_dispatched += 1
        else:
            result.skipped += 1

    async def _send_one(
        self,
        campaign: Campaign,
        run: CampaignRun,
        batch_id: str,
        recipient_id: str,
        variant_id: Optional[str],
        renders: Dict[RenderKey, RenderedContent],
        semaphore: asyncio.Semaphore,
    ) -> Optional[DispatchRecord]:
        """Claim, send through the channel fallback chain, resolve. None if already claimed."""
        async with semaphore:
            # Suppressions recorded while the batch is in flight still apply
            if await self.segments.is_suppressed(recipient_id):
                return await self._record_skip(campaign, run, batch_id, recipient_id, "consent_revoked")

            now = self.clock.now()
            record = DispatchRecord(
                campaign_id=campaign.campaign_id,
                recipient_id=recipient_id,
                batch_id=batch_id,
                run_id=run.run_id,
                variant_id=variant_id,
                status=DeliveryStatus.DISPATCHING,
                created_at=now,
                updated_at=now,
            )
            if not await self.repository.claim_dispatch(record):
                return None

            last_reason = "no_channel"
            for channel in campaign.channels:
                adapter = self.channel_adapters.get(channel)
                if adapter is None:
                    last_reason = "channel_unavailable"
                    continue

                record.channel = channel
                try:
                    outcome = await self._send_with_retry(adapter, record, renders[(variant_id, channel)])
                except TransientChannelError:
                    last_reason = "retries_exhausted"
                    continue
                except Exception as e:
                    logger.error(f"Adapter {channel.value} error for {record.idempotency_key}: {e}", exc_info=True)
                    last_reason = "adapter_error"
                    continue

                if outcome.status == OutcomeStatus.ACCEPTED:
                    record.status = DeliveryStatus.SENT
                    record.provider_message_id = outcome.provider_message_id
                    record.reason = None
                    break
                if outcome.status == OutcomeStatus.SKIPPED:
                    record.status = DeliveryStatus.SKIPPED
                    record.reason = outcome.reason or "adapter_skipped"
                    break
                last_reason = outcome.reason or "permanent_failure"
            else:
                record.status = DeliveryStatus.FAILED
                record.reason = last_reason

            record.updated_at = self.clock.now()
            await self.repository.update_dispatch(record)

            if record.status == DeliveryStatus.SENT:
                if campaign.budget.cost_per_send > 0:
                    await self.repository.increment_spend(campaign.campaign_id, campaign.budget.cost_per_send)
                await self.publisher.publish_message_sent(record, record.channel, record.updated_at)
            return record

    async def _send_with_retry(
        self,
        adapter: ChannelAdapterProtocol,
        record: DispatchRecord,
        rendered: RenderedContent,
    ) -> DeliveryOutcome:
        """Bounded exponential backoff on TransientChannelError"""
        outcome = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.max_send_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_multiplier,
                max=self.config.retry_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientChannelError),
            reraise=True,
        ):
            with attempt:
                record.attempts += 1
                outcome = await adapter.send(record.recipient_id, rendered, record.idempotency_key)
        return outcome


def plan_run(campaign: Campaign, snapshot: SegmentSnapshot, default_batch_size: int, **kwargs) -> CampaignRun:
    """New run pinned to `snapshot`"""
    batch_size = campaign.batch_size or default_batch_size
    return CampaignRun(
        campaign_id=campaign.campaign_id,
        segment_id=snapshot.segment_id,
        snapshot_version=snapshot.version,
        batch_size=batch_size,
        total_recipients=snapshot.size,
        total_batches=batch_count(snapshot.size, batch_size),
        status=RunStatus.RUNNING,
        **kwargs,
    )


__all__ = ["Dispatcher", "choose_variant", "batch_slice", "batch_count", "plan_run"]
