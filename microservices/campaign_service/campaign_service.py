"""
Campaign Service Business Logic

Implements the campaign lifecycle state machine (draft, scheduled, active,
paused, completed, failed), run planning against pinned segment snapshots,
recurrence, crash recovery and goal tracking. Batch execution lives in
dispatcher.py.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from core.config import EngineConfig

from .dispatcher import Dispatcher, plan_run
from .events.models import EngineEventType
from .events.publishers import CampaignEventPublisher
from .models import (
    Campaign,
    CampaignBudget,
    CampaignCreateRequest,
    CampaignRun,
    CampaignSchedule,
    CampaignStatus,
    CampaignUpdateRequest,
    DeliveryStatus,
    DispatchRecord,
    DispatchSummary,
    GoalProgress,
    RunStatus,
    SegmentSnapshot,
)
from .protocols import (
    CampaignNotFoundError,
    CampaignRepositoryProtocol,
    CampaignValidationError,
    ConsistencyViolationError,
    ClockProtocol,
    ContentClientProtocol,
    InvalidCampaignStateError,
    SegmentNotFoundError,
)
from .scheduler import SystemClock
from .segment_service import SegmentService

logger = logging.getLogger(__name__)


class CampaignService:
    """Campaign service business logic layer"""

    # Valid state transitions; any non-terminal state may also fail
    VALID_TRANSITIONS = {
        CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED, CampaignStatus.FAILED],
        CampaignStatus.SCHEDULED: [CampaignStatus.ACTIVE, CampaignStatus.FAILED],
        CampaignStatus.ACTIVE: [CampaignStatus.PAUSED, CampaignStatus.COMPLETED, CampaignStatus.FAILED],
        CampaignStatus.PAUSED: [CampaignStatus.ACTIVE, CampaignStatus.COMPLETED, CampaignStatus.FAILED],
        CampaignStatus.COMPLETED: [],  # Terminal state
        CampaignStatus.FAILED: [],  # Terminal state
    }

    EDITABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.PAUSED)

    def __init__(
        self,
        repository: CampaignRepositoryProtocol,
        segments: SegmentService,
        content_client: ContentClientProtocol,
        dispatcher: Dispatcher,
        publisher: Optional[CampaignEventPublisher] = None,
        aggregator=None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.repository = repository
        self.segments = segments
        self.content_client = content_client
        self.dispatcher = dispatcher
        self.publisher = publisher or CampaignEventPublisher()
        self.aggregator = aggregator
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self._dispatch_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ====================
    # Campaign CRUD
    # ====================

    async def create_campaign(self, request: Union[CampaignCreateRequest, Dict[str, Any]]) -> Campaign:
        """
        Create a new campaign in draft status.

        References are not checked until the campaign is scheduled.
        """
        try:
            if isinstance(request, dict):
                request = CampaignCreateRequest.model_validate(request)
            now = self.clock.now()
            campaign = Campaign(
                name=request.name,
                description=request.description,
                campaign_type=request.campaign_type,
                channels=request.channels,
                segment_id=request.segment_id,
                content_id=request.content_id,
                schedule=request.schedule,
                budget=request.budget or CampaignBudget(),
                goals=request.goals,
                batch_size=request.batch_size,
                tags=request.tags,
                metadata=request.metadata,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        campaign = await self.repository.save_campaign(campaign)
        logger.info(f"Campaign created: {campaign.campaign_id}")
        return campaign

    async def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self.repository.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        return campaign

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Campaign]:
        return await self.repository.list_campaigns(status=status, limit=limit, offset=offset)

    async def update_campaign(
        self,
        campaign_id: str,
        request: Union[CampaignUpdateRequest, Dict[str, Any]],
    ) -> Campaign:
        """Update a draft or paused campaign"""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in self.EDITABLE_STATUSES:
            raise InvalidCampaignStateError(
                f"Cannot update campaign in {campaign.status.value} status",
                campaign.status,
            )

        try:
            if isinstance(request, dict):
                request = CampaignUpdateRequest.model_validate(request)
            updates = request.model_dump(exclude_unset=True)
            merged = campaign.model_dump()
            budget_total = updates.pop("budget_total", None)
            if "budget_total" in request.model_fields_set:
                merged["budget"]["total"] = budget_total
            merged.update(updates)
            merged["updated_at"] = self.clock.now()
            updated = Campaign.model_validate(merged)
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        updated = await self._save_transition(updated, expected=campaign.status)
        logger.info(f"Campaign updated: {campaign_id}")
        return updated

    # ====================
    # Lifecycle
    # ====================

    async def schedule_campaign(
        self,
        campaign_id: str,
        schedule: Optional[Union[CampaignSchedule, Dict[str, Any]]] = None,
    ) -> Campaign:
        """
        Schedule a draft campaign.

        Requires approved content, a live segment and a schedule whose window
        has not already closed.
        """
        campaign = await self.get_campaign(campaign_id)
        self._require_transition(campaign, CampaignStatus.SCHEDULED)

        if schedule is not None:
            try:
                if isinstance(schedule, dict):
                    schedule = CampaignSchedule.model_validate(schedule)
            except ValidationError as e:
                raise CampaignValidationError.from_pydantic(e, default_reason="invalid_schedule") from e
            campaign.schedule = schedule

        now = self.clock.now()
        if campaign.schedule is None:
            raise CampaignValidationError("Campaign has no schedule", "schedule", "invalid_schedule")
        end = campaign.schedule.resolved_end()
        if end is not None and end <= now:
            raise CampaignValidationError("Schedule window has already closed", "schedule.end_at", "invalid_schedule")

        await self._require_approved_content(campaign)
        try:
            await self.segments.get_segment(campaign.segment_id)
        except SegmentNotFoundError:
            raise CampaignValidationError(
                f"Segment cannot be resolved: {campaign.segment_id}",
                "segment_id",
                "segment_unresolvable",
            )

        campaign.status = CampaignStatus.SCHEDULED
        campaign.next_run_at = campaign.schedule.resolved_start()
        campaign.updated_at = now
        campaign = await self._save_transition(campaign, expected=CampaignStatus.DRAFT)

        logger.info(f"Campaign scheduled: {campaign_id} at {campaign.next_run_at.isoformat()}")
        return campaign

    async def launch_campaign(self, campaign_id: str) -> Campaign:
        """
        Activate a scheduled campaign and pin its segment snapshot.

        Content approval is checked again; unapproved content or a deleted
        segment fails the campaign instead of launching it.
        """
        async with self._dispatch_locks[campaign_id]:
            campaign = await self.get_campaign(campaign_id)
            self._require_transition(campaign, CampaignStatus.ACTIVE)
            if campaign.status != CampaignStatus.SCHEDULED:
                raise InvalidCampaignStateError("Only scheduled campaigns can be launched", campaign.status)

            try:
                await self._require_approved_content(campaign)
            except CampaignValidationError as e:
                return await self._fail(campaign, e.reason_code)

            try:
                snapshot = await self.segments.acquire_snapshot(campaign.segment_id)
            except SegmentNotFoundError:
                return await self._fail(campaign, ConsistencyViolationError.reason_code)

            scheduled_for = campaign.next_run_at or self.clock.now()
            run = await self._start_run(campaign, snapshot, scheduled_for)

            now = self.clock.now()
            campaign.status = CampaignStatus.ACTIVE
            campaign.launched_at = now
            campaign.updated_at = now
            campaign.current_run_id = run.run_id
            campaign.next_run_at = None
            campaign = await self._save_transition(campaign, expected=CampaignStatus.SCHEDULED)

        await self.publisher.publish_campaign_event(
            EngineEventType.CAMPAIGN_LAUNCHED, campaign, now, snapshot_version=snapshot.version
        )
        logger.info(f"Campaign launched: {campaign_id} run={run.run_id} recipients={run.total_recipients}")
        return campaign

    async def pause_campaign(self, campaign_id: str) -> Campaign:
        """
        Pause an active campaign.

        The batch in flight completes; no further batch starts.
        """
        campaign = await self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.PAUSED:
            raise InvalidCampaignStateError("Campaign is already paused", campaign.status)
        self._require_transition(campaign, CampaignStatus.PAUSED)

        now = self.clock.now()
        previous = campaign.status
        campaign.status = CampaignStatus.PAUSED
        campaign.paused_at = now
        campaign.updated_at = now
        campaign = await self._save_transition(campaign, expected=previous)
        await self._set_run_status(campaign, RunStatus.PAUSED)

        await self.publisher.publish_campaign_event(EngineEventType.CAMPAIGN_PAUSED, campaign, now)
        logger.info(f"Campaign paused: {campaign_id}")
        return campaign

    async def resume_campaign(self, campaign_id: str) -> Campaign:
        """Resume a paused campaign from its next undispatched batch"""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidCampaignStateError("Only paused campaigns can be resumed", campaign.status)

        now = self.clock.now()
        campaign.status = CampaignStatus.ACTIVE
        campaign.paused_at = None
        campaign.updated_at = now
        campaign = await self._save_transition(campaign, expected=CampaignStatus.PAUSED)
        await self._set_run_status(campaign, RunStatus.RUNNING)

        await self.publisher.publish_campaign_event(EngineEventType.CAMPAIGN_RESUMED, campaign, now)
        logger.info(f"Campaign resumed: {campaign_id}")
        return campaign

    async def fail_campaign(self, campaign_id: str, reason: str) -> Campaign:
        """Move a non-terminal campaign to failed with a recorded reason"""
        campaign = await self.get_campaign(campaign_id)
        self._require_transition(campaign, CampaignStatus.FAILED)
        return await self._fail(campaign, reason)

    # ====================
    # Dispatch
    # ====================

    async def dispatch(self, campaign_id: str, max_batches: Optional[int] = None) -> DispatchSummary:
        """
        Dispatch the current run's remaining batches.

        Args:
            campaign_id: Active campaign
            max_batches: Stop after this many batches (None = until done or paused)
        """
        async with self._dispatch_locks[campaign_id]:
            campaign = await self.get_campaign(campaign_id)
            if campaign.status != CampaignStatus.ACTIVE:
                raise InvalidCampaignStateError(
                    f"Cannot dispatch campaign in {campaign.status.value} status",
                    campaign.status,
                )
            run = await self._current_run(campaign)
            if run is None or run.status != RunStatus.RUNNING:
                return DispatchSummary(campaign_id=campaign_id, run_id=campaign.current_run_id, status=campaign.status)

            summary = await self.dispatcher.run(campaign, run, max_batches)

            if summary.status == CampaignStatus.FAILED:
                campaign = await self.get_campaign(campaign_id)
                if campaign.status != CampaignStatus.FAILED:
                    await self._fail(campaign, summary.reason or "dispatch_failed")
            elif summary.status == CampaignStatus.COMPLETED:
                summary.status = await self._finish_run(campaign_id, run)
        return summary

    async def start_due_campaigns(self, now: Optional[datetime] = None) -> List[str]:
        """
        Launch scheduled campaigns and start recurring runs that are due.

        Start times are resolved in each campaign's timezone. Scheduler hook.
        """
        now = now or self.clock.now()
        started = []
        for campaign in await self.repository.list_campaigns(
            status=[CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE]
        ):
            if campaign.next_run_at is None or campaign.next_run_at > now:
                continue
            try:
                if campaign.status == CampaignStatus.SCHEDULED:
                    await self.launch_campaign(campaign.campaign_id)
                else:
                    await self._start_next_run(campaign.campaign_id)
                started.append(campaign.campaign_id)
            except Exception as e:
                logger.warning(f"Could not start campaign {campaign.campaign_id}: {e}")
        return started

    async def dispatch_active_campaigns(self, now: Optional[datetime] = None) -> List[str]:
        """Dispatch every active campaign with a running run (scheduler hook)"""
        dispatched = []
        for campaign in await self.repository.list_campaigns(status=[CampaignStatus.ACTIVE]):
            run = await self._current_run(campaign)
            if run is None or run.status != RunStatus.RUNNING:
                continue
            try:
                await self.dispatch(campaign.campaign_id)
                dispatched.append(campaign.campaign_id)
            except Exception as e:
                logger.error(f"Dispatch of campaign {campaign.campaign_id} failed: {e}", exc_info=True)
        return dispatched

    async def resume_active_runs(self) -> List[str]:
        """
        Crash recovery: re-pin snapshots of unfinished runs and resolve ledger
        records left in `dispatching` to failed/outcome_unknown. Those
        recipients are never re-sent.
        """
        recovered = []
        for campaign in await self.repository.list_campaigns(
            status=[CampaignStatus.ACTIVE, CampaignStatus.PAUSED]
        ):
            run = await self._current_run(campaign)
            if run is None or run.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
                continue

            stale = await self.repository.resolve_stale_dispatches(campaign.campaign_id, "outcome_unknown")
            if stale:
                run.failed_count += stale
                await self.repository.save_run(run)
                logger.warning(f"Campaign {campaign.campaign_id}: {stale} in-flight sends resolved as outcome_unknown")

            try:
                await self.segments.acquire_snapshot(run.segment_id, run.snapshot_version)
            except SegmentNotFoundError:
                await self._fail(campaign, ConsistencyViolationError.reason_code)
                continue
            recovered.append(campaign.campaign_id)
        return recovered

    # ====================
    # Queries
    # ====================

    async def get_ledger(
        self,
        campaign_id: str,
        batch_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[DispatchRecord]:
        await self.get_campaign(campaign_id)
        return await self.repository.list_dispatches(campaign_id, batch_id=batch_id, status=status)

    async def get_run(self, run_id: str) -> Optional[CampaignRun]:
        return await self.repository.get_run(run_id)

    async def get_goal_progress(self, campaign_id: str) -> List[GoalProgress]:
        """Goal targets against aggregated counts"""
        campaign = await self.get_campaign(campaign_id)
        if self.aggregator is None:
            raise RuntimeError("Aggregator not configured")
        totals = await self.aggregator.get_campaign_totals(campaign_id)
        return [
            GoalProgress(
                metric=goal.metric,
                target=goal.target,
                actual=totals.get(goal.metric.value, 0),
                achieved=totals.get(goal.metric.value, 0) >= goal.target,
            )
            for goal in campaign.goals
        ]

    # ====================
    # Internals
    # ====================

    def _validate_state_transition(self, current: CampaignStatus, target: CampaignStatus) -> bool:
        """Validate state transition is allowed"""
        return target in self.VALID_TRANSITIONS.get(current, [])

    def _require_transition(self, campaign: Campaign, target: CampaignStatus) -> None:
        if not self._validate_state_transition(campaign.status, target):
            raise InvalidCampaignStateError(
                f"Cannot transition from {campaign.status.value} to {target.value}",
                campaign.status,
            )

    async def _require_approved_content(self, campaign: Campaign) -> None:
        content = await self.content_client.get_content(campaign.content_id)
        if content is None or not content.is_approved:
            raise CampaignValidationError(
                f"Content {campaign.content_id} is not approved",
                "content_id",
                "content_not_approved",
            )

    async def _current_run(self, campaign: Campaign) -> Optional[CampaignRun]:
        if not campaign.current_run_id:
            return None
        return await self.repository.get_run(campaign.current_run_id)

    async def _start_run(self, campaign: Campaign, snapshot: SegmentSnapshot, scheduled_for: datetime) -> CampaignRun:
        run = plan_run(
            campaign,
            snapshot,
            self.config.batch_size,
            scheduled_for=scheduled_for,
            started_at=self.clock.now(),
        )
        return await self.repository.save_run(run)

    async def _start_next_run(self, campaign_id: str) -> Campaign:
        """Start the next recurrence of an active campaign"""
        async with self._dispatch_locks[campaign_id]:
            campaign = await self.get_campaign(campaign_id)
            current = await self._current_run(campaign)
            if current is not None and current.status in (RunStatus.RUNNING, RunStatus.PAUSED):
                return campaign

            try:
                snapshot = await self.segments.acquire_snapshot(campaign.segment_id)
            except SegmentNotFoundError:
                return await self._fail(campaign, ConsistencyViolationError.reason_code)

            run = await self._start_run(campaign, snapshot, campaign.next_run_at or self.clock.now())
            campaign.current_run_id = run.run_id
            campaign.next_run_at = None
            campaign.updated_at = self.clock.now()
            campaign = await self._save_transition(campaign, expected=campaign.status)

        logger.info(f"Campaign {campaign_id} started recurring run {run.run_id}")
        return campaign

    async def _finish_run(self, campaign_id: str, run: CampaignRun) -> CampaignStatus:
        """Close a run; complete the campaign unless another recurrence is due"""
        now = self.clock.now()
        run.status = RunStatus.COMPLETED
        run.completed_at = now
        await self.repository.save_run(run)
        await self.segments.release_snapshot(run.segment_id, run.snapshot_version)

        campaign = await self.get_campaign(campaign_id)
        if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.FAILED):
            logger.info(f"Campaign {campaign_id} already {campaign.status.value}, run {run.run_id} closed")
            return campaign.status

        previous = campaign.status
        next_at = None
        if campaign.schedule is not None:
            next_at = campaign.schedule.next_run_after(run.scheduled_for or run.started_at)

        if next_at is not None:
            campaign.next_run_at = next_at
            campaign.updated_at = now
            await self._save_transition(campaign, expected=previous)
            logger.info(f"Campaign {campaign_id} run {run.run_id} done, next run at {next_at.isoformat()}")
            return CampaignStatus.ACTIVE

        campaign.status = CampaignStatus.COMPLETED
        campaign.completed_at = now
        campaign.updated_at = now
        campaign = await self._save_transition(campaign, expected=previous)
        await self.publisher.publish_campaign_event(EngineEventType.CAMPAIGN_COMPLETED, campaign, now)
        logger.info(f"Campaign completed: {campaign_id}")
        return CampaignStatus.COMPLETED

    async def _set_run_status(self, campaign: Campaign, status: RunStatus) -> None:
        run = await self._current_run(campaign)
        if run is not None and run.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            run.status = status
            await self.repository.save_run(run)

    async def _save_transition(self, campaign: Campaign, expected: CampaignStatus) -> Campaign:
        """Persist only if the stored status is still the one this change was based on"""
        saved = await self.repository.save_campaign(campaign, expected_status=expected)
        if saved is None:
            current = await self.repository.get_campaign(campaign.campaign_id)
            raise InvalidCampaignStateError(
                f"Campaign {campaign.campaign_id} changed concurrently (expected {expected.value})",
                current.status if current else None,
            )
        return saved

    async def _fail(self, campaign: Campaign, reason: str) -> Campaign:
        now = self.clock.now()
        previous = campaign.status
        campaign.status = CampaignStatus.FAILED
        campaign.failure_reason = reason
        campaign.failed_at = now
        campaign.updated_at = now
        campaign = await self._save_transition(campaign, expected=previous)

        run = await self._current_run(campaign)
        if run is not None and run.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            run.status = RunStatus.FAILED
            run.completed_at = now
            await self.repository.save_run(run)
            await self.segments.release_snapshot(run.segment_id, run.snapshot_version)

        await self.publisher.publish_campaign_event(EngineEventType.CAMPAIGN_FAILED, campaign, now)
        logger.warning(f"Campaign failed: {campaign.campaign_id} ({reason})")
        return campaign


__all__ = ["CampaignService"]
