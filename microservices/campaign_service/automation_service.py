"""
Automation / Trigger Engine

Matches incoming events against trigger rules and runs each match as a
persisted workflow instance: a step pointer plus an optional resume time.
Nothing about a workflow lives only in memory, so a restart picks every
instance up where its last persisted step left it.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from core.config import EngineConfig

from .criteria import evaluate
from .dispatcher import choose_variant
from .models import (
    CallWebhookStep,
    ChannelType,
    EngineEvent,
    OutcomeStatus,
    SegmentOperation,
    SendContentStep,
    TriggerRule,
    TriggerRuleCreateRequest,
    TriggerRuleUpdateRequest,
    UpdateSegmentStep,
    WaitStep,
    WorkflowInstance,
    WorkflowStatus,
)
from .protocols import (
    AutomationRepositoryProtocol,
    CampaignServiceError,
    CampaignValidationError,
    ChannelAdapterProtocol,
    ClockProtocol,
    ContentClientProtocol,
    TriggerRuleNotFoundError,
    WebhookClientProtocol,
    WorkflowConflictError,
    WorkflowStepError,
)
from .scheduler import SystemClock
from .segment_service import SegmentService

logger = logging.getLogger(__name__)


class AutomationService:
    """Trigger rules and workflow instance state machine"""

    def __init__(
        self,
        repository: AutomationRepositoryProtocol,
        segments: SegmentService,
        content_client: ContentClientProtocol,
        channel_adapters: Dict[ChannelType, ChannelAdapterProtocol],
        webhook_client: Optional[WebhookClientProtocol] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.repository = repository
        self.segments = segments
        self.content_client = content_client
        self.channel_adapters = channel_adapters
        self.webhook_client = webhook_client
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self._instance_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ====================
    # Rule management
    # ====================

    async def create_rule(self, request: Union[TriggerRuleCreateRequest, Dict[str, Any]]) -> TriggerRule:
        try:
            if isinstance(request, dict):
                request = TriggerRuleCreateRequest.model_validate(request)
            now = self.clock.now()
            rule = TriggerRule(
                name=request.name,
                event_type=request.event_type,
                conditions=request.conditions,
                steps=request.steps,
                enabled=request.enabled,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        rule = await self.repository.save_rule(rule)
        logger.info(f"Trigger rule created: {rule.rule_id} on {rule.event_type}")
        return rule

    async def get_rule(self, rule_id: str) -> TriggerRule:
        rule = await self.repository.get_rule(rule_id)
        if rule is None or rule.deleted_at is not None:
            raise TriggerRuleNotFoundError(f"Trigger rule not found: {rule_id}")
        return rule

    async def list_rules(self, event_type: Optional[str] = None, enabled_only: bool = False) -> List[TriggerRule]:
        return await self.repository.list_rules(event_type=event_type, enabled_only=enabled_only)

    async def update_rule(
        self,
        rule_id: str,
        request: Union[TriggerRuleUpdateRequest, Dict[str, Any]],
    ) -> TriggerRule:
        """Update a rule; running instances pick up new steps at their next boundary"""
        rule = await self.get_rule(rule_id)
        try:
            if isinstance(request, dict):
                request = TriggerRuleUpdateRequest.model_validate(request)
            merged = rule.model_dump()
            merged.update(request.model_dump(exclude_unset=True))
            merged["version"] = rule.version + 1
            merged["updated_at"] = self.clock.now()
            updated = TriggerRule.model_validate(merged)
        except ValidationError as e:
            raise CampaignValidationError.from_pydantic(e) from e

        updated = await self.repository.save_rule(updated)
        logger.info(f"Trigger rule updated: {rule_id} v{updated.version}")
        return updated

    async def set_rule_enabled(self, rule_id: str, enabled: bool) -> TriggerRule:
        """Enable or disable a rule; disabling cancels instances at their next step"""
        rule = await self.get_rule(rule_id)
        if rule.enabled == enabled:
            return rule
        rule.enabled = enabled
        rule.version += 1
        rule.updated_at = self.clock.now()
        rule = await self.repository.save_rule(rule)
        logger.info(f"Trigger rule {rule_id} {'enabled' if enabled else 'disabled'}")
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        rule = await self.get_rule(rule_id)
        now = self.clock.now()
        rule.enabled = False
        rule.deleted_at = now
        rule.updated_at = now
        await self.repository.save_rule(rule)
        logger.info(f"Trigger rule deleted: {rule_id}")
        return True

    # ====================
    # Event matching
    # ====================

    @staticmethod
    def event_attributes(event: EngineEvent) -> Dict[str, Any]:
        """Attribute map rule conditions are evaluated against"""
        return {
            **event.properties,
            "event_type": event.event_type,
            "customer_id": event.customer_id,
            "campaign_id": event.campaign_id,
        }

    def rule_matches(self, rule: TriggerRule, event: EngineEvent) -> bool:
        if not rule.enabled or rule.deleted_at is not None or rule.event_type != event.event_type:
            return False
        if rule.conditions is None:
            return True
        return evaluate(rule.conditions, self.event_attributes(event))

    async def handle_event(self, event: EngineEvent) -> List[WorkflowInstance]:
        """
        Start a workflow instance per matching rule.

        Instance ids derive from (customer, rule, event), so a redelivered
        event finds its instances already present and starts nothing.
        """
        if not event.customer_id:
            logger.debug(f"Event {event.event_id} has no customer, skipping automation")
            return []

        started = []
        for rule in await self.repository.list_rules(event_type=event.event_type, enabled_only=True):
            if not self.rule_matches(rule, event):
                continue

            now = self.clock.now()
            instance = WorkflowInstance.start(rule, event)
            instance.created_at = now
            instance.updated_at = now
            if not await self.repository.create_instance_if_absent(instance):
                existing = await self.repository.get_instance(instance.instance_id)
                if existing is not None and existing.status == WorkflowStatus.RUNNING:
                    # An earlier delivery failed mid-step; pick it up where it stopped
                    logger.info(f"Resuming workflow {instance.instance_id} on redelivery")
                    await self.advance_instance(instance.instance_id)
                else:
                    logger.debug(f"Workflow instance {instance.instance_id} already exists")
                continue

            logger.info(f"Workflow started: {instance.instance_id} rule={rule.rule_id} customer={event.customer_id}")
            started.append(await self.advance_instance(instance.instance_id))
        return started

    # ====================
    # Instance state machine
    # ====================

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise CampaignServiceError(f"Workflow instance not found: {instance_id}", "not_found")
        return instance

    async def list_instances(
        self,
        status: Optional[List[WorkflowStatus]] = None,
        rule_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        return await self.repository.list_instances(status=status, rule_id=rule_id, customer_id=customer_id)

    async def advance_instance(self, instance_id: str, now: Optional[datetime] = None) -> WorkflowInstance:
        """
        Run steps until the instance waits, finishes, fails or is cancelled.

        State is persisted after every step with compare-and-set on the
        instance version; losing the race hands the instance to the winner.
        """
        async with self._instance_locks[instance_id]:
            instance = await self.get_instance(instance_id)
            try:
                return await self._advance(instance, now or self.clock.now())
            except WorkflowConflictError as e:
                logger.warning(str(e))
                return await self.get_instance(instance_id)

    async def _advance(self, instance: WorkflowInstance, now: datetime) -> WorkflowInstance:
        if instance.is_terminal:
            return instance

        if instance.status == WorkflowStatus.WAITING:
            if instance.resume_at is not None and instance.resume_at > now:
                return instance
            instance.status = WorkflowStatus.RUNNING
            instance.resume_at = None
            instance.remaining_delay_seconds = None
            instance = await self._persist(instance)

        while True:
            rule = await self.repository.get_rule(instance.rule_id)
            if rule is None or not rule.enabled or rule.deleted_at is not None:
                instance.status = WorkflowStatus.CANCELLED
                instance.completed_at = now
                logger.info(f"Workflow cancelled: {instance.instance_id} (rule disabled)")
                return await self._persist(instance)

            if instance.current_step >= len(rule.steps):
                instance.status = WorkflowStatus.COMPLETED
                instance.completed_at = now
                logger.info(f"Workflow completed: {instance.instance_id}")
                return await self._persist(instance)

            step_index = instance.current_step
            step = rule.steps[step_index]

            if isinstance(step, WaitStep):
                instance.current_step = step_index + 1
                if step.delay_seconds > 0:
                    instance.status = WorkflowStatus.WAITING
                    instance.resume_at = now + timedelta(seconds=step.delay_seconds)
                    instance.remaining_delay_seconds = step.delay_seconds
                    logger.debug(f"Workflow {instance.instance_id} waiting until {instance.resume_at.isoformat()}")
                    return await self._persist(instance)
                instance = await self._persist(instance)
                continue

            try:
                await self._run_step_with_retry(instance, step, step_index)
            except Exception as e:
                instance.last_error = str(e)
                instance.status = WorkflowStatus.FAILED
                instance.completed_at = now
                logger.warning(
                    f"Workflow failed: {instance.instance_id} step {step_index} "
                    f"after {instance.step_attempts} attempts: {e}"
                )
                return await self._persist(instance)

            instance.current_step = step_index + 1
            instance.step_attempts = 0
            instance.last_error = None
            instance = await self._persist(instance)

    async def _persist(self, instance: WorkflowInstance) -> WorkflowInstance:
        expected = instance.version
        instance.version = expected + 1
        instance.updated_at = self.clock.now()
        if not await self.repository.update_instance(instance, expected):
            raise WorkflowConflictError(
                f"Workflow instance {instance.instance_id} changed concurrently (expected v{expected})"
            )
        return instance

    async def _run_step_with_retry(self, instance: WorkflowInstance, step, step_index: int) -> None:
        """Run one step, retrying up to step_max_attempts"""
        if isinstance(step, SendContentStep):
            # One delivery attempt sequence per (instance, step), even across restarts
            if not await self.repository.claim_step_effect(instance.instance_id, step_index):
                logger.warning(f"Step {step_index} of {instance.instance_id} was already attempted, not re-sending")
                return

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.step_max_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_multiplier,
                max=self.config.retry_backoff_max_seconds,
            ),
            retry=retry_if_not_exception_type(CampaignValidationError),
            reraise=True,
        ):
            with attempt:
                instance.step_attempts += 1
                await self._execute_step(instance, step, step_index)

    async def _execute_step(self, instance: WorkflowInstance, step, step_index: int) -> None:
        if isinstance(step, SendContentStep):
            await self._send_content(instance, step, step_index)
        elif isinstance(step, UpdateSegmentStep):
            await self._update_segment(instance, step)
        elif isinstance(step, CallWebhookStep):
            await self._call_webhook(instance, step, step_index)
        else:
            raise WorkflowStepError(f"Unsupported step type: {getattr(step, 'type', step)}")

    async def _send_content(self, instance: WorkflowInstance, step: SendContentStep, step_index: int) -> None:
        if await self.segments.is_suppressed(instance.customer_id):
            logger.info(f"Skipping send to suppressed customer {instance.customer_id} ({instance.instance_id})")
            return

        adapter = self.channel_adapters.get(step.channel)
        if adapter is None:
            raise WorkflowStepError(f"No adapter for channel {step.channel.value}")

        content = await self.content_client.get_content(step.content_id)
        if content is None or not content.is_approved:
            raise CampaignValidationError(
                f"Content {step.content_id} is not approved",
                "content_id",
                "content_not_approved",
            )

        variant = choose_variant(instance.rule_id, instance.customer_id, content.variants)
        rendered = await self.content_client.render(step.content_id, variant.variant_id, step.channel)
        outcome = await adapter.send(instance.customer_id, rendered, f"{instance.instance_id}:{step_index}")
        if outcome.status == OutcomeStatus.FAILED:
            raise WorkflowStepError(f"Send failed: {outcome.reason or 'permanent_failure'}")

    async def _update_segment(self, instance: WorkflowInstance, step: UpdateSegmentStep) -> None:
        if step.operation == SegmentOperation.ADD:
            await self.segments.add_static_member(step.segment_id, instance.customer_id)
        elif step.operation == SegmentOperation.REMOVE:
            await self.segments.remove_static_member(step.segment_id, instance.customer_id)
        elif step.operation == SegmentOperation.SUPPRESS:
            await self.segments.suppress_customer(
                instance.customer_id,
                reason=f"rule:{instance.rule_id}",
                source_event_id=instance.event_id,
            )
        elif step.operation == SegmentOperation.REFRESH:
            await self.segments.refresh(step.segment_id)

    async def _call_webhook(self, instance: WorkflowInstance, step: CallWebhookStep, step_index: int) -> None:
        if self.webhook_client is None:
            raise WorkflowStepError("Webhook client not configured")
        payload = {
            "instance_id": instance.instance_id,
            "rule_id": instance.rule_id,
            "customer_id": instance.customer_id,
            "event": instance.event.to_envelope(),
        }
        await self.webhook_client.call(
            step.url,
            payload,
            method=step.method,
            headers=step.headers,
            idempotency_key=f"{instance.instance_id}:{step_index}",
        )

    # ====================
    # Scheduler & recovery hooks
    # ====================

    async def resume_due_instances(self, now: Optional[datetime] = None) -> List[str]:
        """Advance waiting instances whose resume time has passed"""
        now = now or self.clock.now()
        resumed = []
        for instance in await self.repository.list_due_instances(now):
            try:
                await self.advance_instance(instance.instance_id, now)
                resumed.append(instance.instance_id)
            except Exception as e:
                logger.error(f"Error resuming workflow {instance.instance_id}: {e}", exc_info=True)
        return resumed

    async def recover_instances(self) -> List[str]:
        """Re-run instances left `running` by a previous process"""
        recovered = []
        for instance in await self.repository.list_instances(status=[WorkflowStatus.RUNNING]):
            try:
                await self.advance_instance(instance.instance_id)
                recovered.append(instance.instance_id)
            except Exception as e:
                logger.error(f"Error recovering workflow {instance.instance_id}: {e}", exc_info=True)
        return recovered


__all__ = ["AutomationService"]
