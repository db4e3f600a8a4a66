"""
Component Tests: Automation Service

Tests trigger rule management, event matching, the workflow instance state
machine (waits, retries, cancellation) and exactly-once instance creation.
"""

import pytest
from datetime import timedelta

from microservices.campaign_service.models import WorkflowInstance, workflow_instance_id
from microservices.campaign_service.protocols import (
    CampaignValidationError,
    TriggerRuleNotFoundError,
    WorkflowConflictError,
)

from tests.contracts.campaign.data_contract import ContentStatus, WorkflowStatus


@pytest.fixture
def purchase_event(factory):
    """A purchase.completed event for customer c00001"""

    def _event(amount: int = 150, **kwargs):
        return factory.make_event("purchase.completed", customer_id="c00001", amount=amount, **kwargs)

    return _event


class TestRuleManagement:
    """Trigger rule CRUD"""

    @pytest.mark.asyncio
    async def test_create_rule(self, automation_service, approved_content, factory):
        rule = await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        fetched = await automation_service.get_rule(rule.rule_id)
        assert fetched.enabled is True
        assert fetched.version == 1
        assert fetched.steps[0].type == "send_content"

    @pytest.mark.asyncio
    async def test_rule_without_steps_rejected(self, automation_service, automation_repository):
        with pytest.raises(CampaignValidationError):
            await automation_service.create_rule({"name": "Empty", "event_type": "purchase.completed", "steps": []})
        assert automation_repository.rules == {}

    @pytest.mark.asyncio
    async def test_invalid_conditions_rejected(self, automation_service, approved_content, factory):
        request = {
            "name": "Broken",
            "event_type": "purchase.completed",
            "conditions": {"field": "amount", "operator": "gt", "value": "lots"},
            "steps": [factory.send_step(approved_content.content_id)],
        }
        with pytest.raises(CampaignValidationError) as exc_info:
            await automation_service.create_rule(request)
        assert exc_info.value.reason_code == "invalid_criteria"

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, automation_service, approved_content, factory):
        rule = await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        updated = await automation_service.update_rule(rule.rule_id, {"name": "Big spenders"})

        assert updated.version == 2
        assert updated.name == "Big spenders"

    @pytest.mark.asyncio
    async def test_delete_rule(self, automation_service, approved_content, factory):
        rule = await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        assert await automation_service.delete_rule(rule.rule_id)

        with pytest.raises(TriggerRuleNotFoundError):
            await automation_service.get_rule(rule.rule_id)
        assert await automation_service.list_rules() == []


class TestEventMatching:
    """Rules start instances only for matching events"""

    @pytest.mark.asyncio
    async def test_matching_event_runs_send_step(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        rule = await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )
        event = purchase_event()

        instances = await automation_service.handle_event(event)

        assert len(instances) == 1
        instance = instances[0]
        assert instance.instance_id == workflow_instance_id("c00001", rule.rule_id, event.event_id)
        assert instance.status == WorkflowStatus.COMPLETED
        assert email_adapter.recipients == ["c00001"]
        assert email_adapter.idempotency_keys == [f"{instance.instance_id}:0"]

    @pytest.mark.asyncio
    async def test_conditions_filter_events(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        await automation_service.create_rule(factory.make_rule_request(
            "purchase.completed",
            [factory.send_step(approved_content.content_id)],
            conditions=factory.make_leaf("amount", "gt", 100),
        ))

        assert await automation_service.handle_event(purchase_event(amount=50)) == []
        assert len(await automation_service.handle_event(purchase_event(amount=500))) == 1
        assert email_adapter.recipients == ["c00001"]

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(self, automation_service, approved_content, factory):
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        assert await automation_service.handle_event(factory.make_event("cart.abandoned", customer_id="c00001")) == []

    @pytest.mark.asyncio
    async def test_event_without_customer_ignored(self, automation_service, approved_content, factory):
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        assert await automation_service.handle_event(factory.make_event("purchase.completed")) == []

    @pytest.mark.asyncio
    async def test_redelivered_event_starts_nothing(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )
        event = purchase_event()

        await automation_service.handle_event(event)
        again = await automation_service.handle_event(event)

        assert again == []
        assert len(email_adapter.sends) == 1

    @pytest.mark.asyncio
    async def test_each_matching_rule_gets_its_own_instance(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        for _ in range(2):
            await automation_service.create_rule(
                factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
            )

        instances = await automation_service.handle_event(purchase_event())

        assert len({i.instance_id for i in instances}) == 2
        assert len(email_adapter.sends) == 2


class TestWorkflowStateMachine:
    """Waits, retries, failures and cancellation"""

    @pytest.mark.asyncio
    async def test_wait_step_resumes_when_due(self, automation_service, approved_content, email_adapter, factory, clock, purchase_event):
        await automation_service.create_rule(factory.make_rule_request(
            "purchase.completed",
            [factory.wait_step(3600), factory.send_step(approved_content.content_id)],
        ))

        instance = (await automation_service.handle_event(purchase_event()))[0]
        assert instance.status == WorkflowStatus.WAITING
        assert instance.resume_at == clock.now() + timedelta(hours=1)
        assert instance.current_step == 1

        clock.advance(timedelta(minutes=30))
        assert await automation_service.resume_due_instances() == []
        assert email_adapter.sends == []

        clock.advance(timedelta(minutes=30))
        assert await automation_service.resume_due_instances() == [instance.instance_id]
        finished = await automation_service.get_instance(instance.instance_id)
        assert finished.status == WorkflowStatus.COMPLETED
        assert email_adapter.idempotency_keys == [f"{instance.instance_id}:1"]

    @pytest.mark.asyncio
    async def test_disabled_rule_cancels_waiting_instance(self, automation_service, approved_content, email_adapter, factory, clock, purchase_event):
        rule = await automation_service.create_rule(factory.make_rule_request(
            "purchase.completed",
            [factory.wait_step(60), factory.send_step(approved_content.content_id)],
        ))
        instance = (await automation_service.handle_event(purchase_event()))[0]

        await automation_service.set_rule_enabled(rule.rule_id, False)
        clock.advance(timedelta(minutes=2))
        await automation_service.resume_due_instances()

        cancelled = await automation_service.get_instance(instance.instance_id)
        assert cancelled.status == WorkflowStatus.CANCELLED
        assert email_adapter.sends == []

    @pytest.mark.asyncio
    async def test_transient_send_failure_is_retried(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        email_adapter.transient["c00001"] = 2
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        instance = (await automation_service.handle_event(purchase_event()))[0]

        assert instance.status == WorkflowStatus.COMPLETED
        assert len(email_adapter.sends) == 1

    @pytest.mark.asyncio
    async def test_step_fails_after_max_attempts(self, automation_service, approved_content, email_adapter, factory, purchase_event):
        email_adapter.always_transient.add("c00001")
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        instance = (await automation_service.handle_event(purchase_event()))[0]

        assert instance.status == WorkflowStatus.FAILED
        assert instance.step_attempts == 3
        assert "timeout" in instance.last_error

    @pytest.mark.asyncio
    async def test_unapproved_content_fails_without_retry(self, automation_service, content_client, factory, purchase_event):
        content = content_client.add(factory.make_content(status=ContentStatus.DRAFT))
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(content.content_id)])
        )

        instance = (await automation_service.handle_event(purchase_event()))[0]

        assert instance.status == WorkflowStatus.FAILED
        assert instance.step_attempts == 1

    @pytest.mark.asyncio
    async def test_suppressed_customer_send_is_skipped(self, automation_service, segment_service, approved_content, email_adapter, factory, purchase_event):
        await segment_service.suppress_customer("c00001")
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )

        instance = (await automation_service.handle_event(purchase_event()))[0]

        assert instance.status == WorkflowStatus.COMPLETED
        assert email_adapter.sends == []


class TestWorkflowEffects:
    """Webhook and segment steps"""

    @pytest.mark.asyncio
    async def test_webhook_retries_reuse_idempotency_key(self, automation_service, webhook_client, factory, purchase_event):
        webhook_client.failures_remaining = 2
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.webhook_step()])
        )

        instance = (await automation_service.handle_event(purchase_event()))[0]

        assert instance.status == WorkflowStatus.COMPLETED
        assert len(webhook_client.calls) == 3
        assert {c["idempotency_key"] for c in webhook_client.calls} == {f"{instance.instance_id}:0"}
        assert webhook_client.calls[0]["payload"]["customer_id"] == "c00001"

    @pytest.mark.asyncio
    async def test_update_segment_step_adds_member(self, automation_service, segment_service, factory, purchase_event):
        segment = await segment_service.create_segment(factory.make_static_segment_request(["c00009"]))
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.segment_step("add", segment.segment_id)])
        )

        await automation_service.handle_event(purchase_event())

        updated = await segment_service.get_segment(segment.segment_id)
        assert updated.static_member_ids == ["c00001", "c00009"]

    @pytest.mark.asyncio
    async def test_suppress_step_suppresses_customer(self, automation_service, segment_service, factory, purchase_event):
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.segment_step("suppress")])
        )

        await automation_service.handle_event(purchase_event())

        assert await segment_service.is_suppressed("c00001")


class TestRecoveryAndConcurrency:
    """Restart recovery and compare-and-set persistence"""

    @pytest.mark.asyncio
    async def test_recovery_does_not_repeat_claimed_send(
        self, automation_service, automation_repository, approved_content, email_adapter, factory, purchase_event
    ):
        # Given: an instance left running after its send step was claimed
        rule = await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )
        instance = WorkflowInstance.start(rule, purchase_event())
        await automation_repository.create_instance_if_absent(instance)
        await automation_repository.claim_step_effect(instance.instance_id, 0)

        # When
        recovered = await automation_service.recover_instances()

        # Then: the step is treated as done and not re-sent
        assert recovered == [instance.instance_id]
        finished = await automation_service.get_instance(instance.instance_id)
        assert finished.status == WorkflowStatus.COMPLETED
        assert email_adapter.sends == []

    @pytest.mark.asyncio
    async def test_stale_instance_write_conflicts(
        self, automation_service, approved_content, factory, clock, purchase_event
    ):
        await automation_service.create_rule(factory.make_rule_request(
            "purchase.completed",
            [factory.wait_step(60), factory.send_step(approved_content.content_id)],
        ))
        instance = (await automation_service.handle_event(purchase_event()))[0]
        stale = await automation_service.get_instance(instance.instance_id)

        # Another worker advances the instance first
        clock.advance(timedelta(minutes=5))
        await automation_service.resume_due_instances()

        with pytest.raises(WorkflowConflictError):
            await automation_service._persist(stale)

    @pytest.mark.asyncio
    async def test_redelivery_resumes_instance_left_running(
        self, automation_service, automation_repository, approved_content, email_adapter, factory, purchase_event, monkeypatch
    ):
        await automation_service.create_rule(
            factory.make_rule_request("purchase.completed", [factory.send_step(approved_content.content_id)])
        )
        event = purchase_event()
        real_update = automation_repository.update_instance
        calls = []

        async def flaky_update(instance, expected_version):
            calls.append(instance.instance_id)
            if len(calls) == 1:
                raise ConnectionError("database unavailable")
            return await real_update(instance, expected_version)

        monkeypatch.setattr(automation_repository, "update_instance", flaky_update)

        # First delivery sends, then loses the database before recording it
        with pytest.raises(ConnectionError):
            await automation_service.handle_event(event)

        # Redelivery finishes the instance without sending again
        await automation_service.handle_event(event)

        instance_id = workflow_instance_id("c00001", (await automation_service.list_rules())[0].rule_id, event.event_id)
        finished = await automation_service.get_instance(instance_id)
        assert finished.status == WorkflowStatus.COMPLETED
        assert len(email_adapter.sends) == 1
