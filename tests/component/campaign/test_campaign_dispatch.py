"""
Component Tests: Campaign Dispatch

Tests batch execution through the dispatcher: batch sizing, the dispatch
ledger's at-most-once guarantee, retries, channel fallback, budget caps,
failure ratio and segment deletion mid-run.
"""

import pytest
from decimal import Decimal

from tests.contracts.campaign.data_contract import (
    CampaignBudget,
    CampaignStatus,
    CampaignType,
    ChannelType,
    DeliveryStatus,
    RunStatus,
)


@pytest.fixture
def launch(campaign_service, segment_service, profile_client, approved_content, factory):
    """Create, schedule and launch an email campaign over `count` US customers"""

    async def _launch(count: int, batch_size: int = 10, **request_overrides):
        for customer in factory.make_customers(count, country="US"):
            profile_client.upsert(customer)
        segment = await segment_service.create_segment(factory.make_dynamic_segment_request())
        request = factory.make_campaign_request(
            segment_id=segment.segment_id,
            content_id=approved_content.content_id,
            batch_size=batch_size,
            **request_overrides,
        )
        campaign = await campaign_service.create_campaign(request)
        await campaign_service.schedule_campaign(campaign.campaign_id)
        return await campaign_service.launch_campaign(campaign.campaign_id)

    return _launch


class TestBatchExecution:
    """Batches over the pinned snapshot"""

    @pytest.mark.asyncio
    async def test_dispatches_all_batches_in_order(self, launch, campaign_service, email_adapter):
        campaign = await launch(25, batch_size=10)

        summary = await campaign_service.dispatch(campaign.campaign_id)

        assert summary.batch_indexes == [0, 1, 2]
        assert [b.sent for b in summary.batches] == [10, 10, 5]
        assert summary.status == CampaignStatus.COMPLETED
        assert email_adapter.recipients == [f"c{i:05d}" for i in range(1, 26)]

    @pytest.mark.asyncio
    async def test_max_batches_caps_one_call(self, launch, campaign_service):
        campaign = await launch(25, batch_size=10)

        first = await campaign_service.dispatch(campaign.campaign_id, max_batches=1)
        rest = await campaign_service.dispatch(campaign.campaign_id)

        assert first.batch_indexes == [0]
        assert first.status == CampaignStatus.ACTIVE
        assert rest.batch_indexes == [1, 2]

    @pytest.mark.asyncio
    async def test_ledger_records_every_recipient(self, launch, campaign_service):
        campaign = await launch(12, batch_size=5)
        await campaign_service.dispatch(campaign.campaign_id)

        ledger = await campaign_service.get_ledger(campaign.campaign_id, status=DeliveryStatus.SENT)

        assert len(ledger) == 12
        assert all(r.channel == ChannelType.EMAIL and r.attempts == 1 for r in ledger)
        assert len({r.idempotency_key for r in ledger}) == 12

    @pytest.mark.asyncio
    async def test_snapshot_pinned_for_whole_run(self, launch, campaign_service, segment_service, profile_client, factory, email_adapter):
        # Given: a run pinned at launch with 10 recipients
        campaign = await launch(10, batch_size=5)
        await campaign_service.dispatch(campaign.campaign_id, max_batches=1)

        # When: the segment grows and refreshes mid-run
        for customer in factory.make_customers(5, start=100, country="US"):
            profile_client.upsert(customer)
        await segment_service.refresh(campaign.segment_id)
        await campaign_service.dispatch(campaign.campaign_id)

        # Then: only the pinned members are sent to
        assert len(email_adapter.recipients) == 10
        assert "c00100" not in email_adapter.recipients

    @pytest.mark.asyncio
    async def test_renders_once_per_variant_and_channel(self, launch, campaign_service, content_client):
        campaign = await launch(20, batch_size=20)

        await campaign_service.dispatch(campaign.campaign_id)

        assert content_client.render_calls == [("cnt_welcome", "var_a", ChannelType.EMAIL)]

    @pytest.mark.asyncio
    async def test_sent_events_published_with_ledger_ids(self, launch, campaign_service, event_bus):
        campaign = await launch(3, batch_size=10)

        await campaign_service.dispatch(campaign.campaign_id)

        sent = event_bus.of_type("email.sent")
        assert len(sent) == 3
        run = await campaign_service.get_run(campaign.current_run_id)
        assert sent[0]["id"] == f"{campaign.campaign_id}:c00001:{run.batch_id(0)}:sent"
        assert sent[0]["campaign_id"] == campaign.campaign_id


class TestAtMostOnce:
    """Ledger claims prevent duplicate sends"""

    @pytest.mark.asyncio
    async def test_redispatching_a_batch_sends_nothing(
        self, launch, campaign_service, campaign_repository, segment_service, dispatcher, email_adapter
    ):
        campaign = await launch(10, batch_size=10)
        await campaign_service.dispatch(campaign.campaign_id)
        run = await campaign_service.get_run(campaign.current_run_id)
        snapshot = await segment_service.get_snapshot(run.segment_id, run.snapshot_version)

        # When: batch 0 is dispatched again
        current = await campaign_repository.get_campaign(campaign.campaign_id)
        result = await dispatcher.dispatch_batch(current, run, snapshot, 0)

        # Then: every recipient is already in the ledger
        assert result.already_dispatched == 10
        assert result.sent == 0
        assert len(email_adapter.sends) == 10

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, launch, campaign_service, email_adapter):
        email_adapter.transient["c00002"] = 2
        campaign = await launch(3, batch_size=10)

        await campaign_service.dispatch(campaign.campaign_id)

        ledger = await campaign_service.get_ledger(campaign.campaign_id)
        record = next(r for r in ledger if r.recipient_id == "c00002")
        assert record.status == DeliveryStatus.SENT
        assert record.attempts == 3
        assert email_adapter.recipients.count("c00002") == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted_marks_failed(self, launch, campaign_service, email_adapter):
        email_adapter.always_transient.add("c00003")
        campaign = await launch(4, batch_size=10)

        await campaign_service.dispatch(campaign.campaign_id)

        failed = await campaign_service.get_ledger(campaign.campaign_id, status=DeliveryStatus.FAILED)
        assert [(r.recipient_id, r.reason, r.attempts) for r in failed] == [("c00003", "retries_exhausted", 3)]

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, launch, campaign_service, email_adapter):
        email_adapter.failing.add("c00001")
        campaign = await launch(4, batch_size=10)

        await campaign_service.dispatch(campaign.campaign_id)

        failed = await campaign_service.get_ledger(campaign.campaign_id, status=DeliveryStatus.FAILED)
        assert [(r.recipient_id, r.reason, r.attempts) for r in failed] == [("c00001", "invalid_address", 1)]

    @pytest.mark.asyncio
    async def test_adapter_skip_recorded(self, launch, campaign_service, email_adapter):
        email_adapter.skipping.add("c00002")
        campaign = await launch(3, batch_size=10)

        summary = await campaign_service.dispatch(campaign.campaign_id)

        assert summary.batches[0].skipped == 1
        skipped = await campaign_service.get_ledger(campaign.campaign_id, status=DeliveryStatus.SKIPPED)
        assert skipped[0].reason == "unsubscribed"


class TestChannelFallback:
    """Multi-channel campaigns fall back in channel order"""

    @pytest.mark.asyncio
    async def test_falls_back_to_next_channel(self, launch, campaign_service, channel_adapters):
        channel_adapters[ChannelType.EMAIL].always_transient.add("c00001")
        campaign = await launch(
            2,
            batch_size=10,
            campaign_type=CampaignType.MULTI_CHANNEL,
            channels=[ChannelType.EMAIL, ChannelType.PUSH],
        )

        await campaign_service.dispatch(campaign.campaign_id)

        ledger = {r.recipient_id: r for r in await campaign_service.get_ledger(campaign.campaign_id)}
        assert ledger["c00001"].channel == ChannelType.PUSH
        assert ledger["c00001"].status == DeliveryStatus.SENT
        assert ledger["c00002"].channel == ChannelType.EMAIL
        assert channel_adapters[ChannelType.PUSH].recipients == ["c00001"]


class TestBudgetAndFailureRatio:
    """Run-level guards"""

    @pytest.mark.asyncio
    async def test_budget_caps_sends(self, launch, campaign_service, email_adapter):
        budget = CampaignBudget(total=Decimal("5"), cost_per_send=Decimal("1"))
        campaign = await launch(8, batch_size=10, budget=budget)

        summary = await campaign_service.dispatch(campaign.campaign_id)

        assert summary.batches[0].sent == 5
        assert summary.batches[0].skipped == 3
        skipped = await campaign_service.get_ledger(campaign.campaign_id, status=DeliveryStatus.SKIPPED)
        assert {r.reason for r in skipped} == {"budget_exhausted"}
        refreshed = await campaign_service.get_campaign(campaign.campaign_id)
        assert refreshed.budget.spent == Decimal("5")

    @pytest.mark.asyncio
    async def test_budget_spans_batches(self, launch, campaign_service, email_adapter):
        budget = CampaignBudget(total=Decimal("7"), cost_per_send=Decimal("1"))
        campaign = await launch(10, batch_size=5, budget=budget)

        await campaign_service.dispatch(campaign.campaign_id)

        assert len(email_adapter.sends) == 7

    @pytest.mark.asyncio
    async def test_failure_ratio_fails_campaign(self, launch, campaign_service, email_adapter):
        # Given: 6 of the first 10 recipients fail permanently
        email_adapter.failing.update(f"c{i:05d}" for i in range(1, 7))
        campaign = await launch(20, batch_size=10)

        summary = await campaign_service.dispatch(campaign.campaign_id)

        # Then: the campaign fails at the first batch boundary
        assert summary.batch_indexes == [0]
        failed = await campaign_service.get_campaign(campaign.campaign_id)
        assert failed.status == CampaignStatus.FAILED
        assert failed.failure_reason == "failure_ratio_exceeded"
        run = await campaign_service.get_run(failed.current_run_id)
        assert run.status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_segment_deleted_mid_run_fails_campaign(self, launch, campaign_service, segment_service, email_adapter):
        campaign = await launch(20, batch_size=10)
        await campaign_service.dispatch(campaign.campaign_id, max_batches=1)

        await segment_service.delete_segment(campaign.segment_id)
        await campaign_service.dispatch(campaign.campaign_id)

        failed = await campaign_service.get_campaign(campaign.campaign_id)
        assert failed.status == CampaignStatus.FAILED
        assert failed.failure_reason == "segment_deleted"
        assert len(email_adapter.sends) == 10
