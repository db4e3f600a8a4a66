"""
Unit Tests: Campaign Lifecycle Transitions

Tests the campaign state machine table and channel rules of the Campaign
model.
"""

import pytest
from pydantic import ValidationError

from microservices.campaign_service.campaign_service import CampaignService
from microservices.campaign_service.models import (
    Campaign,
    CampaignStatus,
    CampaignType,
    ChannelType,
)


@pytest.fixture
def service():
    """CampaignService for pure transition checks; no collaborators touched"""
    return CampaignService(repository=None, segments=None, content_client=None, dispatcher=None)


class TestValidTransitions:
    """VALID_TRANSITIONS table"""

    @pytest.mark.parametrize("current,target", [
        (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED),
        (CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE),
        (CampaignStatus.ACTIVE, CampaignStatus.PAUSED),
        (CampaignStatus.PAUSED, CampaignStatus.ACTIVE),
        (CampaignStatus.ACTIVE, CampaignStatus.COMPLETED),
        (CampaignStatus.PAUSED, CampaignStatus.COMPLETED),
    ])
    def test_allowed(self, service, current, target):
        assert service._validate_state_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (CampaignStatus.DRAFT, CampaignStatus.ACTIVE),
        (CampaignStatus.SCHEDULED, CampaignStatus.PAUSED),
        (CampaignStatus.COMPLETED, CampaignStatus.ACTIVE),
        (CampaignStatus.FAILED, CampaignStatus.SCHEDULED),
        (CampaignStatus.DRAFT, CampaignStatus.COMPLETED),
    ])
    def test_rejected(self, service, current, target):
        assert not service._validate_state_transition(current, target)

    def test_every_non_terminal_state_can_fail(self, service):
        for status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.ACTIVE, CampaignStatus.PAUSED):
            assert service._validate_state_transition(status, CampaignStatus.FAILED)

    def test_terminal_states_have_no_exits(self):
        assert CampaignService.VALID_TRANSITIONS[CampaignStatus.COMPLETED] == []
        assert CampaignService.VALID_TRANSITIONS[CampaignStatus.FAILED] == []


class TestCampaignChannels:
    """Campaign type decides the channel list"""

    def test_single_channel_type_defaults_its_channel(self):
        campaign = Campaign(name="SMS", campaign_type=CampaignType.SMS, segment_id="seg_1", content_id="cnt_1")
        assert campaign.channels == [ChannelType.SMS]

    def test_single_channel_type_rejects_other_channels(self):
        with pytest.raises(ValidationError):
            Campaign(
                name="SMS",
                campaign_type=CampaignType.SMS,
                channels=[ChannelType.EMAIL],
                segment_id="seg_1",
                content_id="cnt_1",
            )

    def test_multi_channel_requires_channels(self):
        with pytest.raises(ValidationError):
            Campaign(name="Multi", campaign_type=CampaignType.MULTI_CHANNEL, segment_id="seg_1", content_id="cnt_1")

    def test_multi_channel_keeps_fallback_order(self):
        campaign = Campaign(
            name="Multi",
            campaign_type=CampaignType.MULTI_CHANNEL,
            channels=[ChannelType.PUSH, ChannelType.EMAIL],
            segment_id="seg_1",
            content_id="cnt_1",
        )
        assert campaign.channels == [ChannelType.PUSH, ChannelType.EMAIL]
        assert campaign.status == CampaignStatus.DRAFT
