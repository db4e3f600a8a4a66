"""
Campaign Engine Clients

HTTP clients for the engine's collaborators.
"""

from .channel_client import ChannelGatewayAdapter
from .content_client import ContentClient
from .profile_client import ProfileClient
from .webhook_client import WebhookClient

__all__ = [
    "ChannelGatewayAdapter",
    "ContentClient",
    "ProfileClient",
    "WebhookClient",
]
