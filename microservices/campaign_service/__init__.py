"""
Campaign Engine

Campaign automation and segmentation worker providing:
- Segment evaluation against criteria trees with versioned snapshots
- Campaign lifecycle with batched, idempotent multi-channel dispatch
- Event-triggered workflows persisted as resumable state machines
- Idempotent metric rollups with replay and conversion attribution

Port: 8240
"""

__version__ = "1.0.0"
__service__ = "campaign_engine"
