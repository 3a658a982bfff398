"""
Services module.

Provides the dispatch business logic:
- Geo index of delivery partners (H3 or Redis)
- Partner scoring and ranking
- Assignment store, capacity ledger and engine
- Timeout sweeper
- Webhook notifications
"""
from courier_dispatch.services.assignment import (
    AssignmentEngine,
    AssignmentStore,
    EventPublisher,
    PartnerLedger,
    PartnerScorer,
    TimeoutSweeper,
)
from courier_dispatch.services.geo import H3PartnerIndex, RedisPartnerIndex, create_partner_index
from courier_dispatch.services.webhook_service import WebhookService

__all__ = [
    "AssignmentEngine",
    "AssignmentStore",
    "EventPublisher",
    "PartnerLedger",
    "PartnerScorer",
    "TimeoutSweeper",
    "H3PartnerIndex",
    "RedisPartnerIndex",
    "create_partner_index",
    "WebhookService",
]
