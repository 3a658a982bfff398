"""
Assignment sub-package.

Scoring, the assignment state machine, partner capacity accounting,
orchestration and the timeout sweeper.
"""

from courier_dispatch.services.assignment.engine import (
    AssignmentEngine,
    AssignmentRequest,
    AttemptOutcome,
    AttemptResult,
    RadiusPolicy,
    customer_message,
)
from courier_dispatch.services.assignment.events import (
    AssignmentEvent,
    AssignmentEventType,
    EventListener,
    EventPublisher,
    RecordingListener,
    WebhookListener,
    create_event_publisher,
)
from courier_dispatch.services.assignment.ledger import PartnerLedger, ReconciliationReport
from courier_dispatch.services.assignment.scoring import PartnerScore, PartnerScorer
from courier_dispatch.services.assignment.store import AssignmentStore, CancelOutcome, ExpiredLease
from courier_dispatch.services.assignment.sweeper import TimeoutSweeper

__all__ = [
    "AssignmentEngine",
    "AssignmentRequest",
    "AttemptOutcome",
    "AttemptResult",
    "RadiusPolicy",
    "customer_message",
    "AssignmentEvent",
    "AssignmentEventType",
    "EventListener",
    "EventPublisher",
    "RecordingListener",
    "WebhookListener",
    "create_event_publisher",
    "PartnerLedger",
    "ReconciliationReport",
    "PartnerScore",
    "PartnerScorer",
    "AssignmentStore",
    "CancelOutcome",
    "ExpiredLease",
    "TimeoutSweeper",
]
