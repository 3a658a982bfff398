"""
Wiring of the dispatch services.

The API process builds one ``DispatchServices`` at startup; Celery tasks
build their own per run.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courier_dispatch.core.config import Settings
from courier_dispatch.models.base import utcnow
from courier_dispatch.services.assignment.engine import AssignmentEngine
from courier_dispatch.services.assignment.events import EventPublisher, create_event_publisher
from courier_dispatch.services.assignment.ledger import PartnerLedger
from courier_dispatch.services.assignment.store import AssignmentStore
from courier_dispatch.services.assignment.sweeper import TimeoutSweeper
from courier_dispatch.services.geo.partner_index import PartnerIndex, create_partner_index

logger = logging.getLogger(__name__)


@dataclass
class DispatchServices:
    """Everything the routes and tasks need."""

    index: PartnerIndex
    store: AssignmentStore
    ledger: PartnerLedger
    publisher: EventPublisher
    engine: AssignmentEngine
    sweeper: TimeoutSweeper


def build_dispatch_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Optional[Redis] = None,
    index: Optional[PartnerIndex] = None,
    publisher: Optional[EventPublisher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchServices:
    """
    Build the dispatch services from settings.

    Args:
        settings: Application settings
        session_factory: Async session factory for the store and ledger
        redis: Redis client, required for the redis geo index
        index: Partner index to use instead of the configured one
        publisher: Event publisher to use instead of the webhook one
        clock: Source of "now" shared by every component
    """
    if index is None:
        index = create_partner_index(
            backend=settings.GEO_INDEX_BACKEND,
            resolution=settings.H3_RESOLUTION,
            redis=redis,
            key_prefix=settings.PARTNER_INDEX_KEY_PREFIX,
        )
    if settings.SWEEPER_MODE == "celery" and settings.GEO_INDEX_BACKEND != "redis":
        logger.warning(
            "SWEEPER_MODE=celery with an in-process geo index: "
            "re-attempts made by workers will find no partners"
        )

    store = AssignmentStore(session_factory, clock=clock)
    ledger = PartnerLedger(session_factory, clock=clock)
    publisher = publisher or create_event_publisher()
    engine = AssignmentEngine.from_settings(
        settings,
        store=store,
        ledger=ledger,
        index=index,
        publisher=publisher,
        clock=clock,
    )
    sweeper = TimeoutSweeper(
        engine,
        batch_size=settings.SWEEPER_BATCH_SIZE,
        pending_retry_seconds=settings.PENDING_RETRY_SECONDS,
        clock=clock,
    )
    return DispatchServices(
        index=index,
        store=store,
        ledger=ledger,
        publisher=publisher,
        engine=engine,
        sweeper=sweeper,
    )
