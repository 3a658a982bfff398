"""
Delivery partner capacity model.

Only the load accounting of a partner lives here. Location, availability
and performance arrive from the partner-location feed and are kept in
the geo index.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from courier_dispatch.core.database import Base
from courier_dispatch.models.base import utcnow


class PartnerCapacity(Base):
    """Concurrent-order capacity of one delivery partner."""

    __tablename__ = "partner_capacity"

    partner_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    max_concurrent_orders: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_load: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    claims: Mapped[list["PartnerOrderClaim"]] = relationship(
        "PartnerOrderClaim",
        back_populates="partner",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("current_load >= 0", name="ck_partner_capacity_load_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<PartnerCapacity {self.partner_id} {self.current_load}/{self.max_concurrent_orders}>"


class PartnerOrderClaim(Base):
    """One attempt on an order counted against a partner's capacity."""

    __tablename__ = "partner_order_claims"

    partner_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("partner_capacity.partner_id", ondelete="CASCADE"),
        primary_key=True,
    )
    order_id: Mapped[str] = mapped_column(String(100), primary_key=True, index=True)
    attempt: Mapped[int] = mapped_column(Integer, primary_key=True)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    partner: Mapped["PartnerCapacity"] = relationship(
        "PartnerCapacity",
        back_populates="claims",
    )

    def __repr__(self) -> str:
        return f"<PartnerOrderClaim {self.partner_id}:{self.order_id}#{self.attempt}>"
