"""
Delivery partner scoring.

Score (0-100) is the sum of four clamped terms:

    distance        max(0, 40 - distance_km * 4)                 0-40
    acceptance      acceptance_rate / 100 * 25                   0-25
    responsiveness  max(0, 20 - avg_response_seconds / 30 * 20)  0-20
    load            max(0, 15 - current_load * 5)                0-15

Ineligible partners (at capacity, or not online) score 0.
"""
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from courier_dispatch.services.geo.geometry import GeoPoint, haversine_km
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    PartnerAvailability,
)

REASON_AT_CAPACITY = "at capacity"
REASON_NOT_AVAILABLE = "not available"

DEFAULT_RESPONSE_TIME_SECONDS = 30.0


@dataclass(frozen=True)
class PartnerScore:
    """Scoring result for one partner."""

    partner_id: str
    score: int
    distance_km: float
    eligible: bool
    current_load: int
    reason: Optional[str] = None

    def sort_key(self) -> tuple[int, float, str]:
        """Descending score, then nearer, then lower partner id."""
        return (-self.score, self.distance_km, self.partner_id)

    def to_dict(self) -> dict:
        return {
            "partner_id": self.partner_id,
            "score": self.score,
            "distance_km": round(self.distance_km, 2),
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PartnerScorer:
    """Pure scoring and ranking of partner snapshots."""

    DISTANCE_WEIGHT = 40.0
    DISTANCE_PENALTY_PER_KM = 4.0
    ACCEPTANCE_WEIGHT = 25.0
    RESPONSE_WEIGHT = 20.0
    RESPONSE_WINDOW_SECONDS = 30.0
    LOAD_WEIGHT = 15.0
    LOAD_PENALTY_PER_ORDER = 5.0

    def score(
        self,
        snapshot: DeliveryPartnerSnapshot,
        restaurant_location: GeoPoint,
    ) -> PartnerScore:
        distance_km = haversine_km(snapshot.location, restaurant_location)

        reason = None
        if snapshot.current_load >= snapshot.max_concurrent_orders:
            reason = REASON_AT_CAPACITY
        elif snapshot.availability_status != PartnerAvailability.ONLINE:
            reason = REASON_NOT_AVAILABLE

        if reason:
            return PartnerScore(
                partner_id=snapshot.partner_id,
                score=0,
                distance_km=distance_km,
                eligible=False,
                current_load=snapshot.current_load,
                reason=reason,
            )

        performance = snapshot.performance
        response_seconds = performance.avg_response_time_seconds
        if response_seconds is None:
            response_seconds = DEFAULT_RESPONSE_TIME_SECONDS

        distance_term = max(0.0, self.DISTANCE_WEIGHT - distance_km * self.DISTANCE_PENALTY_PER_KM)
        acceptance_term = max(0.0, min(performance.acceptance_rate, 100.0) / 100.0 * self.ACCEPTANCE_WEIGHT)
        response_term = max(
            0.0,
            self.RESPONSE_WEIGHT - (response_seconds / self.RESPONSE_WINDOW_SECONDS) * self.RESPONSE_WEIGHT,
        )
        load_term = max(0.0, self.LOAD_WEIGHT - snapshot.current_load * self.LOAD_PENALTY_PER_ORDER)

        return PartnerScore(
            partner_id=snapshot.partner_id,
            score=_round_half_up(distance_term + acceptance_term + response_term + load_term),
            distance_km=distance_km,
            eligible=True,
            current_load=snapshot.current_load,
        )

    def rank(
        self,
        snapshots: Iterable[DeliveryPartnerSnapshot],
        restaurant_location: GeoPoint,
    ) -> list[PartnerScore]:
        """Eligible partners, best first."""
        scored = (self.score(s, restaurant_location) for s in snapshots)
        return sorted((s for s in scored if s.eligible), key=PartnerScore.sort_key)
