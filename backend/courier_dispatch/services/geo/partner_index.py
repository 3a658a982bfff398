"""
Delivery partner geo index.

Keeps the last reported location and status of every delivery partner
and answers "which online partners are within R km of P". Two backends:

- H3PartnerIndex: in-process, Uber H3 hexagonal cells. A radius query
  expands a grid disk around the center cell, then filters by exact
  haversine distance.
- RedisPartnerIndex: Redis GEO set shared by every service instance,
  queried with GEOSEARCH.

The index does not guarantee recency. Callers that care pass
``max_age_seconds`` to drop stale reports.

Reference: https://h3geo.org/
"""

import enum
import json
import logging
import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional, Protocol

import h3
from redis.asyncio import Redis
from redis.exceptions import RedisError

from courier_dispatch.core.exceptions import DependencyException
from courier_dispatch.models.base import utcnow
from courier_dispatch.services.geo.geometry import GeoPoint, haversine_km

logger = logging.getLogger(__name__)


class PartnerAvailability(str, enum.Enum):
    """Availability reported by the partner client."""

    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    BREAK = "break"


@dataclass(frozen=True)
class PartnerPerformance:
    """Rolling performance figures of a partner."""

    acceptance_rate: float = 100.0  # percent
    avg_response_time_seconds: Optional[float] = 30.0
    avg_delivery_time_minutes: Optional[float] = None


@dataclass(frozen=True)
class DeliveryPartnerSnapshot:
    """Read model of a partner as last reported by the location feed."""

    partner_id: str
    location: GeoPoint
    reported_at: datetime
    availability_status: PartnerAvailability = PartnerAvailability.ONLINE
    performance: PartnerPerformance = field(default_factory=PartnerPerformance)
    current_load: int = 0
    max_concurrent_orders: int = 1

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reported_at"] = self.reported_at.isoformat()
        data["availability_status"] = self.availability_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryPartnerSnapshot":
        return cls(
            partner_id=data["partner_id"],
            location=GeoPoint(**data["location"]),
            reported_at=datetime.fromisoformat(data["reported_at"]),
            availability_status=PartnerAvailability(data["availability_status"]),
            performance=PartnerPerformance(**data.get("performance", {})),
            current_load=data.get("current_load", 0),
            max_concurrent_orders=data.get("max_concurrent_orders", 1),
        )


class PartnerIndex(Protocol):
    """Geo index contract used by the assignment engine."""

    async def upsert(self, snapshot: DeliveryPartnerSnapshot) -> None: ...

    async def remove(self, partner_id: str) -> bool: ...

    async def get(self, partner_id: str) -> Optional[DeliveryPartnerSnapshot]: ...

    async def set_availability(
        self,
        partner_id: str,
        status: PartnerAvailability,
    ) -> Optional[DeliveryPartnerSnapshot]: ...

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_km: float,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[DeliveryPartnerSnapshot]: ...


def _is_fresh(
    snapshot: DeliveryPartnerSnapshot,
    max_age_seconds: Optional[float],
    now: Optional[datetime],
) -> bool:
    if max_age_seconds is None:
        return True
    now = now or utcnow()
    return now - snapshot.reported_at <= timedelta(seconds=max_age_seconds)


class H3PartnerIndex:
    """
    In-memory H3 index of partner snapshots.

    Features:
    - O(1) cell lookup on upsert/remove
    - Radius queries over a grid disk sized from the resolution's edge length
    - Exact haversine filter on the cells' members
    """

    DEFAULT_RESOLUTION = 8  # ~0.46 km edge

    def __init__(self, resolution: int = DEFAULT_RESOLUTION):
        """
        Initialize H3 partner index.

        Args:
            resolution: H3 resolution (0-15, higher = more precise)
        """
        if not 0 <= resolution <= 15:
            raise ValueError(f"H3 resolution must be 0-15, got {resolution}")

        self.resolution = resolution
        self._edge_km = h3.average_hexagon_edge_length(resolution, unit="km")

        # h3 cell -> partner ids located in that cell
        self._cells: dict[str, set[str]] = defaultdict(set)

        # partner id -> (cell, snapshot)
        self._partners: dict[str, tuple[str, DeliveryPartnerSnapshot]] = {}

    def __len__(self) -> int:
        return len(self._partners)

    async def upsert(self, snapshot: DeliveryPartnerSnapshot) -> None:
        """Insert or move a partner."""
        cell = h3.latlng_to_cell(
            snapshot.location.latitude,
            snapshot.location.longitude,
            self.resolution,
        )

        previous = self._partners.get(snapshot.partner_id)
        if previous and previous[0] != cell:
            self._discard(previous[0], snapshot.partner_id)

        self._cells[cell].add(snapshot.partner_id)
        self._partners[snapshot.partner_id] = (cell, snapshot)

    async def remove(self, partner_id: str) -> bool:
        """
        Remove partner from index.

        Returns:
            True if partner was found and removed
        """
        entry = self._partners.pop(partner_id, None)
        if entry is None:
            return False
        self._discard(entry[0], partner_id)
        return True

    async def get(self, partner_id: str) -> Optional[DeliveryPartnerSnapshot]:
        entry = self._partners.get(partner_id)
        return entry[1] if entry else None

    async def set_availability(
        self,
        partner_id: str,
        status: PartnerAvailability,
    ) -> Optional[DeliveryPartnerSnapshot]:
        entry = self._partners.get(partner_id)
        if entry is None:
            return None
        updated = replace(entry[1], availability_status=status)
        self._partners[partner_id] = (entry[0], updated)
        return updated

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_km: float,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[DeliveryPartnerSnapshot]:
        """
        Online partners within ``radius_km`` of ``center``, nearest first.
        """
        k = self._rings_for_radius(radius_km)

        # A disk larger than the occupied cell set costs more than visiting
        # every occupied cell directly.
        if 3 * k * (k + 1) + 1 > len(self._cells):
            cells = list(self._cells.keys())
        else:
            origin = h3.latlng_to_cell(center.latitude, center.longitude, self.resolution)
            cells = h3.grid_disk(origin, k)

        found: list[tuple[float, str, DeliveryPartnerSnapshot]] = []
        for cell in cells:
            for partner_id in self._cells.get(cell, ()):
                snapshot = self._partners[partner_id][1]
                if snapshot.availability_status != PartnerAvailability.ONLINE:
                    continue
                if not _is_fresh(snapshot, max_age_seconds, now):
                    continue
                distance = haversine_km(center, snapshot.location)
                if distance <= radius_km:
                    found.append((distance, partner_id, snapshot))

        found.sort(key=lambda item: (item[0], item[1]))
        return [snapshot for _, _, snapshot in found]

    def get_statistics(self) -> dict:
        """Get index statistics."""
        occupied = [members for members in self._cells.values() if members]
        return {
            "resolution": self.resolution,
            "partners": len(self._partners),
            "cells_used": len(occupied),
            "max_partners_per_cell": max((len(m) for m in occupied), default=0),
            "edge_length_km": round(self._edge_km, 3),
        }

    def _rings_for_radius(self, radius_km: float) -> int:
        # Adjacent hexagon centers sit edge * sqrt(3) apart; using a smaller
        # step keeps the disk a superset despite cell-size variance.
        return max(1, math.ceil(radius_km / (self._edge_km * 1.2)) + 1)

    def _discard(self, cell: str, partner_id: str) -> None:
        members = self._cells.get(cell)
        if members is None:
            return
        members.discard(partner_id)
        if not members:
            del self._cells[cell]


class RedisPartnerIndex:
    """
    Partner index stored in Redis so all service instances share it.

    Layout:
    - ``{prefix}:geo``: GEO set holding only online partners
    - ``{prefix}:snapshot:{partner_id}``: JSON snapshot of every partner
    """

    def __init__(self, redis: Redis, key_prefix: str = "dispatch:partners"):
        self.redis = redis
        self.key_prefix = key_prefix

    @property
    def _geo_key(self) -> str:
        return f"{self.key_prefix}:geo"

    def _snapshot_key(self, partner_id: str) -> str:
        return f"{self.key_prefix}:snapshot:{partner_id}"

    async def upsert(self, snapshot: DeliveryPartnerSnapshot) -> None:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._snapshot_key(snapshot.partner_id), json.dumps(snapshot.to_dict()))
                if snapshot.availability_status == PartnerAvailability.ONLINE:
                    pipe.geoadd(
                        self._geo_key,
                        (snapshot.location.longitude, snapshot.location.latitude, snapshot.partner_id),
                    )
                else:
                    pipe.zrem(self._geo_key, snapshot.partner_id)
                await pipe.execute()
        except RedisError as e:
            raise DependencyException("partner index", str(e)) from e

    async def remove(self, partner_id: str) -> bool:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._geo_key, partner_id)
                pipe.delete(self._snapshot_key(partner_id))
                _, deleted = await pipe.execute()
        except RedisError as e:
            raise DependencyException("partner index", str(e)) from e
        return bool(deleted)

    async def get(self, partner_id: str) -> Optional[DeliveryPartnerSnapshot]:
        try:
            raw = await self.redis.get(self._snapshot_key(partner_id))
        except RedisError as e:
            raise DependencyException("partner index", str(e)) from e
        return DeliveryPartnerSnapshot.from_dict(json.loads(raw)) if raw else None

    async def set_availability(
        self,
        partner_id: str,
        status: PartnerAvailability,
    ) -> Optional[DeliveryPartnerSnapshot]:
        snapshot = await self.get(partner_id)
        if snapshot is None:
            return None
        updated = replace(snapshot, availability_status=status)
        await self.upsert(updated)
        return updated

    async def find_candidates(
        self,
        center: GeoPoint,
        radius_km: float,
        max_age_seconds: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> list[DeliveryPartnerSnapshot]:
        try:
            members = await self.redis.geosearch(
                self._geo_key,
                longitude=center.longitude,
                latitude=center.latitude,
                radius=radius_km,
                unit="km",
                sort="ASC",
            )
            if not members:
                return []
            raw_snapshots = await self.redis.mget(
                [self._snapshot_key(partner_id) for partner_id in members]
            )
        except RedisError as e:
            raise DependencyException("partner index", str(e)) from e

        candidates = []
        for raw in raw_snapshots:
            if not raw:
                continue
            snapshot = DeliveryPartnerSnapshot.from_dict(json.loads(raw))
            if snapshot.availability_status != PartnerAvailability.ONLINE:
                continue
            if _is_fresh(snapshot, max_age_seconds, now):
                candidates.append(snapshot)
        return candidates


def create_partner_index(
    backend: str = "h3",
    resolution: int = H3PartnerIndex.DEFAULT_RESOLUTION,
    redis: Optional[Redis] = None,
    key_prefix: str = "dispatch:partners",
) -> PartnerIndex:
    """
    Create the configured partner index.

    Args:
        backend: "h3" for the in-process index, "redis" for the shared one
        resolution: H3 resolution (h3 backend only)
        redis: Redis client (redis backend only)
    """
    if backend == "h3":
        return H3PartnerIndex(resolution)
    if backend == "redis":
        if redis is None:
            raise ValueError("Redis client required for the redis partner index")
        return RedisPartnerIndex(redis, key_prefix)
    raise ValueError(f"Unknown partner index backend: {backend}")
