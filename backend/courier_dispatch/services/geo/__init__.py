"""
Geo sub-package.

Contains the partner location index and geographic helpers.
"""

from courier_dispatch.services.geo.geometry import GeoPoint, haversine_km
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    H3PartnerIndex,
    PartnerAvailability,
    PartnerIndex,
    PartnerPerformance,
    RedisPartnerIndex,
    create_partner_index,
)

__all__ = [
    "GeoPoint",
    "haversine_km",
    "DeliveryPartnerSnapshot",
    "PartnerAvailability",
    "PartnerPerformance",
    "PartnerIndex",
    "H3PartnerIndex",
    "RedisPartnerIndex",
    "create_partner_index",
]
