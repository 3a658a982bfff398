"""
Tests for the partner geo index.

Tests cover:
- GeoPoint validation and haversine distance
- H3PartnerIndex operations (upsert, move, remove, radius query)
- RedisPartnerIndex against a mocked client
- create_partner_index factory
"""
import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from courier_dispatch.core.exceptions import DependencyException
from courier_dispatch.services.geo.geometry import GeoPoint, haversine_km
from courier_dispatch.services.geo.partner_index import (
    DeliveryPartnerSnapshot,
    H3PartnerIndex,
    PartnerAvailability,
    RedisPartnerIndex,
    create_partner_index,
)

from conftest import RESTAURANT, point_north_of


class TestGeometry:
    """Tests for geographic primitives."""

    def test_haversine_zero(self):
        assert haversine_km(RESTAURANT, RESTAURANT) == 0.0

    def test_haversine_one_km_north(self):
        assert haversine_km(RESTAURANT, point_north_of(RESTAURANT, 1.0)) == pytest.approx(1.0, abs=1e-6)

    def test_haversine_known_distance(self):
        """Test Tashkent to Samarkand (~266 km)."""
        tashkent = GeoPoint(41.2995, 69.2401)
        samarkand = GeoPoint(39.6270, 66.9750)

        assert haversine_km(tashkent, samarkand) == pytest.approx(266, rel=0.02)

    @pytest.mark.parametrize("lat,lon", [(91.0, 0.0), (-90.5, 0.0), (0.0, 181.0), (0.0, -180.5)])
    def test_invalid_coordinates(self, lat, lon):
        with pytest.raises(ValueError):
            GeoPoint(lat, lon)


class TestH3PartnerIndex:
    """Tests for the in-process H3 index."""

    @pytest.fixture
    def index(self) -> H3PartnerIndex:
        return H3PartnerIndex(resolution=8)

    def test_invalid_resolution(self):
        with pytest.raises(ValueError):
            H3PartnerIndex(resolution=16)

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, index, make_partner):
        snapshot = make_partner("p1")

        await index.upsert(snapshot)

        assert len(index) == 1
        assert await index.get("p1") == snapshot
        assert await index.get("unknown") is None

    @pytest.mark.asyncio
    async def test_radius_query_nearest_first(self, index, make_partner):
        for partner_id, km in (("p3", 3.0), ("p1", 0.5), ("p2", 1.5), ("far", 9.0)):
            await index.upsert(make_partner(partner_id, km=km))

        found = await index.find_candidates(RESTAURANT, 5.0)

        assert [s.partner_id for s in found] == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_radius_boundary(self, index, make_partner):
        await index.upsert(make_partner("inside", km=4.99))
        await index.upsert(make_partner("outside", km=5.01))

        found = await index.find_candidates(RESTAURANT, 5.0)

        assert [s.partner_id for s in found] == ["inside"]

    @pytest.mark.asyncio
    async def test_many_partners_small_radius(self, index, make_partner):
        """Test a small radius among many occupied cells."""
        for i in range(60):
            await index.upsert(make_partner(f"p{i:02d}", km=i * 0.5))

        found = await index.find_candidates(RESTAURANT, 2.2)

        assert [s.partner_id for s in found] == ["p00", "p01", "p02", "p03", "p04"]

    @pytest.mark.asyncio
    async def test_move_partner(self, index, make_partner):
        await index.upsert(make_partner("p1", km=1.0))
        await index.upsert(make_partner("p1", km=20.0))

        assert await index.find_candidates(RESTAURANT, 5.0) == []
        assert len(index) == 1
        assert index.get_statistics()["cells_used"] == 1

    @pytest.mark.asyncio
    async def test_remove(self, index, make_partner):
        await index.upsert(make_partner("p1"))

        assert await index.remove("p1") is True
        assert await index.remove("p1") is False
        assert await index.find_candidates(RESTAURANT, 5.0) == []
        assert index.get_statistics()["cells_used"] == 0

    @pytest.mark.asyncio
    async def test_only_online_partners(self, index, make_partner):
        await index.upsert(make_partner("online"))
        await index.upsert(make_partner("busy", availability_status=PartnerAvailability.BUSY))
        await index.upsert(make_partner("break", availability_status=PartnerAvailability.BREAK))
        await index.upsert(make_partner("offline", availability_status=PartnerAvailability.OFFLINE))

        found = await index.find_candidates(RESTAURANT, 5.0)

        assert [s.partner_id for s in found] == ["online"]

    @pytest.mark.asyncio
    async def test_set_availability(self, index, make_partner):
        await index.upsert(make_partner("p1"))

        updated = await index.set_availability("p1", PartnerAvailability.BUSY)

        assert updated.availability_status == PartnerAvailability.BUSY
        assert await index.find_candidates(RESTAURANT, 5.0) == []
        assert await index.set_availability("unknown", PartnerAvailability.BUSY) is None

    @pytest.mark.asyncio
    async def test_stale_reports_filtered(self, index, make_partner, clock):
        await index.upsert(make_partner("stale", reported_at=clock.now - timedelta(minutes=10)))
        await index.upsert(make_partner("fresh"))

        found = await index.find_candidates(RESTAURANT, 5.0, max_age_seconds=120, now=clock.now)
        everyone = await index.find_candidates(RESTAURANT, 5.0)

        assert [s.partner_id for s in found] == ["fresh"]
        assert len(everyone) == 2

    @pytest.mark.asyncio
    async def test_statistics(self, index, make_partner):
        await index.upsert(make_partner("p1", km=1.0))
        await index.upsert(make_partner("p2", km=1.0))

        stats = index.get_statistics()

        assert stats["resolution"] == 8
        assert stats["partners"] == 2
        assert stats["max_partners_per_cell"] == 2
        assert stats["edge_length_km"] > 0


class TestRedisPartnerIndex:
    """Tests for the Redis GEO index."""

    @pytest.fixture
    def index(self, mock_redis_client) -> RedisPartnerIndex:
        return RedisPartnerIndex(mock_redis_client, key_prefix="test:partners")

    @pytest.mark.asyncio
    async def test_upsert_online(self, index, mock_redis_client, make_partner):
        await index.upsert(make_partner("p1"))

        pipe = mock_redis_client.pipeline.return_value
        pipe.set.assert_called_once()
        assert pipe.set.call_args[0][0] == "test:partners:snapshot:p1"
        pipe.geoadd.assert_called_once()
        assert pipe.geoadd.call_args[0][0] == "test:partners:geo"
        pipe.zrem.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_offline_leaves_geo_set(self, index, mock_redis_client, make_partner):
        await index.upsert(make_partner("p1", availability_status=PartnerAvailability.OFFLINE))

        pipe = mock_redis_client.pipeline.return_value
        pipe.zrem.assert_called_once_with("test:partners:geo", "p1")
        pipe.geoadd.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_round_trip(self, index, mock_redis_client, make_partner):
        snapshot = make_partner("p1", acceptance_rate=92.0)
        mock_redis_client.get.return_value = json.dumps(snapshot.to_dict())

        assert await index.get("p1") == snapshot

    @pytest.mark.asyncio
    async def test_find_candidates(self, index, mock_redis_client, make_partner, clock):
        near = make_partner("near", km=1.0)
        busy = make_partner("busy", km=1.5, availability_status=PartnerAvailability.BUSY)
        stale = make_partner("stale", km=2.0, reported_at=clock.now - timedelta(hours=1))
        mock_redis_client.geosearch.return_value = ["near", "busy", "stale", "gone"]
        mock_redis_client.mget.return_value = [
            json.dumps(near.to_dict()),
            json.dumps(busy.to_dict()),
            json.dumps(stale.to_dict()),
            None,
        ]

        found = await index.find_candidates(RESTAURANT, 5.0, max_age_seconds=60, now=clock.now)

        assert [s.partner_id for s in found] == ["near"]
        kwargs = mock_redis_client.geosearch.call_args.kwargs
        assert kwargs["radius"] == 5.0
        assert kwargs["unit"] == "km"
        assert kwargs["sort"] == "ASC"

    @pytest.mark.asyncio
    async def test_find_candidates_empty(self, index, mock_redis_client):
        assert await index.find_candidates(RESTAURANT, 5.0) == []
        mock_redis_client.mget.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_error_is_dependency_error(self, index, mock_redis_client):
        mock_redis_client.geosearch.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(DependencyException) as exc_info:
            await index.find_candidates(RESTAURANT, 5.0)

        assert exc_info.value.dependency == "partner index"
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_remove(self, index, mock_redis_client):
        assert await index.remove("p1") is True


class TestSnapshotSerialization:
    """Tests for snapshot dict conversion."""

    def test_to_dict(self, make_partner):
        data = make_partner("p1").to_dict()

        assert data["partner_id"] == "p1"
        assert data["availability_status"] == "online"
        assert isinstance(data["reported_at"], str)
        assert data["performance"]["acceptance_rate"] == 100.0

    def test_from_dict_defaults(self, clock):
        snapshot = DeliveryPartnerSnapshot.from_dict(
            {
                "partner_id": "p1",
                "location": {"latitude": 12.97, "longitude": 77.59},
                "reported_at": clock.now.isoformat(),
                "availability_status": "busy",
            }
        )

        assert snapshot.availability_status == PartnerAvailability.BUSY
        assert snapshot.max_concurrent_orders == 1
        assert snapshot.performance.acceptance_rate == 100.0


class TestCreatePartnerIndex:
    """Tests for the index factory."""

    def test_h3_default(self):
        assert isinstance(create_partner_index(), H3PartnerIndex)

    def test_redis(self, mock_redis_client):
        assert isinstance(create_partner_index("redis", redis=mock_redis_client), RedisPartnerIndex)

    def test_redis_requires_client(self):
        with pytest.raises(ValueError):
            create_partner_index("redis")

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_partner_index("quadtree")
