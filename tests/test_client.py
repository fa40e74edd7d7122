"""Tests for the BusTrack client."""

import io
import tempfile
import unittest
import zipfile
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack.cache import CacheManager, DiskCache
from bustrack.client import BusTrackClient
from bustrack.config import ClientConfig, Endpoints
from bustrack.errors import NotFoundError, ParseError, StaticDataError, TransportError
from bustrack.gtfs_loader import GTFSLoader
from bustrack.models import (
    Alert,
    Coordinate,
    StopTimeUpdate,
    TimeEvent,
    TimeRange,
    TripDescriptor,
    TripUpdate,
    Vehicle,
    VehiclePosition,
)

MADRID = ZoneInfo("Europe/Madrid")
# Monday
NOW = datetime(2024, 1, 15, 14, 0, tzinfo=MADRID)

TABLES = {
    "stops.txt": """stop_id,stop_name,stop_lat,stop_lon
100,Covaresa,41.6100,-4.7400
123,Plaza Zorrilla,41.6523,-4.7245
124,Plaza Mayor,41.6520,-4.7286
""",
    "routes.txt": """route_id,route_short_name,route_long_name,route_type
L1,1,Covaresa - Barrio España,3
""",
    "trips.txt": """route_id,service_id,trip_id,trip_headsign
L1,WEEKDAY,T1,Barrio España
L1,WEEKEND,T2,Barrio España
L1,WEEKDAY,T3,Barrio España
L9,WEEKDAY,T9,Nowhere
""",
    "stop_times.txt": """trip_id,arrival_time,departure_time,stop_id,stop_sequence
T1,14:00:00,14:00:00,100,1
T1,14:29:00,14:30:00,123,5
T1,14:35:00,14:35:00,124,6
T2,14:15:00,14:15:00,100,1
T2,14:45:00,14:45:00,123,5
T3,14:40:00,14:40:00,100,1
T3,15:10:00,15:10:00,123,5
T9,15:00:00,15:00:00,123,2
""",
    "calendar.txt": """service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date
WEEKDAY,1,1,1,1,1,0,0,20240101,20241231
WEEKEND,0,0,0,0,0,1,1,20240101,20241231
""",
}


def _zip_tables(tables):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in tables.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def _t1_update(delay=120):
    return TripUpdate(
        id="tu-T1",
        trip=TripDescriptor(trip_id="T1", route_id="L1"),
        timestamp=NOW,
        stop_time_updates=[StopTimeUpdate(stop_sequence=5, departure=TimeEvent(delay=delay))],
    )


def _mock_realtime(trip_updates=(), vehicle_positions=()):
    realtime = MagicMock()
    realtime.fetch_trip_updates = AsyncMock(return_value=list(trip_updates))
    realtime.fetch_vehicle_positions = AsyncMock(return_value=list(vehicle_positions))
    realtime.fetch_alerts = AsyncMock(return_value=[])
    realtime.fetch_active_alerts = AsyncMock(return_value=[])
    realtime.find_nearby_vehicles = AsyncMock(return_value=[])
    realtime.close = AsyncMock()
    return realtime


class ClientTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = GTFSLoader(MADRID)
        self.store.load_from_tables(TABLES)
        self.realtime = _mock_realtime()
        self.client = BusTrackClient(store=self.store, realtime=self.realtime)

    async def asyncTearDown(self):
        await self.client.close()


class TestNextArrivals(ClientTestCase):
    """Test get_next_arrivals."""

    async def test_scheduled_and_realtime_combined(self):
        self.realtime.fetch_trip_updates.return_value = [_t1_update(delay=120)]

        arrivals = await self.client.get_next_arrivals("123", limit=5, now=NOW)

        self.assertEqual([a.trip.id for a in arrivals], ["T1", "T3"])
        first = arrivals[0]
        self.assertEqual(first.scheduled_time, datetime(2024, 1, 15, 14, 30, tzinfo=MADRID))
        self.assertEqual(first.estimated_time, datetime(2024, 1, 15, 14, 32, tzinfo=MADRID))
        self.assertEqual(first.delay, 120)
        self.assertTrue(first.realtime_available)
        self.assertFalse(arrivals[1].realtime_available)

    async def test_inactive_service_is_filtered(self):
        # T2 runs on weekends only
        arrivals = await self.client.get_next_arrivals("123", now=NOW)
        self.assertNotIn("T2", [a.trip.id for a in arrivals])

        saturday = datetime(2024, 1, 20, 14, 0, tzinfo=MADRID)
        arrivals = await self.client.get_next_arrivals("123", now=saturday)
        self.assertEqual([a.trip.id for a in arrivals], ["T2"])

    async def test_limit(self):
        arrivals = await self.client.get_next_arrivals("123", limit=1, now=NOW)
        self.assertEqual([a.trip.id for a in arrivals], ["T1"])

    async def test_past_departures_are_excluded(self):
        later = datetime(2024, 1, 15, 14, 31, tzinfo=MADRID)
        arrivals = await self.client.get_next_arrivals("123", now=later)
        self.assertEqual([a.trip.id for a in arrivals], ["T3"])

    async def test_transport_error_falls_back_to_schedule(self):
        self.realtime.fetch_trip_updates.side_effect = TransportError("HTTP 503", status_code=503)

        arrivals = await self.client.get_next_arrivals("123", now=NOW)

        self.assertEqual([a.trip.id for a in arrivals], ["T1", "T3"])
        for arrival in arrivals:
            self.assertFalse(arrival.realtime_available)
            self.assertIsNone(arrival.estimated_time)

    async def test_parse_error_falls_back_to_schedule(self):
        self.realtime.fetch_trip_updates.side_effect = ParseError.missing_field("header")

        arrivals = await self.client.get_next_arrivals("123", now=NOW)

        self.assertEqual(len(arrivals), 2)
        self.assertFalse(any(a.realtime_available for a in arrivals))

    async def test_unknown_stop_returns_empty(self):
        self.assertEqual(await self.client.get_next_arrivals("999", now=NOW), [])

    async def test_naive_now_is_taken_as_local_time(self):
        arrivals = await self.client.get_next_arrivals("123", now=datetime(2024, 1, 15, 14, 31))
        self.assertEqual([a.trip.id for a in arrivals], ["T3"])


class TestTripDetails(ClientTestCase):
    """Test get_trip_details."""

    async def test_trip_with_vehicle(self):
        vehicle = VehiclePosition(
            id="v1",
            vehicle=Vehicle(id="1234"),
            position=Coordinate(41.6523, -4.7245),
            timestamp=NOW,
            trip=TripDescriptor(trip_id="T1", route_id="L1"),
            current_stop_sequence=2,
        )
        self.realtime.fetch_trip_updates.return_value = [_t1_update(delay=60)]
        self.realtime.fetch_vehicle_positions.return_value = [vehicle]

        details = await self.client.get_trip_details("T1", now=NOW)

        self.assertEqual(details.trip.id, "T1")
        self.assertEqual(details.route.id, "L1")
        self.assertEqual(details.stop_count, 3)
        self.assertEqual(details.delay, 60)
        self.assertTrue(details.realtime_available)
        self.assertEqual(details.vehicle_position, vehicle)
        self.assertAlmostEqual(details.progress, 2 / 3)

    async def test_realtime_failure_gives_schedule_only(self):
        self.realtime.fetch_vehicle_positions.side_effect = TransportError("timeout")

        details = await self.client.get_trip_details("T1", now=NOW)

        self.assertEqual(details.stop_count, 3)
        self.assertFalse(details.realtime_available)
        self.assertIsNone(details.vehicle_position)
        self.assertIsNone(details.progress)

    async def test_vehicle_failure_keeps_trip_update(self):
        self.realtime.fetch_trip_updates.return_value = [_t1_update(delay=60)]
        self.realtime.fetch_vehicle_positions.side_effect = TransportError("HTTP 502", status_code=502)

        details = await self.client.get_trip_details("T1", now=NOW)

        self.assertTrue(details.realtime_available)
        self.assertEqual(details.delay, 60)
        self.assertIsNone(details.vehicle_position)
        self.assertIsNone(details.progress)

    async def test_trip_update_failure_keeps_vehicle(self):
        vehicle = VehiclePosition(
            id="v1",
            vehicle=Vehicle(id="1234"),
            position=Coordinate(41.6523, -4.7245),
            timestamp=NOW,
            trip=TripDescriptor(trip_id="T1", route_id="L1"),
            current_stop_sequence=3,
        )
        self.realtime.fetch_trip_updates.side_effect = ParseError.invalid_encoding()
        self.realtime.fetch_vehicle_positions.return_value = [vehicle]

        details = await self.client.get_trip_details("T1", now=NOW)

        self.assertFalse(details.realtime_available)
        self.assertEqual(details.vehicle_position, vehicle)
        self.assertAlmostEqual(details.progress, 1.0)

    async def test_unknown_trip(self):
        with self.assertRaises(NotFoundError) as ctx:
            await self.client.get_trip_details("NOPE")
        self.assertEqual(ctx.exception.entity, "Trip")

    async def test_trip_with_unknown_route(self):
        with self.assertRaises(NotFoundError) as ctx:
            await self.client.get_trip_details("T9")
        self.assertEqual(ctx.exception.entity, "Route")
        self.assertEqual(ctx.exception.identifier, "L9")


class TestStaticLookups(ClientTestCase):
    """Test stop and route lookups."""

    def test_get_stop(self):
        self.assertEqual(self.client.get_stop("123").name, "Plaza Zorrilla")
        with self.assertRaises(NotFoundError):
            self.client.get_stop("999")

    def test_get_route(self):
        self.assertEqual(self.client.get_route("L1").short_name, "1")
        with self.assertRaises(NotFoundError):
            self.client.get_route("L9")

    def test_search_and_nearby(self):
        self.assertEqual([s.id for s in self.client.search_stops("plaza")], ["124", "123"])
        nearby = self.client.find_nearby_stops(Coordinate(41.6523, -4.7245), radius_meters=100)
        self.assertEqual([s.id for s in nearby], ["123"])
        self.assertEqual([r.id for r in self.client.get_routes_for_stop("123")], ["L1"])

    async def test_realtime_pass_through_propagates_errors(self):
        self.realtime.fetch_alerts.side_effect = TransportError("down")
        with self.assertRaises(TransportError):
            await self.client.fetch_alerts(route_id="L1")
        self.realtime.fetch_alerts.assert_awaited_once_with("L1", None)


class TestLoadStaticData(unittest.IsolatedAsyncioTestCase):
    """Test downloading and caching the static archive."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.config = ClientConfig(
            timezone="Europe/Madrid",
            endpoints=Endpoints(static_data="http://test/GTFSFile"),
            timeout=5,
        )

    def tearDown(self):
        self._tmp.cleanup()

    def _client(self, cache=None):
        return BusTrackClient(config=self.config, realtime=_mock_realtime(), cache=cache)

    @patch("bustrack.client.download")
    async def test_downloads_and_loads(self, mock_download):
        mock_download.return_value = _zip_tables(TABLES)
        client = self._client()

        await client.load_static_data()

        mock_download.assert_called_once_with("http://test/GTFSFile", 5)
        self.assertTrue(client.store.is_loaded)
        self.assertEqual(client.get_stop("123").name, "Plaza Zorrilla")

        # Already loaded: no second download
        await client.load_static_data()
        self.assertEqual(mock_download.call_count, 1)
        await client.close()

    @patch("bustrack.client.download")
    async def test_archive_is_served_from_cache(self, mock_download):
        mock_download.return_value = _zip_tables(TABLES)
        cache = CacheManager(disk=DiskCache(self._tmp.name))

        await self._client(cache).load_static_data()
        second = self._client(CacheManager(disk=DiskCache(self._tmp.name)))
        await second.load_static_data()

        mock_download.assert_called_once()
        self.assertTrue(second.store.is_loaded)

    @patch("bustrack.client.download")
    async def test_force_reload_bypasses_cache(self, mock_download):
        mock_download.return_value = _zip_tables(TABLES)
        client = self._client()

        await client.load_static_data()
        await client.load_static_data(force=True)

        self.assertEqual(mock_download.call_count, 2)

    @patch("bustrack.client.download")
    async def test_download_failure(self, mock_download):
        mock_download.side_effect = StaticDataError("unreachable")
        client = self._client()

        with self.assertRaises(StaticDataError):
            await client.load_static_data()
        self.assertFalse(client.store.is_loaded)


class TestClientSubscriptions(ClientTestCase):
    """Test subscriptions created through the client."""

    async def test_subscribe_to_arrivals(self):
        self.realtime.fetch_trip_updates.side_effect = TransportError("down")

        subscription = self.client.subscribe_to_arrivals("123", interval=0)
        self.assertEqual(self.client.active_subscription_count, 1)

        arrivals = await subscription.__anext__()

        # Feed failures inside get_next_arrivals degrade to schedule-only results
        self.assertIsInstance(arrivals, list)
        self.assertFalse(any(a.realtime_available for a in arrivals))
        self.assertEqual(subscription.consecutive_failures, 0)
        await self.client.cancel_all_subscriptions()
        self.assertEqual(self.client.active_subscription_count, 0)

    async def test_subscribe_to_vehicle_positions_filters_route(self):
        subscription = self.client.subscribe_to_vehicle_positions(route_id="L1", interval=0)

        self.assertEqual(await subscription.__anext__(), [])
        self.realtime.fetch_vehicle_positions.assert_awaited_with("L1")
        await subscription.aclose()

    async def test_subscribe_to_trip_updates(self):
        self.realtime.fetch_trip_updates.return_value = [_t1_update()]
        subscription = self.client.subscribe_to_trip_updates(stop_id="123", interval=0)

        updates = await subscription.__anext__()

        self.assertEqual(updates[0].trip.trip_id, "T1")
        self.realtime.fetch_trip_updates.assert_awaited_with("123")
        await subscription.aclose()

    async def test_subscribe_to_active_alerts(self):
        expired = Alert(
            id="a1",
            header_text="Old detour",
            description_text="",
            active_periods=[TimeRange(start=datetime(2020, 1, 1, tzinfo=MADRID), end=datetime(2020, 1, 2, tzinfo=MADRID))],
        )
        current = Alert(id="a2", header_text="Detour", description_text="")
        self.realtime.fetch_alerts.return_value = [expired, current]

        subscription = self.client.subscribe_to_alerts(route_id="L1", active_only=True, interval=0)
        alerts = await subscription.__anext__()

        self.assertEqual([a.id for a in alerts], ["a2"])
        await subscription.aclose()

    async def test_close_cancels_subscriptions(self):
        subscription = self.client.subscribe_to_alerts(interval=3600)
        await self.client.close()

        self.assertFalse(subscription.active)
        self.assertEqual(self.client.active_subscription_count, 0)
        self.realtime.close.assert_awaited()


if __name__ == "__main__":
    unittest.main()
