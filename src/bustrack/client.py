"""Main BusTrack client class."""

import asyncio
import functools
import logging
from datetime import datetime
from typing import List, Optional

from .cache import CacheManager, CachePolicy, DiskCache, MemoryCache
from .config import DEFAULT_CACHE_DIRECTORY, ClientConfig
from .correlator import ArrivalCorrelator
from .errors import NotFoundError, ParseError, TransportError
from .gtfs_loader import GTFSLoader, StaticQueryFacade, download
from .models import Alert, Arrival, Coordinate, Route, Stop, StopTime, TripDetails, TripUpdate, VehiclePosition
from .realtime_client import RealtimeClient
from .subscription import Subscription, SubscriptionManager
from .time_utils import current_gtfs_time

logger = logging.getLogger(__name__)

STATIC_DATA_CACHE_KEY = "static:gtfs_zip"

# Extra stop times requested per wanted arrival, to leave room for rows
# dropped by the service calendar and by deduplication
CANDIDATE_FACTOR = 10
MIN_CANDIDATES = 50


class BusTrackClient:
    """
    Real-time bus arrivals for the AUVASA network.

    This class provides methods to:
    - Load the static GTFS schedule and look up stops and routes
    - Get the next arrivals at a stop, combining schedule and real-time data
    - Get the full stop list and live status of a single trip
    - Subscribe to arrivals, vehicle positions, trip updates and alerts
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        store: Optional[StaticQueryFacade] = None,
        realtime: Optional[RealtimeClient] = None,
        cache: Optional[CacheManager] = None,
    ):
        """
        Initialize the client.

        Args:
            config: Client options (defaults to ClientConfig()).
            store: Static schedule. Defaults to an empty GTFSLoader; call
                load_static_data() to fill it.
            realtime: Real-time feed client. Built from config if omitted.
            cache: Shared cache. Built from config if omitted.
        """
        self.config = config or ClientConfig()
        self.timezone = self.config.timezone

        if cache is None:
            disk = None
            if self.config.enable_disk_cache:
                disk = DiskCache(
                    self.config.cache_directory or DEFAULT_CACHE_DIRECTORY,
                    self.config.disk_cache_max_bytes,
                )
            cache = CacheManager(MemoryCache(self.config.memory_cache_items), disk)
        self.cache = cache

        self.store = store if store is not None else GTFSLoader(self.timezone)
        self.realtime = realtime or RealtimeClient(
            endpoints=self.config.endpoints,
            timeout=self.config.timeout,
            cache=self.cache,
            timezone=self.timezone,
        )
        self.correlator = ArrivalCorrelator(self.store, self.timezone)
        self.subscriptions = SubscriptionManager(
            polling_interval=self.config.polling_interval,
            retry_delay=self.config.retry_delay,
        )

    async def __aenter__(self) -> "BusTrackClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel every subscription and release network resources."""
        await self.subscriptions.cancel_all()
        await self.realtime.close()
        logger.info("Closed BusTrack client")

    # Static data

    async def load_static_data(self, force: bool = False) -> None:
        """
        Download (or read from cache) the GTFS archive and load it into the store.

        Args:
            force: Reload even if data is already loaded, bypassing the cache.

        Raises:
            StaticDataError: If the archive cannot be downloaded or imported.
        """
        if getattr(self.store, "is_loaded", False) and not force:
            logger.debug("Static data already loaded")
            return

        data = None if force else await self.cache.get(STATIC_DATA_CACHE_KEY, CachePolicy.STATIC_DATA)
        loop = asyncio.get_running_loop()
        if data is None:
            data = await loop.run_in_executor(
                None, download, self.config.endpoints.static_data, self.config.timeout
            )
            await self.cache.set(STATIC_DATA_CACHE_KEY, data, CachePolicy.STATIC_DATA)

        await loop.run_in_executor(None, self.store.load_from_zip, data)

    def get_stop(self, stop_id: str) -> Stop:
        """
        Get a stop by id.

        Raises:
            NotFoundError: If the stop does not exist.
        """
        stop = self.store.get_stop(stop_id)
        if stop is None:
            raise NotFoundError("Stop", stop_id)
        return stop

    def search_stops(self, query: str, limit: Optional[int] = None) -> List[Stop]:
        """Find stops by name or code (partial match)."""
        return self.store.search_stops(query, limit)

    def find_nearby_stops(
        self, coordinate: Coordinate, radius_meters: float = 500, limit: Optional[int] = None
    ) -> List[Stop]:
        return self.store.find_nearby_stops(coordinate, radius_meters, limit)

    def get_route(self, route_id: str) -> Route:
        """
        Get a route by id.

        Raises:
            NotFoundError: If the route does not exist.
        """
        route = self.store.get_route(route_id)
        if route is None:
            raise NotFoundError("Route", route_id)
        return route

    def get_routes_for_stop(self, stop_id: str) -> List[Route]:
        return self.store.get_routes_for_stop(stop_id)

    # Arrivals

    async def get_next_arrivals(self, stop_id: str, limit: int = 5, now: Optional[datetime] = None) -> List[Arrival]:
        """
        Get the next departures from a stop, with real-time estimates where available.

        If the trip update feed cannot be fetched or decoded, the scheduled
        departures are returned with realtime_available=False.

        Args:
            stop_id: Stop id (e.g., "813").
            limit: Maximum number of arrivals.
            now: Reference time (defaults to the current time).

        Returns:
            Arrivals sorted by best known time.
        """
        now = self._now(now)
        stop_times = self._upcoming_stop_times(stop_id, limit, now)

        try:
            trip_updates = await self.realtime.fetch_trip_updates()
        except (TransportError, ParseError) as e:
            logger.warning(f"Real-time data unavailable for stop {stop_id}, using schedule only: {e}")
            trip_updates = []

        return self.correlator.correlate(stop_id, stop_times, trip_updates, limit, now)

    def _upcoming_stop_times(self, stop_id: str, limit: int, now: datetime) -> List[StopTime]:
        """Upcoming stop times at a stop whose service runs today."""
        after = current_gtfs_time(now, self.timezone)
        candidates = self.store.get_upcoming_stop_times(stop_id, after, max(limit * CANDIDATE_FACTOR, MIN_CANDIDATES))

        active = []
        for stop_time in candidates:
            trip = self.store.get_trip(stop_time.trip_id)
            # Unknown trips are passed through and dropped by the correlator
            if trip is None or self.store.is_service_active(trip.service_id, now):
                active.append(stop_time)
        return active

    async def get_trip_details(self, trip_id: str, now: Optional[datetime] = None) -> TripDetails:
        """
        Get every stop of a trip with real-time estimates and the vehicle serving it.

        Raises:
            NotFoundError: If the trip or its route does not exist.
        """
        trip = self.store.get_trip(trip_id)
        if trip is None:
            raise NotFoundError("Trip", trip_id)
        route = self.store.get_route(trip.route_id)
        if route is None:
            raise NotFoundError("Route", trip.route_id)

        trip_update: Optional[TripUpdate] = None
        try:
            updates = await self.realtime.fetch_trip_updates()
        except (TransportError, ParseError) as e:
            logger.warning(f"Trip updates unavailable for trip {trip_id}, using schedule only: {e}")
        else:
            trip_update = next((u for u in updates if u.trip.trip_id == trip_id), None)

        vehicle: Optional[VehiclePosition] = None
        try:
            vehicles = await self.realtime.fetch_vehicle_positions()
        except (TransportError, ParseError) as e:
            logger.warning(f"Vehicle positions unavailable for trip {trip_id}: {e}")
        else:
            vehicle = next((v for v in vehicles if v.trip is not None and v.trip.trip_id == trip_id), None)

        return self.correlator.build_trip_details(
            trip, route, self.store.get_stop_times(trip_id), trip_update, vehicle, self._now(now)
        )

    # Real-time pass-through

    async def fetch_vehicle_positions(self, route_id: Optional[str] = None) -> List[VehiclePosition]:
        return await self.realtime.fetch_vehicle_positions(route_id)

    async def find_nearby_vehicles(self, coordinate: Coordinate, radius_meters: float = 500) -> List[VehiclePosition]:
        return await self.realtime.find_nearby_vehicles(coordinate, radius_meters)

    async def fetch_trip_updates(self, stop_id: Optional[str] = None) -> List[TripUpdate]:
        return await self.realtime.fetch_trip_updates(stop_id)

    async def fetch_alerts(self, route_id: Optional[str] = None, stop_id: Optional[str] = None) -> List[Alert]:
        return await self.realtime.fetch_alerts(route_id, stop_id)

    async def fetch_active_alerts(self) -> List[Alert]:
        return await self.realtime.fetch_active_alerts()

    # Subscriptions

    @property
    def active_subscription_count(self) -> int:
        return self.subscriptions.active_subscription_count

    def subscribe_to_arrivals(self, stop_id: str, interval: Optional[float] = None, limit: int = 5) -> Subscription:
        """Poll get_next_arrivals for a stop. Must be called from a running event loop."""
        return self.subscriptions.subscribe(functools.partial(self.get_next_arrivals, stop_id, limit), interval)

    def subscribe_to_vehicle_positions(
        self, route_id: Optional[str] = None, interval: Optional[float] = None
    ) -> Subscription:
        return self.subscriptions.subscribe(functools.partial(self.realtime.fetch_vehicle_positions, route_id), interval)

    def subscribe_to_trip_updates(self, stop_id: Optional[str] = None, interval: Optional[float] = None) -> Subscription:
        return self.subscriptions.subscribe(functools.partial(self.realtime.fetch_trip_updates, stop_id), interval)

    def subscribe_to_alerts(
        self,
        route_id: Optional[str] = None,
        stop_id: Optional[str] = None,
        active_only: bool = False,
        interval: Optional[float] = None,
    ) -> Subscription:
        realtime = self.realtime

        async def fetch() -> List[Alert]:
            alerts = await realtime.fetch_alerts(route_id, stop_id)
            if active_only:
                alerts = [a for a in alerts if a.is_active()]
            return alerts

        return self.subscriptions.subscribe(fetch, interval)

    async def cancel_all_subscriptions(self) -> None:
        await self.subscriptions.cancel_all()

    def _now(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self.correlator.timezone)
        if now.tzinfo is None:
            return now.replace(tzinfo=self.correlator.timezone)
        return now.astimezone(self.correlator.timezone)
