"""GTFS-Realtime fetcher for the AUVASA feeds."""

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

import aiohttp

from .cache import CacheManager, CachePolicy
from .config import DEFAULT_TIMEOUT, Endpoints
from .errors import TransportError
from .feed_decoder import decode_alerts, decode_trip_updates, decode_vehicle_positions
from .models import Alert, Coordinate, TripUpdate, VehiclePosition
from .time_utils import TimezoneLike, resolve_timezone

logger = logging.getLogger(__name__)


class FeedKind(str, Enum):
    VEHICLE_POSITIONS = "vehicle_positions"
    TRIP_UPDATES = "trip_updates"
    ALERTS = "alerts"


_DECODERS: Dict[FeedKind, Callable] = {
    FeedKind.VEHICLE_POSITIONS: decode_vehicle_positions,
    FeedKind.TRIP_UPDATES: decode_trip_updates,
    FeedKind.ALERTS: decode_alerts,
}

_POLICIES: Dict[FeedKind, CachePolicy] = {
    FeedKind.VEHICLE_POSITIONS: CachePolicy.VEHICLE_POSITIONS,
    FeedKind.TRIP_UPDATES: CachePolicy.TRIP_UPDATES,
    FeedKind.ALERTS: CachePolicy.ALERTS,
}

FeedResult = Union[List[VehiclePosition], List[TripUpdate], List[Alert]]


class RealtimeClient:
    """Fetches, decodes and caches the three GTFS-Realtime feeds."""

    def __init__(
        self,
        endpoints: Optional[Endpoints] = None,
        timeout: float = DEFAULT_TIMEOUT,
        cache: Optional[CacheManager] = None,
        timezone: TimezoneLike = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the real-time client.

        Args:
            endpoints: Feed URLs (defaults to the AUVASA API).
            timeout: Total request timeout in seconds.
            cache: Cache for decoded feeds. A memory-only cache is used if omitted.
            timezone: Timezone for decoded timestamps.
            session: Optional aiohttp session. If omitted one is created on
                first use and closed by close().
        """
        self.endpoints = endpoints or Endpoints()
        self.timeout = timeout
        self.cache = cache if cache is not None else CacheManager()
        self.timezone = resolve_timezone(timezone)
        self._session = session
        self._own_session = session is None

    async def __aenter__(self) -> "RealtimeClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._own_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._own_session = True
        return self._session

    def url_for(self, kind: FeedKind) -> str:
        return {
            FeedKind.VEHICLE_POSITIONS: self.endpoints.vehicle_positions,
            FeedKind.TRIP_UPDATES: self.endpoints.trip_updates,
            FeedKind.ALERTS: self.endpoints.alerts,
        }[kind]

    async def fetch_feed(self, url: str) -> bytes:
        """
        Download raw feed bytes.

        Raises:
            TransportError: On connection failure, timeout or a non-2xx status.
        """
        session = self._get_session()
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if not 200 <= response.status < 300:
                    logger.error(f"HTTP {response.status} from {url}")
                    raise TransportError(f"HTTP {response.status} from {url}", url=url, status_code=response.status)
                data = await response.read()
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out after {self.timeout}s fetching {url}")
            raise TransportError(f"Request to {url} timed out", url=url) from e
        except aiohttp.ClientError as e:
            logger.error(f"Failed to fetch {url}: {e}")
            raise TransportError(f"Failed to fetch {url}: {e}", url=url) from e

        logger.debug(f"Fetched {len(data)} bytes from {url}")
        return data

    async def fetch_and_decode(self, kind: FeedKind) -> FeedResult:
        """
        Fetch and decode one feed, served from cache while fresh.

        Raises:
            TransportError: If the feed cannot be fetched.
            ParseError: If the payload cannot be decoded.
        """
        kind = FeedKind(kind)

        async def fetch() -> FeedResult:
            data = await self.fetch_feed(self.url_for(kind))
            return _DECODERS[kind](data, self.timezone)

        return await self.cache.get_or_fetch(f"realtime:{kind.value}", _POLICIES[kind], fetch)

    async def fetch_vehicle_positions(self, route_id: Optional[str] = None) -> List[VehiclePosition]:
        """All vehicle positions, or only those serving route_id."""
        positions = await self.fetch_and_decode(FeedKind.VEHICLE_POSITIONS)
        if route_id is None:
            return list(positions)
        return [p for p in positions if p.trip is not None and p.trip.route_id == route_id]

    async def find_nearby_vehicles(self, coordinate: Coordinate, radius_meters: float = 500) -> List[VehiclePosition]:
        """Vehicles within radius_meters of a coordinate, nearest first."""
        positions = await self.fetch_and_decode(FeedKind.VEHICLE_POSITIONS)
        nearby = [(coordinate.distance_to(p.position), p) for p in positions]
        nearby = [pair for pair in nearby if pair[0] <= radius_meters]
        nearby.sort(key=lambda pair: pair[0])
        return [p for _, p in nearby]

    async def fetch_trip_updates(self, stop_id: Optional[str] = None) -> List[TripUpdate]:
        """All trip updates, or only those with a stop time update at stop_id."""
        updates = await self.fetch_and_decode(FeedKind.TRIP_UPDATES)
        if stop_id is None:
            return list(updates)
        return [u for u in updates if any(stu.stop_id == stop_id for stu in u.stop_time_updates)]

    async def fetch_alerts(self, route_id: Optional[str] = None, stop_id: Optional[str] = None) -> List[Alert]:
        """All alerts, optionally only those affecting a route and/or a stop."""
        alerts = await self.fetch_and_decode(FeedKind.ALERTS)
        if route_id is not None:
            alerts = [a for a in alerts if a.affects_route(route_id)]
        if stop_id is not None:
            alerts = [a for a in alerts if a.affects_stop(stop_id)]
        return list(alerts)

    async def fetch_active_alerts(self) -> List[Alert]:
        alerts = await self.fetch_and_decode(FeedKind.ALERTS)
        return [a for a in alerts if a.is_active()]
