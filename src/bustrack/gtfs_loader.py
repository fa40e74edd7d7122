"""GTFS static data loader for the AUVASA bus network."""

import io
import logging
import threading
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Union

import pandas as pd
import requests

from .config import DEFAULT_TIMEOUT, STATIC_GTFS_URL
from .errors import StaticDataError, TimeFormatError
from .location_utils import bounding_box
from .models import (
    CalendarException,
    Coordinate,
    ExceptionType,
    LocationType,
    Route,
    RouteType,
    ServiceCalendar,
    ShapePoint,
    Stop,
    StopTime,
    Trip,
    WheelchairBoarding,
)
from .time_utils import TimezoneLike, format_gtfs_date, parse_time, resolve_timezone

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("stops.txt", "routes.txt", "trips.txt", "stop_times.txt")
OPTIONAL_TABLES = ("calendar.txt", "calendar_dates.txt", "shapes.txt")

DateLike = Union[date, datetime]


class StaticQueryFacade(Protocol):
    """Read-only queries the arrival correlator needs from the static schedule."""

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        ...

    def get_route(self, route_id: str) -> Optional[Route]:
        ...

    def get_stop_times(self, trip_id: str) -> List[StopTime]:
        ...

    def get_upcoming_stop_times(self, stop_id: str, after_time: str, limit: Optional[int] = None) -> List[StopTime]:
        ...

    def is_service_active(self, service_id: str, day: DateLike) -> bool:
        ...


@dataclass
class _GTFSIndex:
    """One complete, immutable-after-build snapshot of the static tables."""
    stops: Dict[str, Stop] = field(default_factory=dict)
    routes: Dict[str, Route] = field(default_factory=dict)
    trips: Dict[str, Trip] = field(default_factory=dict)
    stop_times_by_trip: Dict[str, List[StopTime]] = field(default_factory=dict)  # by stop_sequence
    stop_times_by_stop: Dict[str, List[StopTime]] = field(default_factory=dict)  # by departure
    trips_by_route: Dict[str, List[str]] = field(default_factory=dict)
    calendars: Dict[str, ServiceCalendar] = field(default_factory=dict)
    calendar_exceptions: Dict[str, Dict[str, ExceptionType]] = field(default_factory=dict)
    shapes: Dict[str, List[ShapePoint]] = field(default_factory=dict)


def download(url: str = STATIC_GTFS_URL, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """Download the static GTFS ZIP archive."""
    logger.info(f"Downloading GTFS data from {url}")
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Failed to download GTFS data: {e}")
        raise StaticDataError(f"Failed to download GTFS data from {url}: {e}") from e
    return response.content


class GTFSLoader:
    """Loads and indexes GTFS static data in memory.

    Every load replaces the whole data set. The new index is built off to the
    side and swapped in at the end, so concurrent readers see either the old
    or the new schedule, never a mix of the two.
    """

    def __init__(self, timezone: TimezoneLike = None):
        self.timezone = resolve_timezone(timezone)
        self._index = _GTFSIndex()
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # Loading

    def load_from_url(self, url: str = STATIC_GTFS_URL, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Download and load a GTFS ZIP archive."""
        self.load_from_zip(download(url, timeout))

    def load_from_zip(self, data: bytes) -> None:
        """Load GTFS data from the bytes of a ZIP archive."""
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zip_file:
                # Some feeds nest the tables in a folder inside the archive
                names = {Path(name).name: name for name in zip_file.namelist() if not name.endswith("/")}
                tables = {
                    table: zip_file.read(names[table])
                    for table in REQUIRED_TABLES + OPTIONAL_TABLES
                    if table in names
                }
        except zipfile.BadZipFile as e:
            raise StaticDataError(f"Invalid GTFS archive: {e}") from e
        self.load_from_tables(tables)

    def load_from_directory(self, path: Union[str, Path]) -> None:
        """Load GTFS data from a directory of extracted .txt files."""
        directory = Path(path)
        logger.info(f"Loading GTFS data from {directory}")
        tables = {
            table: (directory / table).read_bytes()
            for table in REQUIRED_TABLES + OPTIONAL_TABLES
            if (directory / table).is_file()
        }
        self.load_from_tables(tables)

    def load_from_tables(self, tables: Mapping[str, Union[str, bytes]]) -> None:
        """
        Load GTFS data from raw CSV contents keyed by file name.

        Args:
            tables: e.g. {"stops.txt": "...", "routes.txt": "..."}. The four
                required tables must be present; calendars and shapes are optional.

        Raises:
            StaticDataError: If a required table is missing or unreadable.
        """
        missing = [table for table in REQUIRED_TABLES if table not in tables]
        if missing:
            raise StaticDataError(f"GTFS data is missing required tables: {', '.join(missing)}")

        frames = {name: _read_table(name, content) for name, content in tables.items()}

        index = _GTFSIndex()
        self._load_stops(index, frames["stops.txt"])
        self._load_routes(index, frames["routes.txt"])
        self._load_trips(index, frames["trips.txt"])
        self._load_stop_times(index, frames["stop_times.txt"])
        if "calendar.txt" in frames:
            self._load_calendar(index, frames["calendar.txt"])
        if "calendar_dates.txt" in frames:
            self._load_calendar_dates(index, frames["calendar_dates.txt"])
        if "shapes.txt" in frames:
            self._load_shapes(index, frames["shapes.txt"])

        with self._lock:
            self._index = index
            self._loaded = True

        logger.info(
            f"Loaded {len(index.stops)} stops, {len(index.routes)} routes, "
            f"{len(index.trips)} trips and {len(index.calendars)} calendars"
        )

    def _load_stops(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse stops.txt."""
        for row in frame.to_dict("records"):
            stop_id = row.get("stop_id", "")
            try:
                coordinate = Coordinate(float(row["stop_lat"]), float(row["stop_lon"]))
            except (KeyError, ValueError):
                logger.debug(f"Skipping stop {stop_id!r} without valid coordinates")
                continue

            index.stops[stop_id] = Stop(
                id=stop_id,
                name=row.get("stop_name", ""),
                coordinate=coordinate,
                code=_optional(row, "stop_code"),
                desc=_optional(row, "stop_desc"),
                location_type=_enum_or(LocationType, row.get("location_type"), LocationType.STOP),
                wheelchair_boarding=_enum_or(
                    WheelchairBoarding, row.get("wheelchair_boarding"), WheelchairBoarding.UNKNOWN
                ),
                parent_station=_optional(row, "parent_station"),
                platform_code=_optional(row, "platform_code"),
            )

    def _load_routes(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse routes.txt."""
        for row in frame.to_dict("records"):
            route_id = row.get("route_id", "")
            index.routes[route_id] = Route(
                id=route_id,
                short_name=row.get("route_short_name", ""),
                long_name=row.get("route_long_name", ""),
                type=_enum_or(RouteType, row.get("route_type"), RouteType.BUS),
                agency_id=_optional(row, "agency_id"),
                color=_optional(row, "route_color"),
                text_color=_optional(row, "route_text_color"),
                sort_order=_int_or_none(row.get("route_sort_order")),
            )

    def _load_trips(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse trips.txt and group trips by route."""
        for row in frame.to_dict("records"):
            trip = Trip(
                id=row.get("trip_id", ""),
                route_id=row.get("route_id", ""),
                service_id=row.get("service_id", ""),
                headsign=_optional(row, "trip_headsign"),
                short_name=_optional(row, "trip_short_name"),
                direction_id=_int_or_none(row.get("direction_id")),
                block_id=_optional(row, "block_id"),
                shape_id=_optional(row, "shape_id"),
            )
            index.trips[trip.id] = trip
            index.trips_by_route.setdefault(trip.route_id, []).append(trip.id)

    def _load_stop_times(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse stop_times.txt and index it by trip and by stop."""
        skipped = 0
        for row in frame.to_dict("records"):
            sequence = _int_or_none(row.get("stop_sequence"))
            if sequence is None or not row.get("trip_id") or not row.get("stop_id"):
                skipped += 1
                continue

            # GTFS allows either time to be omitted on timepoint-less rows
            arrival = row.get("arrival_time", "") or row.get("departure_time", "")
            departure = row.get("departure_time", "") or arrival
            stop_time = StopTime(
                trip_id=row["trip_id"],
                stop_id=row["stop_id"],
                arrival_time=arrival,
                departure_time=departure,
                stop_sequence=sequence,
                stop_headsign=_optional(row, "stop_headsign"),
            )
            index.stop_times_by_trip.setdefault(stop_time.trip_id, []).append(stop_time)
            index.stop_times_by_stop.setdefault(stop_time.stop_id, []).append(stop_time)

        for stop_times in index.stop_times_by_trip.values():
            stop_times.sort(key=lambda st: st.stop_sequence)
        for stop_times in index.stop_times_by_stop.values():
            stop_times.sort(key=_departure_sort_key)

        if skipped:
            logger.debug(f"Skipped {skipped} incomplete stop_times rows")

    def _load_calendar(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse calendar.txt."""
        for row in frame.to_dict("records"):
            service_id = row.get("service_id", "")
            index.calendars[service_id] = ServiceCalendar(
                service_id=service_id,
                monday=row.get("monday") == "1",
                tuesday=row.get("tuesday") == "1",
                wednesday=row.get("wednesday") == "1",
                thursday=row.get("thursday") == "1",
                friday=row.get("friday") == "1",
                saturday=row.get("saturday") == "1",
                sunday=row.get("sunday") == "1",
                start_date=row.get("start_date", ""),
                end_date=row.get("end_date", ""),
            )

    def _load_calendar_dates(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse calendar_dates.txt into per-service date overrides."""
        for row in frame.to_dict("records"):
            try:
                exception_type = ExceptionType(int(row.get("exception_type", "")))
            except ValueError:
                logger.debug(f"Skipping calendar_dates row with bad exception_type: {row}")
                continue
            overrides = index.calendar_exceptions.setdefault(row.get("service_id", ""), {})
            overrides[row.get("date", "")] = exception_type

    def _load_shapes(self, index: _GTFSIndex, frame: pd.DataFrame) -> None:
        """Parse shapes.txt."""
        for row in frame.to_dict("records"):
            try:
                point = ShapePoint(
                    shape_id=row["shape_id"],
                    latitude=float(row["shape_pt_lat"]),
                    longitude=float(row["shape_pt_lon"]),
                    sequence=int(row["shape_pt_sequence"]),
                    dist_traveled=_float_or_none(row.get("shape_dist_traveled")),
                )
            except (KeyError, ValueError):
                continue
            index.shapes.setdefault(point.shape_id, []).append(point)

        for points in index.shapes.values():
            points.sort(key=lambda p: p.sequence)

    # StaticQueryFacade

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        return self._index.trips.get(trip_id)

    def get_route(self, route_id: str) -> Optional[Route]:
        return self._index.routes.get(route_id)

    def get_stop_times(self, trip_id: str) -> List[StopTime]:
        """All stop times of a trip, ordered by stop_sequence."""
        return list(self._index.stop_times_by_trip.get(trip_id, []))

    def get_upcoming_stop_times(self, stop_id: str, after_time: str, limit: Optional[int] = None) -> List[StopTime]:
        """
        Stop times at a stop departing at or after a GTFS time, ordered by departure.

        Args:
            stop_id: Stop to query.
            after_time: GTFS time (HH:MM:SS) of the service day.
            limit: Maximum number of rows, or None for all.
        """
        threshold = parse_time(after_time)
        results = []
        for stop_time in self._index.stop_times_by_stop.get(stop_id, []):
            seconds = stop_time.departure_seconds
            if seconds is None or seconds < threshold:
                continue
            results.append(stop_time)
            if limit is not None and len(results) >= limit:
                break
        return results

    def is_service_active(self, service_id: str, day: DateLike) -> bool:
        """
        Whether a service runs on a date.

        A calendar_dates entry for that exact date wins over the weekly
        calendar. A service known only from calendar_dates runs on its added
        dates alone; a service with no calendar rows at all is assumed active.
        """
        index = self._index
        key = format_gtfs_date(day, self.timezone)

        overrides = index.calendar_exceptions.get(service_id, {})
        if key in overrides:
            return overrides[key] == ExceptionType.ADDED

        calendar = index.calendars.get(service_id)
        if calendar is not None:
            return calendar.runs_on(datetime.strptime(key, "%Y%m%d").date())

        return service_id not in index.calendar_exceptions

    # Additional queries

    def get_stop(self, stop_id: str) -> Optional[Stop]:
        return self._index.stops.get(stop_id)

    def get_all_stops(self) -> List[Stop]:
        return sorted(self._index.stops.values(), key=lambda s: s.name)

    def search_stops(self, query: str, limit: Optional[int] = None) -> List[Stop]:
        """Find stops by name or code (case-insensitive partial match)."""
        needle = query.strip().lower()
        if not needle:
            return []
        results = [
            stop
            for stop in self._index.stops.values()
            if needle in stop.name.lower() or (stop.code and needle in stop.code.lower()) or stop.id == query
        ]
        results.sort(key=lambda s: s.name)
        return results[:limit] if limit is not None else results

    def find_nearby_stops(
        self, coordinate: Coordinate, radius_meters: float = 500, limit: Optional[int] = None
    ) -> List[Stop]:
        """Stops within radius_meters of a coordinate, nearest first."""
        box = bounding_box(coordinate, radius_meters)
        candidates = []
        for stop in self._index.stops.values():
            if not box.contains(stop.coordinate):
                continue
            dist = coordinate.distance_to(stop.coordinate)
            if dist <= radius_meters:
                candidates.append((dist, stop))
        candidates.sort(key=lambda pair: pair[0])
        stops = [stop for _, stop in candidates]
        return stops[:limit] if limit is not None else stops

    def get_all_routes(self) -> List[Route]:
        return sorted(self._index.routes.values(), key=_route_sort_key)

    def get_routes_for_stop(self, stop_id: str) -> List[Route]:
        """Routes with at least one trip calling at a stop."""
        index = self._index
        route_ids = set()
        for stop_time in index.stop_times_by_stop.get(stop_id, []):
            trip = index.trips.get(stop_time.trip_id)
            if trip is not None:
                route_ids.add(trip.route_id)
        routes = [index.routes[route_id] for route_id in route_ids if route_id in index.routes]
        return sorted(routes, key=_route_sort_key)

    def get_trips_for_route(self, route_id: str) -> List[Trip]:
        index = self._index
        return [index.trips[trip_id] for trip_id in index.trips_by_route.get(route_id, [])]

    def get_calendar(self, service_id: str) -> Optional[ServiceCalendar]:
        return self._index.calendars.get(service_id)

    def get_calendar_exceptions(self, service_id: str) -> List[CalendarException]:
        overrides = self._index.calendar_exceptions.get(service_id, {})
        return [
            CalendarException(service_id=service_id, date=day, exception_type=exception_type)
            for day, exception_type in sorted(overrides.items())
        ]

    def get_shape(self, shape_id: str) -> List[ShapePoint]:
        return list(self._index.shapes.get(shape_id, []))

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        with self._lock:
            self._index = _GTFSIndex()
            self._loaded = False
        logger.info("Cleared GTFS data from memory")


def _read_table(name: str, content: Union[str, bytes]) -> pd.DataFrame:
    """Read a GTFS CSV table with every column as a string and blanks as ""."""
    raw = content.encode("utf-8") if isinstance(content, str) else content
    try:
        frame = pd.read_csv(io.BytesIO(raw), dtype=str, keep_default_na=False, encoding="utf-8-sig")
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise StaticDataError(f"Could not parse {name}: {e}") from e
    frame.columns = [column.strip() for column in frame.columns]
    return frame


def _optional(row: Mapping[str, str], column: str) -> Optional[str]:
    value = row.get(column, "")
    return value if value else None


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _float_or_none(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _enum_or(enum_cls, value: Optional[str], default):
    number = _int_or_none(value)
    if number is None:
        return default
    try:
        return enum_cls(number)
    except ValueError:
        return default


def _departure_sort_key(stop_time: StopTime):
    try:
        return (0, parse_time(stop_time.departure_time))
    except TimeFormatError:
        return (1, 0)


def _route_sort_key(route: Route):
    return (route.sort_order if route.sort_order is not None else 0, route.short_name, route.id)
