"""Data models for BusTrack."""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import List, Optional

from .errors import TimeFormatError
from .time_utils import parse_time

# Delays above this many seconds are reported as significant
SIGNIFICANT_DELAY_SECONDS = 300

_EARTH_RADIUS_M = 6_371_000.0


# Static enums

class LocationType(IntEnum):
    STOP = 0
    STATION = 1
    ENTRANCE_EXIT = 2
    GENERIC_NODE = 3
    BOARDING_AREA = 4


class WheelchairBoarding(IntEnum):
    UNKNOWN = 0
    POSSIBLE = 1
    NOT_POSSIBLE = 2


class RouteType(IntEnum):
    TRAM = 0
    SUBWAY = 1
    RAIL = 2
    BUS = 3
    FERRY = 4
    CABLE_TRAM = 5
    AERIAL_LIFT = 6
    FUNICULAR = 7


class ExceptionType(IntEnum):
    ADDED = 1
    REMOVED = 2


# Real-time enums (values mirror the GTFS-Realtime names)

class VehicleStatus(str, Enum):
    INCOMING_AT = "INCOMING_AT"
    STOPPED_AT = "STOPPED_AT"
    IN_TRANSIT_TO = "IN_TRANSIT_TO"


class OccupancyStatus(str, Enum):
    EMPTY = "EMPTY"
    MANY_SEATS_AVAILABLE = "MANY_SEATS_AVAILABLE"
    FEW_SEATS_AVAILABLE = "FEW_SEATS_AVAILABLE"
    STANDING_ROOM_ONLY = "STANDING_ROOM_ONLY"
    CRUSHED_STANDING_ROOM_ONLY = "CRUSHED_STANDING_ROOM_ONLY"
    FULL = "FULL"
    NOT_ACCEPTING_PASSENGERS = "NOT_ACCEPTING_PASSENGERS"
    UNKNOWN = "UNKNOWN"


class ScheduleRelationship(str, Enum):
    """Trip-level schedule relationship."""
    SCHEDULED = "SCHEDULED"
    ADDED = "ADDED"
    UNSCHEDULED = "UNSCHEDULED"
    CANCELED = "CANCELED"


class StopTimeScheduleRelationship(str, Enum):
    SCHEDULED = "SCHEDULED"
    SKIPPED = "SKIPPED"
    NO_DATA = "NO_DATA"


class AlertCause(str, Enum):
    UNKNOWN_CAUSE = "UNKNOWN_CAUSE"
    OTHER_CAUSE = "OTHER_CAUSE"
    TECHNICAL_PROBLEM = "TECHNICAL_PROBLEM"
    STRIKE = "STRIKE"
    DEMONSTRATION = "DEMONSTRATION"
    ACCIDENT = "ACCIDENT"
    HOLIDAY = "HOLIDAY"
    WEATHER = "WEATHER"
    MAINTENANCE = "MAINTENANCE"
    CONSTRUCTION = "CONSTRUCTION"
    POLICE_ACTIVITY = "POLICE_ACTIVITY"
    MEDICAL_EMERGENCY = "MEDICAL_EMERGENCY"


class AlertEffect(str, Enum):
    NO_SERVICE = "NO_SERVICE"
    REDUCED_SERVICE = "REDUCED_SERVICE"
    SIGNIFICANT_DELAYS = "SIGNIFICANT_DELAYS"
    DETOUR = "DETOUR"
    ADDITIONAL_SERVICE = "ADDITIONAL_SERVICE"
    MODIFIED_SERVICE = "MODIFIED_SERVICE"
    OTHER_EFFECT = "OTHER_EFFECT"
    UNKNOWN_EFFECT = "UNKNOWN_EFFECT"
    STOP_MOVED = "STOP_MOVED"


class SeverityLevel(IntEnum):
    UNKNOWN = 0
    INFO = 1
    WARNING = 2
    SEVERE = 3


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 latitude/longitude pair in degrees."""
    latitude: float
    longitude: float

    def distance_to(self, other: "Coordinate") -> float:
        """Great-circle distance to another coordinate, in meters."""
        lat1 = math.radians(self.latitude)
        lat2 = math.radians(other.latitude)
        d_lat = lat2 - lat1
        d_lon = math.radians(other.longitude - self.longitude)
        a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
        return _EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    def __str__(self) -> str:
        return f"({self.latitude:.6f}, {self.longitude:.6f})"


# Static GTFS entities

@dataclass(frozen=True)
class Stop:
    """A physical stop or station."""
    id: str
    name: str
    coordinate: Coordinate
    code: Optional[str] = None
    desc: Optional[str] = None
    location_type: LocationType = LocationType.STOP
    wheelchair_boarding: WheelchairBoarding = WheelchairBoarding.UNKNOWN
    parent_station: Optional[str] = None
    platform_code: Optional[str] = None

    def distance_to(self, other: "Stop") -> float:
        return self.coordinate.distance_to(other.coordinate)

    def __str__(self) -> str:
        return f"{self.name} ({self.code})" if self.code else self.name


@dataclass(frozen=True)
class Route:
    """A bus line."""
    id: str
    short_name: str
    long_name: str
    type: RouteType = RouteType.BUS
    agency_id: Optional[str] = None
    color: Optional[str] = None
    text_color: Optional[str] = None
    sort_order: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.short_name or self.long_name


@dataclass(frozen=True)
class Trip:
    """One scheduled run of a route."""
    id: str
    route_id: str
    service_id: str
    headsign: Optional[str] = None
    short_name: Optional[str] = None
    direction_id: Optional[int] = None
    block_id: Optional[str] = None
    shape_id: Optional[str] = None


@dataclass(frozen=True)
class StopTime:
    """A scheduled visit of a trip to a stop.

    Times are GTFS wall-clock strings and may exceed 24:00:00 for service
    running past midnight.
    """
    trip_id: str
    stop_id: str
    arrival_time: str
    departure_time: str
    stop_sequence: int
    stop_headsign: Optional[str] = None

    @property
    def arrival_seconds(self) -> Optional[int]:
        return _seconds_or_none(self.arrival_time)

    @property
    def departure_seconds(self) -> Optional[int]:
        return _seconds_or_none(self.departure_time)


def _seconds_or_none(value: str) -> Optional[int]:
    try:
        return parse_time(value)
    except TimeFormatError:
        return None


@dataclass(frozen=True)
class ShapePoint:
    shape_id: str
    latitude: float
    longitude: float
    sequence: int
    dist_traveled: Optional[float] = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass(frozen=True)
class ServiceCalendar:
    """Weekly recurrence for a service_id (calendar.txt)."""
    service_id: str
    monday: bool
    tuesday: bool
    wednesday: bool
    thursday: bool
    friday: bool
    saturday: bool
    sunday: bool
    start_date: str  # YYYYMMDD
    end_date: str  # YYYYMMDD

    def runs_on_weekday(self, weekday: int) -> bool:
        """weekday follows date.weekday(): 0 = Monday ... 6 = Sunday."""
        flags = (
            self.monday,
            self.tuesday,
            self.wednesday,
            self.thursday,
            self.friday,
            self.saturday,
            self.sunday,
        )
        return flags[weekday]

    def runs_on(self, day: date) -> bool:
        if not self.runs_on_weekday(day.weekday()):
            return False
        day_string = day.strftime("%Y%m%d")
        return self.start_date <= day_string <= self.end_date

    @property
    def active_days(self) -> List[str]:
        names = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
        return [name for weekday, name in enumerate(names) if self.runs_on_weekday(weekday)]


@dataclass(frozen=True)
class CalendarException:
    """A single-date override for a service_id (calendar_dates.txt)."""
    service_id: str
    date: str  # YYYYMMDD
    exception_type: ExceptionType


# Real-time entities

@dataclass(frozen=True)
class Vehicle:
    id: str
    label: Optional[str] = None
    license_plate: Optional[str] = None

    def __str__(self) -> str:
        return self.label or self.id


@dataclass(frozen=True)
class TripDescriptor:
    """Identifies the trip a real-time entity refers to. Every field may be absent."""
    trip_id: Optional[str] = None
    route_id: Optional[str] = None
    direction_id: Optional[int] = None
    start_time: Optional[str] = None
    start_date: Optional[str] = None
    schedule_relationship: ScheduleRelationship = ScheduleRelationship.SCHEDULED


@dataclass(frozen=True)
class TimeEvent:
    delay: Optional[int] = None  # seconds, negative = early
    time: Optional[datetime] = None
    uncertainty: Optional[int] = None

    @property
    def has_prediction(self) -> bool:
        return self.delay is not None or self.time is not None


@dataclass(frozen=True)
class StopTimeUpdate:
    stop_sequence: Optional[int] = None
    stop_id: Optional[str] = None
    arrival: Optional[TimeEvent] = None
    departure: Optional[TimeEvent] = None
    schedule_relationship: StopTimeScheduleRelationship = StopTimeScheduleRelationship.SCHEDULED


@dataclass(frozen=True)
class TripUpdate:
    """Real-time prediction for one trip."""
    id: str
    trip: TripDescriptor
    timestamp: datetime
    stop_time_updates: List[StopTimeUpdate] = field(default_factory=list)
    vehicle: Optional[Vehicle] = None
    delay: Optional[int] = None


@dataclass(frozen=True)
class VehiclePosition:
    """Real-time snapshot of one vehicle."""
    id: str
    vehicle: Vehicle
    position: Coordinate
    timestamp: datetime
    trip: Optional[TripDescriptor] = None
    bearing: Optional[float] = None
    speed: Optional[float] = None  # m/s
    current_stop_sequence: Optional[int] = None
    current_stop_id: Optional[str] = None
    status: Optional[VehicleStatus] = None
    occupancy_status: Optional[OccupancyStatus] = None

    @property
    def speed_kmh(self) -> Optional[float]:
        return self.speed * 3.6 if self.speed is not None else None


@dataclass(frozen=True)
class TimeRange:
    """An alert period. An absent start or end leaves that side unbounded."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        return self.end is None or moment <= self.end


@dataclass(frozen=True)
class EntitySelector:
    agency_id: Optional[str] = None
    route_id: Optional[str] = None
    route_type: Optional[RouteType] = None
    trip: Optional[TripDescriptor] = None
    stop_id: Optional[str] = None


@dataclass(frozen=True)
class Alert:
    """Represents a service alert."""
    id: str
    header_text: str
    description_text: str
    active_periods: List[TimeRange] = field(default_factory=list)
    informed_entities: List[EntitySelector] = field(default_factory=list)
    cause: Optional[AlertCause] = None
    effect: Optional[AlertEffect] = None
    url: Optional[str] = None
    severity: SeverityLevel = SeverityLevel.UNKNOWN

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if not self.active_periods:
            return True
        now = now or datetime.now(timezone.utc)
        return any(period.contains(now) for period in self.active_periods)

    def affects_route(self, route_id: str) -> bool:
        return any(
            entity.route_id == route_id or (entity.trip is not None and entity.trip.route_id == route_id)
            for entity in self.informed_entities
        )

    def affects_stop(self, stop_id: str) -> bool:
        return any(entity.stop_id == stop_id for entity in self.informed_entities)


# Derived

def describe_delay(delay: Optional[int]) -> Optional[str]:
    """Human-readable delay, e.g. "3 min late" or "40 sec early"."""
    if delay is None:
        return None
    if delay == 0:
        return "On time"
    minutes = abs(delay) // 60
    suffix = "late" if delay > 0 else "early"
    if minutes > 0:
        return f"{minutes} min {suffix}"
    return f"{abs(delay)} sec {suffix}"


@dataclass(frozen=True)
class Arrival:
    """A scheduled departure at a stop, combined with real-time data when available."""
    stop_id: str
    route: Route
    trip: Trip
    scheduled_time: datetime
    estimated_time: Optional[datetime] = None
    delay: Optional[int] = None  # seconds, negative = ahead of schedule
    realtime_available: bool = False
    stop_sequence: Optional[int] = None

    @property
    def best_time(self) -> datetime:
        return self.estimated_time if self.estimated_time is not None else self.scheduled_time

    @property
    def is_delayed(self) -> bool:
        return self.delay is not None and self.delay > SIGNIFICANT_DELAY_SECONDS

    @property
    def delay_description(self) -> Optional[str]:
        return describe_delay(self.delay)

    def minutes_away(self, now: datetime) -> int:
        """Whole minutes until best_time, rounded up, never negative."""
        seconds_away = (self.best_time - now).total_seconds()
        if seconds_away <= 0:
            return 0
        return math.ceil(seconds_away / 60)

    def __str__(self) -> str:
        when = f"~{self.estimated_time:%H:%M}" if self.estimated_time else f"{self.scheduled_time:%H:%M}"
        delay = f" ({self.delay:+d}s)" if self.delay is not None else ""
        return f"{self.route.short_name} to {self.trip.headsign or 'destination'}: {when}{delay}"


@dataclass(frozen=True)
class TripDetails:
    """Every stop of one trip, with the vehicle serving it when known."""
    trip: Trip
    route: Route
    stop_arrivals: List[Arrival]
    vehicle_position: Optional[VehiclePosition] = None
    delay: Optional[int] = None
    realtime_available: bool = False
    progress: Optional[float] = None  # 0.0 - 1.0

    @property
    def stop_count(self) -> int:
        return len(self.stop_arrivals)

    @property
    def is_delayed(self) -> bool:
        return self.delay is not None and self.delay > SIGNIFICANT_DELAY_SECONDS

    @property
    def delay_description(self) -> Optional[str]:
        return describe_delay(self.delay)

    def next_stop(self, now: datetime) -> Optional[Arrival]:
        return next((a for a in self.stop_arrivals if a.best_time > now), None)

    def current_stop(self, now: datetime) -> Optional[Arrival]:
        passed = [a for a in self.stop_arrivals if a.best_time <= now]
        return passed[-1] if passed else None
