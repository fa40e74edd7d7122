"""BusTrack - Real-time bus arrivals from GTFS and GTFS-Realtime feeds."""

__version__ = "0.1.0"

from .cache import CacheManager, CachePolicy, DiskCache, MemoryCache
from .client import BusTrackClient
from .config import ClientConfig, Endpoints
from .correlator import ArrivalCorrelator
from .errors import BusTrackError, NotFoundError, ParseError, StaticDataError, TimeFormatError, TransportError
from .gtfs_loader import GTFSLoader, StaticQueryFacade
from .models import Alert, Arrival, Coordinate, Route, Stop, StopTime, Trip, TripDetails, TripUpdate, VehiclePosition
from .realtime_client import FeedKind, RealtimeClient
from .subscription import Subscription, SubscriptionManager

__all__ = [
    "BusTrackClient",
    "ClientConfig",
    "Endpoints",
    "GTFSLoader",
    "StaticQueryFacade",
    "RealtimeClient",
    "FeedKind",
    "ArrivalCorrelator",
    "SubscriptionManager",
    "Subscription",
    "CacheManager",
    "CachePolicy",
    "MemoryCache",
    "DiskCache",
    "BusTrackError",
    "ParseError",
    "TransportError",
    "TimeFormatError",
    "NotFoundError",
    "StaticDataError",
    "Coordinate",
    "Stop",
    "Route",
    "Trip",
    "StopTime",
    "TripUpdate",
    "VehiclePosition",
    "Alert",
    "Arrival",
    "TripDetails",
]
