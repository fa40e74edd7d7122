"""Configuration for the BusTrack client."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

# AUVASA GTFS-Realtime API (Valladolid urban buses)
AUVASA_API_BASE = "http://212.170.201.204:50080/GTFSRTapi/api"

VEHICLE_POSITIONS_URL = f"{AUVASA_API_BASE}/vehicleposition"
TRIP_UPDATES_URL = f"{AUVASA_API_BASE}/tripupdate"
ALERTS_URL = f"{AUVASA_API_BASE}/alert"
STATIC_GTFS_URL = f"{AUVASA_API_BASE}/GTFSFile"

# The feed's operating timezone. GTFS times and dates are local to it.
DEFAULT_TIMEZONE = "Europe/Madrid"

DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_POLLING_INTERVAL = 30  # seconds
DEFAULT_RETRY_DELAY = 5  # seconds

DEFAULT_MEMORY_CACHE_ITEMS = 100
DEFAULT_DISK_CACHE_BYTES = 50 * 1024 * 1024
DEFAULT_CACHE_DIRECTORY = Path.home() / ".cache" / "bustrack"


@dataclass(frozen=True)
class Endpoints:
    """URLs of the real-time feeds and the static GTFS archive."""
    vehicle_positions: str = VEHICLE_POSITIONS_URL
    trip_updates: str = TRIP_UPDATES_URL
    alerts: str = ALERTS_URL
    static_data: str = STATIC_GTFS_URL


@dataclass
class ClientConfig:
    """Named options accepted by BusTrackClient."""
    timeout: float = DEFAULT_TIMEOUT
    polling_interval: float = DEFAULT_POLLING_INTERVAL
    retry_delay: float = DEFAULT_RETRY_DELAY
    timezone: str = DEFAULT_TIMEZONE
    endpoints: Endpoints = field(default_factory=Endpoints)
    enable_disk_cache: bool = False
    cache_directory: Optional[Path] = None
    memory_cache_items: int = DEFAULT_MEMORY_CACHE_ITEMS
    disk_cache_max_bytes: int = DEFAULT_DISK_CACHE_BYTES

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.polling_interval <= 0:
            raise ValueError(f"polling_interval must be positive, got {self.polling_interval}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must not be negative, got {self.retry_delay}")
