"""Exceptions raised by BusTrack."""

from typing import Optional


class BusTrackError(Exception):
    """Base class for all BusTrack errors."""


class ParseError(BusTrackError):
    """A GTFS-Realtime payload could not be decoded."""

    MISSING_FIELD = "missing_field"
    INVALID_ENCODING = "invalid_encoding"

    def __init__(self, reason: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.reason = reason
        self.field = field

    @classmethod
    def missing_field(cls, name: str) -> "ParseError":
        return cls(cls.MISSING_FIELD, f"Missing required field: {name}", field=name)

    @classmethod
    def invalid_encoding(cls, detail: str = "") -> "ParseError":
        message = "Invalid protobuf data"
        if detail:
            message = f"{message}: {detail}"
        return cls(cls.INVALID_ENCODING, message)


class TransportError(BusTrackError):
    """A feed could not be fetched (connection failure, timeout, non-2xx)."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TimeFormatError(BusTrackError, ValueError):
    """A GTFS time (HH:MM:SS) or date (YYYYMMDD) string is malformed."""


class NotFoundError(BusTrackError, LookupError):
    """A requested trip, route or stop does not exist in the static data."""

    def __init__(self, entity: str, identifier: str):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class StaticDataError(BusTrackError):
    """Static GTFS data could not be downloaded or imported."""
