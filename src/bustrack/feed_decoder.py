"""GTFS-Realtime protobuf decoding.

Turns raw feed bytes into BusTrack model objects. The GTFS-Realtime schema is
proto2, so HasField() tells an absent field apart from one explicitly set to
its zero value; absent optional fields become None.
"""

import logging
from datetime import datetime
from typing import List, Optional

from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .errors import ParseError
from .models import (
    Alert,
    AlertCause,
    AlertEffect,
    Coordinate,
    EntitySelector,
    OccupancyStatus,
    RouteType,
    ScheduleRelationship,
    SeverityLevel,
    StopTimeScheduleRelationship,
    StopTimeUpdate,
    TimeEvent,
    TimeRange,
    TripDescriptor,
    TripUpdate,
    Vehicle,
    VehiclePosition,
    VehicleStatus,
)
from .time_utils import TimezoneLike, resolve_timezone

logger = logging.getLogger(__name__)

_pb = gtfs_realtime_pb2

_SEVERITY_BY_NAME = {
    "UNKNOWN_SEVERITY": SeverityLevel.UNKNOWN,
    "INFO": SeverityLevel.INFO,
    "WARNING": SeverityLevel.WARNING,
    "SEVERE": SeverityLevel.SEVERE,
}


def decode_feed(data: bytes) -> "gtfs_realtime_pb2.FeedMessage":
    """
    Deserialize a FeedMessage and check that it carries a header.

    Raises:
        ParseError: invalid_encoding for malformed bytes, missing_field("header")
            when the envelope has no header.
    """
    feed = _pb.FeedMessage()
    try:
        # MergeFromString does not enforce proto2 required fields, so missing
        # ones are reported below as missing_field instead of a decode failure.
        feed.MergeFromString(data)
    except (DecodeError, ValueError, TypeError) as e:
        raise ParseError.invalid_encoding(str(e)) from e

    if not feed.HasField("header"):
        raise ParseError.missing_field("header")
    return feed


def decode_vehicle_positions(data: bytes, tz: TimezoneLike = None) -> List[VehiclePosition]:
    """
    Decode the vehicle positions in a feed, in feed order.

    Raises:
        ParseError: If the feed is malformed or a vehicle entity lacks its
            position or vehicle descriptor.
    """
    zone = resolve_timezone(tz)
    feed = decode_feed(data)
    positions = [
        _convert_vehicle_position(entity.vehicle, entity.id, zone)
        for entity in feed.entity
        if entity.HasField("vehicle")
    ]
    logger.debug(f"Decoded {len(positions)} vehicle positions")
    return positions


def decode_trip_updates(data: bytes, tz: TimezoneLike = None) -> List[TripUpdate]:
    """
    Decode the trip updates in a feed, in feed order.

    Raises:
        ParseError: If the feed is malformed or a trip update lacks its trip descriptor.
    """
    zone = resolve_timezone(tz)
    feed = decode_feed(data)
    updates = [
        _convert_trip_update(entity.trip_update, entity.id, zone)
        for entity in feed.entity
        if entity.HasField("trip_update")
    ]
    logger.debug(f"Decoded {len(updates)} trip updates")
    return updates


def decode_alerts(data: bytes, tz: TimezoneLike = None) -> List[Alert]:
    """Decode the service alerts in a feed, in feed order."""
    zone = resolve_timezone(tz)
    feed = decode_feed(data)
    alerts = [
        _convert_alert(entity.alert, entity.id, zone)
        for entity in feed.entity
        if entity.HasField("alert")
    ]
    logger.debug(f"Decoded {len(alerts)} alerts")
    return alerts


def _convert_vehicle_position(proto, entity_id: str, zone) -> VehiclePosition:
    if not proto.HasField("position"):
        raise ParseError.missing_field("position")
    if not proto.HasField("vehicle"):
        raise ParseError.missing_field("vehicle")

    position = proto.position
    return VehiclePosition(
        id=entity_id,
        vehicle=_convert_vehicle(proto.vehicle),
        trip=_convert_trip_descriptor(proto.trip) if proto.HasField("trip") else None,
        position=Coordinate(latitude=position.latitude, longitude=position.longitude),
        bearing=position.bearing if position.HasField("bearing") else None,
        speed=position.speed if position.HasField("speed") else None,
        current_stop_sequence=proto.current_stop_sequence if proto.HasField("current_stop_sequence") else None,
        current_stop_id=proto.stop_id if proto.HasField("stop_id") else None,
        status=(
            _enum_by_name(VehicleStatus, _pb.VehiclePosition.VehicleStopStatus, proto.current_status, None)
            if proto.HasField("current_status")
            else None
        ),
        occupancy_status=(
            _enum_by_name(
                OccupancyStatus,
                _pb.VehiclePosition.OccupancyStatus,
                proto.occupancy_status,
                OccupancyStatus.UNKNOWN,
            )
            if proto.HasField("occupancy_status")
            else None
        ),
        timestamp=_timestamp_or_now(proto, zone),
    )


def _convert_trip_update(proto, entity_id: str, zone) -> TripUpdate:
    if not proto.HasField("trip"):
        raise ParseError.missing_field("trip")

    return TripUpdate(
        id=entity_id,
        trip=_convert_trip_descriptor(proto.trip),
        vehicle=_convert_vehicle(proto.vehicle) if proto.HasField("vehicle") else None,
        stop_time_updates=[_convert_stop_time_update(stu, zone) for stu in proto.stop_time_update],
        delay=proto.delay if proto.HasField("delay") else None,
        timestamp=_timestamp_or_now(proto, zone),
    )


def _convert_alert(proto, entity_id: str, zone) -> Alert:
    severity = SeverityLevel.UNKNOWN
    if proto.HasField("severity_level"):
        name = _pb.Alert.SeverityLevel.Name(proto.severity_level)
        severity = _SEVERITY_BY_NAME.get(name, SeverityLevel.UNKNOWN)

    url = _first_translation(proto.url) if proto.HasField("url") else None

    return Alert(
        id=entity_id,
        active_periods=[_convert_time_range(period, zone) for period in proto.active_period],
        informed_entities=[_convert_entity_selector(selector) for selector in proto.informed_entity],
        cause=(
            _enum_by_name(AlertCause, _pb.Alert.Cause, proto.cause, AlertCause.UNKNOWN_CAUSE)
            if proto.HasField("cause")
            else None
        ),
        effect=(
            _enum_by_name(AlertEffect, _pb.Alert.Effect, proto.effect, AlertEffect.UNKNOWN_EFFECT)
            if proto.HasField("effect")
            else None
        ),
        url=url or None,
        header_text=_first_translation(proto.header_text),
        description_text=_first_translation(proto.description_text),
        severity=severity,
    )


def _convert_vehicle(proto) -> Vehicle:
    return Vehicle(
        id=proto.id if proto.HasField("id") else "",
        label=proto.label if proto.HasField("label") else None,
        license_plate=proto.license_plate if proto.HasField("license_plate") else None,
    )


def _convert_trip_descriptor(proto) -> TripDescriptor:
    relationship = ScheduleRelationship.SCHEDULED
    if proto.HasField("schedule_relationship"):
        relationship = _enum_by_name(
            ScheduleRelationship,
            _pb.TripDescriptor.ScheduleRelationship,
            proto.schedule_relationship,
            ScheduleRelationship.SCHEDULED,
        )

    return TripDescriptor(
        trip_id=proto.trip_id if proto.HasField("trip_id") else None,
        route_id=proto.route_id if proto.HasField("route_id") else None,
        direction_id=proto.direction_id if proto.HasField("direction_id") else None,
        start_time=proto.start_time if proto.HasField("start_time") else None,
        start_date=proto.start_date if proto.HasField("start_date") else None,
        schedule_relationship=relationship,
    )


def _convert_stop_time_update(proto, zone) -> StopTimeUpdate:
    relationship = StopTimeScheduleRelationship.SCHEDULED
    if proto.HasField("schedule_relationship"):
        relationship = _enum_by_name(
            StopTimeScheduleRelationship,
            _pb.TripUpdate.StopTimeUpdate.ScheduleRelationship,
            proto.schedule_relationship,
            StopTimeScheduleRelationship.SCHEDULED,
        )

    return StopTimeUpdate(
        stop_sequence=proto.stop_sequence if proto.HasField("stop_sequence") else None,
        stop_id=proto.stop_id if proto.HasField("stop_id") else None,
        arrival=_convert_time_event(proto.arrival, zone) if proto.HasField("arrival") else None,
        departure=_convert_time_event(proto.departure, zone) if proto.HasField("departure") else None,
        schedule_relationship=relationship,
    )


def _convert_time_event(proto, zone) -> TimeEvent:
    return TimeEvent(
        delay=proto.delay if proto.HasField("delay") else None,
        time=datetime.fromtimestamp(proto.time, zone) if proto.HasField("time") else None,
        uncertainty=proto.uncertainty if proto.HasField("uncertainty") else None,
    )


def _convert_time_range(proto, zone) -> TimeRange:
    start = datetime.fromtimestamp(proto.start, zone) if proto.HasField("start") else None
    end = datetime.fromtimestamp(proto.end, zone) if proto.HasField("end") else None
    return TimeRange(start=start, end=end)


def _convert_entity_selector(proto) -> EntitySelector:
    route_type: Optional[RouteType] = None
    if proto.HasField("route_type"):
        try:
            route_type = RouteType(proto.route_type)
        except ValueError:
            logger.debug(f"Ignoring unknown route_type {proto.route_type}")

    return EntitySelector(
        agency_id=proto.agency_id if proto.HasField("agency_id") else None,
        route_id=proto.route_id if proto.HasField("route_id") else None,
        route_type=route_type,
        trip=_convert_trip_descriptor(proto.trip) if proto.HasField("trip") else None,
        stop_id=proto.stop_id if proto.HasField("stop_id") else None,
    )


def _first_translation(translated_string) -> str:
    if translated_string.translation:
        return translated_string.translation[0].text
    return ""


def _timestamp_or_now(proto, zone) -> datetime:
    if proto.HasField("timestamp"):
        return datetime.fromtimestamp(proto.timestamp, zone)
    return datetime.now(zone)


def _enum_by_name(enum_cls, proto_enum, value, default):
    """Map a protobuf enum number onto the model enum with the same name."""
    try:
        return enum_cls(proto_enum.Name(value))
    except ValueError:
        return default
