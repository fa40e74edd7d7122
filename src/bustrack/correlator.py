"""Combines scheduled stop times with real-time trip updates into arrivals."""

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import TimeFormatError
from .gtfs_loader import StaticQueryFacade
from .models import (
    Arrival,
    Route,
    StopTime,
    StopTimeUpdate,
    TimeEvent,
    Trip,
    TripDetails,
    TripUpdate,
    VehiclePosition,
)
from .time_utils import TimezoneLike, resolve_timezone, to_absolute

logger = logging.getLogger(__name__)


class ArrivalCorrelator:
    """
    Builds Arrival records for a stop from static stop times and real-time trip updates.

    Trip updates are matched to static trips with a fallback chain, first
    match wins:
    - exact trip_id
    - route_id plus start_time equal to the trip's first scheduled departure
    - route_id plus a stop time update at the same stop_sequence

    Stop times whose trip or route cannot be resolved, or whose departure time
    is malformed, are dropped rather than failing the whole pass.
    """

    def __init__(self, store: StaticQueryFacade, timezone: TimezoneLike = None):
        self.store = store
        self.timezone = resolve_timezone(timezone)

    def correlate(
        self,
        stop_id: str,
        stop_times: Iterable[StopTime],
        trip_updates: Sequence[TripUpdate],
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Arrival]:
        """
        Build, deduplicate and truncate arrivals for a stop.

        Args:
            stop_id: The stop being queried.
            stop_times: Candidate stop times, already filtered to upcoming
                departures of services active today.
            trip_updates: Every trip update currently in the real-time feed.
            limit: Maximum number of arrivals to return, or None for all.
            now: Reference time; the service day is taken from it.

        Returns:
            Arrivals sorted by best known time.
        """
        arrivals = self.build_arrivals(stop_id, stop_times, trip_updates, now)
        return self.deduplicate_arrivals(arrivals, limit)

    def build_arrivals(
        self,
        stop_id: str,
        stop_times: Iterable[StopTime],
        trip_updates: Sequence[TripUpdate],
        now: Optional[datetime] = None,
    ) -> List[Arrival]:
        """One Arrival per resolvable stop time, in input order."""
        now = self._now(now)
        first_departures: Dict[str, Optional[str]] = {}
        arrivals = []

        for stop_time in stop_times:
            trip = self.store.get_trip(stop_time.trip_id)
            if trip is None:
                logger.debug(f"Dropping stop time: trip {stop_time.trip_id} not found")
                continue
            route = self.store.get_route(trip.route_id)
            if route is None:
                logger.debug(f"Dropping stop time of trip {trip.id}: route {trip.route_id} not found")
                continue
            try:
                scheduled = to_absolute(stop_time.departure_time, now, self.timezone)
            except TimeFormatError as e:
                logger.debug(f"Dropping stop time of trip {trip.id}: {e}")
                continue

            estimated, delay = None, None
            update = self.match_trip_update(trip, stop_time, trip_updates, first_departures)
            if update is not None:
                estimated, delay = self.extract_realtime_info(update, stop_id, stop_time.stop_sequence, scheduled)

            arrivals.append(
                Arrival(
                    stop_id=stop_id,
                    route=route,
                    trip=trip,
                    scheduled_time=scheduled,
                    estimated_time=estimated,
                    delay=delay,
                    realtime_available=estimated is not None,
                    stop_sequence=stop_time.stop_sequence,
                )
            )

        return arrivals

    def match_trip_update(
        self,
        trip: Trip,
        stop_time: StopTime,
        trip_updates: Sequence[TripUpdate],
        first_departures: Optional[Dict[str, Optional[str]]] = None,
    ) -> Optional[TripUpdate]:
        """
        Find the trip update describing a static trip, or None.

        Args:
            trip: The static trip.
            stop_time: The stop time being correlated (supplies stop_sequence).
            trip_updates: Candidate updates, searched in feed order.
            first_departures: Optional per-pass memo of trip_id -> first departure time.
        """
        for update in trip_updates:
            if update.trip.trip_id == trip.id:
                return update

        start_time = self._first_departure(trip.id, first_departures)
        if start_time is not None:
            for update in trip_updates:
                descriptor = update.trip
                if descriptor.route_id == trip.route_id and descriptor.start_time == start_time:
                    return update

        for update in trip_updates:
            if update.trip.route_id != trip.route_id:
                continue
            if any(stu.stop_sequence == stop_time.stop_sequence for stu in update.stop_time_updates):
                return update

        return None

    def extract_realtime_info(
        self,
        update: TripUpdate,
        stop_id: str,
        stop_sequence: Optional[int],
        scheduled_time: datetime,
    ) -> Tuple[Optional[datetime], Optional[int]]:
        """
        Estimated time and delay for one stop of a matched trip update.

        Returns:
            (estimated_time, delay_seconds), or (None, None) when the update has
            no usable prediction for this stop.
        """
        stop_time_update = _find_stop_time_update(update.stop_time_updates, stop_id, stop_sequence)
        if stop_time_update is None:
            return None, None

        event = _preferred_event(stop_time_update)
        if event is None:
            return None, None

        if event.time is not None:
            estimated = event.time
        else:
            estimated = scheduled_time + timedelta(seconds=event.delay)

        if event.delay is not None:
            delay = event.delay
        else:
            delay = int(round((estimated - scheduled_time).total_seconds()))
        return estimated, delay

    def deduplicate_arrivals(self, arrivals: Iterable[Arrival], limit: Optional[int] = None) -> List[Arrival]:
        """
        Collapse arrivals for the same route and headsign in the same minute.

        The feed can publish several trip updates for one physical departure.
        The earliest arrival of each (route, headsign, minute) group is kept.
        """
        ordered = sorted(arrivals, key=lambda a: a.best_time)
        seen = set()
        unique = []
        for arrival in ordered:
            key = (arrival.route.id, arrival.trip.headsign or "", _minute_bucket(arrival.best_time))
            if key in seen:
                logger.debug(f"Dropping duplicate arrival of trip {arrival.trip.id} at {arrival.best_time}")
                continue
            seen.add(key)
            unique.append(arrival)

        unique.sort(key=lambda a: a.best_time)
        if limit is not None:
            unique = unique[:limit]
        return unique

    def build_trip_stop_arrivals(
        self,
        trip: Trip,
        route: Route,
        stop_times: Iterable[StopTime],
        trip_update: Optional[TripUpdate] = None,
        now: Optional[datetime] = None,
    ) -> List[Arrival]:
        """Arrivals for every stop of a single trip, in stop_sequence order."""
        now = self._now(now)
        arrivals = []
        for stop_time in stop_times:
            try:
                scheduled = to_absolute(stop_time.departure_time, now, self.timezone)
            except TimeFormatError as e:
                logger.debug(f"Skipping stop {stop_time.stop_id} of trip {trip.id}: {e}")
                continue

            estimated, delay = None, None
            if trip_update is not None:
                estimated, delay = self.extract_realtime_info(
                    trip_update, stop_time.stop_id, stop_time.stop_sequence, scheduled
                )

            arrivals.append(
                Arrival(
                    stop_id=stop_time.stop_id,
                    route=route,
                    trip=trip,
                    scheduled_time=scheduled,
                    estimated_time=estimated,
                    delay=delay,
                    realtime_available=estimated is not None,
                    stop_sequence=stop_time.stop_sequence,
                )
            )
        return arrivals

    def build_trip_details(
        self,
        trip: Trip,
        route: Route,
        stop_times: Sequence[StopTime],
        trip_update: Optional[TripUpdate] = None,
        vehicle_position: Optional[VehiclePosition] = None,
        now: Optional[datetime] = None,
    ) -> TripDetails:
        """Assemble TripDetails from a trip's stops and whatever real-time data matched it."""
        stop_arrivals = self.build_trip_stop_arrivals(trip, route, stop_times, trip_update, now)

        delay = trip_update.delay if trip_update is not None else None
        if delay is None:
            delay = next((a.delay for a in stop_arrivals if a.delay is not None), None)

        return TripDetails(
            trip=trip,
            route=route,
            stop_arrivals=stop_arrivals,
            vehicle_position=vehicle_position,
            delay=delay,
            realtime_available=any(a.realtime_available for a in stop_arrivals),
            progress=self.trip_progress(vehicle_position, len(stop_arrivals)),
        )

    @staticmethod
    def trip_progress(vehicle_position: Optional[VehiclePosition], stop_count: int) -> Optional[float]:
        """Fraction of the trip completed, from the vehicle's current stop sequence."""
        if vehicle_position is None or vehicle_position.current_stop_sequence is None or stop_count <= 0:
            return None
        return min(1.0, max(0.0, vehicle_position.current_stop_sequence / stop_count))

    def _first_departure(self, trip_id: str, memo: Optional[Dict[str, Optional[str]]]) -> Optional[str]:
        if memo is not None and trip_id in memo:
            return memo[trip_id]
        stop_times = self.store.get_stop_times(trip_id)
        first = stop_times[0].departure_time if stop_times else None
        if memo is not None:
            memo[trip_id] = first
        return first

    def _now(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self.timezone)
        return now


def _find_stop_time_update(
    updates: Sequence[StopTimeUpdate], stop_id: str, stop_sequence: Optional[int]
) -> Optional[StopTimeUpdate]:
    # AUVASA omits stop_id, so stop_sequence is the usual key
    for stop_time_update in updates:
        if stop_time_update.stop_id is not None and stop_time_update.stop_id == stop_id:
            return stop_time_update
    if stop_sequence is None:
        return None
    for stop_time_update in updates:
        if stop_time_update.stop_sequence == stop_sequence:
            return stop_time_update
    return None


def _preferred_event(stop_time_update: StopTimeUpdate) -> Optional[TimeEvent]:
    """Departure if it carries a prediction, else arrival, else None."""
    for event in (stop_time_update.departure, stop_time_update.arrival):
        if event is not None and event.has_prediction:
            return event
    return None


def _minute_bucket(moment: datetime) -> int:
    return int(moment.timestamp() // 60)
