"""Example usage of BusTrackClient."""

import asyncio
import logging
import sys
from pathlib import Path

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack import BusTrackClient, BusTrackError, NotFoundError

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


async def print_stop_data(stop_input: str):
    """
    Fetch and display bus arrivals and alerts for a stop.

    Args:
        stop_input: Stop id or part of a stop name (e.g., "813" or "Plaza Zorrilla")
    """
    print(f"\n{'='*70}")
    print(f"Fetching data for: {stop_input}")
    print(f"{'='*70}\n")

    async with BusTrackClient() as client:
        # Downloads the GTFS archive on first run
        await client.load_static_data()

        try:
            stop = client.get_stop(stop_input)
        except NotFoundError:
            matches = client.search_stops(stop_input, limit=1)
            if not matches:
                print(f"No stop found matching '{stop_input}'")
                sys.exit(1)
            stop = matches[0]

        print(f"Stop: {stop.name} (ID: {stop.id})")
        routes = client.get_routes_for_stop(stop.id)
        print(f"Lines serving this stop: {', '.join(r.display_name for r in routes)}\n")

        print("NEXT ARRIVALS:")
        print("-" * 70)
        arrivals = await client.get_next_arrivals(stop.id, limit=8)
        if arrivals:
            for arrival in arrivals:
                marker = "*" if arrival.realtime_available else " "
                delay = f" ({arrival.delay_description})" if arrival.delay_description else ""
                print(
                    f" {marker} Line {arrival.route.display_name:>4}: "
                    f"{arrival.best_time:%H:%M} → {arrival.trip.headsign or '?'}{delay}"
                )
            print("\n  * real-time estimate")
        else:
            print("  No arrivals found")

        print("\n" + "=" * 70)
        print("SERVICE ALERTS:")
        print("-" * 70)
        try:
            alerts = await client.fetch_alerts(stop_id=stop.id)
        except BusTrackError as e:
            logger.warning(f"Could not fetch alerts: {e}")
            alerts = []
        if alerts:
            for alert in alerts:
                print(f"\n[{alert.severity.name}] {alert.header_text}")
                print(f"  {alert.description_text}")
        else:
            print("  No service alerts")

        print("\n" + "=" * 70 + "\n")


async def watch_stop(stop_id: str):
    """Print arrivals for a stop every 30 seconds until interrupted."""
    async with BusTrackClient() as client:
        await client.load_static_data()
        async with client.subscribe_to_arrivals(stop_id) as subscription:
            async for arrivals in subscription:
                print(f"\n{len(arrivals)} upcoming departures from {stop_id}:")
                for arrival in arrivals:
                    print(f"  {arrival}")


if __name__ == "__main__":
    if len(sys.argv) > 2 and sys.argv[1] == "--watch":
        try:
            asyncio.run(watch_stop(sys.argv[2]))
        except KeyboardInterrupt:
            print("\nGoodbye!")
    elif len(sys.argv) > 1:
        asyncio.run(print_stop_data(" ".join(sys.argv[1:])))
    else:
        print("Usage: example.py <stop id or name> | --watch <stop id>")
        sys.exit(1)
