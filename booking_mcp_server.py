from __future__ import annotations

import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from charge_booking import BookingWorkflow, BookingYamlLedger, Caller, Role, StationYamlDirectory

mcp = FastMCP(
    "Charge Booking MCP Server",
    instructions="Expose station availability and booking data from the charge_booking project.",
    json_response=True,
)

DATA_DIR = Path(os.environ.get("CHARGE_BOOKING_DATA_DIR", Path(__file__).parent / "data"))
LEDGER = BookingYamlLedger(DATA_DIR)
STATIONS = StationYamlDirectory(DATA_DIR)
WORKFLOW = BookingWorkflow(LEDGER, STATIONS)
# tools run with read-only backoffice visibility
SERVICE_CALLER = Caller(caller_id="mcp-service", role=Role.BACKOFFICE)


@mcp.resource("booking://stations")
async def list_stations() -> list[dict]:
    """List active charging stations with their slot capacity."""
    return [
        {"station_id": station.station_id, "name": station.name, "capacity": station.capacity}
        for station in STATIONS.list_all()
        if station.is_active
    ]


@mcp.tool()
def get_station_availability(station_id: str, date: str, tz_offset_minutes: int = 0) -> dict:
    """Return free slots per 30-minute local slot for one day at a station."""
    grid = WORKFLOW.get_availability(SERVICE_CALLER, station_id, date, tz_offset_minutes)
    return grid.to_dict()


@mcp.tool()
def list_station_bookings(station_id: str, active_only: bool = True) -> list[dict[str, str]]:
    """Return bookings of a station, optionally only those still holding capacity."""
    records = WORKFLOW.list_by_station(SERVICE_CALLER, station_id)
    return [
        {key: value for key, value in record.to_dict().items() if key != "session_token"}
        for record in records
        if record.is_active or not active_only
    ]


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
