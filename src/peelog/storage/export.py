"""CSV export of a user's event history."""

from __future__ import annotations

import csv
import logging
from datetime import datetime, tzinfo
from pathlib import Path

from peelog.storage.event_store import EventStore

logger = logging.getLogger(__name__)

CSV_HEADER = ["Date", "Time", "Quality", "Hydration Status", "Notes", "Location"]


def default_export_name(now: datetime | None = None) -> str:
    return f"PeeLog_Export_{(now or datetime.now()).strftime('%Y-%m-%d')}.csv"


async def export_events_csv(store: EventStore, owner_id: str | None, path: Path, tz: tzinfo) -> int:
    """Write every visible event of ``owner_id`` to ``path``, oldest first.

    Dates and times are rendered in ``tz``. Returns the number of rows written.
    """
    events = await store.list_events(owner_id, newest_first=False)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for event in events:
            local = event.timestamp.astimezone(tz)
            writer.writerow(
                [
                    local.strftime("%Y-%m-%d"),
                    local.strftime("%H:%M:%S"),
                    event.quality.label,
                    event.quality.description,
                    event.notes or "",
                    event.location_name or "",
                ]
            )

    logger.info(f"Exported {len(events)} events to {path}")
    return len(events)
