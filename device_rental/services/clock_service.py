from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from device_rental.models.rental_models import ServerTime


RENTAL_TZ = ZoneInfo((os.environ.get("RENTAL_TIMEZONE") or "Asia/Seoul").strip())
MARKER_ID = "current"
CLOCK_LOGGER = logging.getLogger("device_rental.clock")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_local(value: datetime) -> datetime:
    """Express an instant in the rental calendar zone; naive values are local wall time."""
    if value.tzinfo is None:
        return value.replace(tzinfo=RENTAL_TZ)
    return value.astimezone(RENTAL_TZ)


class ClockSync:
    """Single shared notion of "now" for one process.

    ``sync`` writes a marker row whose timestamp is generated by the store, reads it
    back and keeps ``offset = store timestamp - local time at read``. One attempt
    only; on failure the clock stays unsynced and ``now`` is plain local time.
    """

    def __init__(self, local_clock: Callable[[], datetime] = _utc_now):
        self._local_clock = local_clock
        self.offset = timedelta(0)
        self.synced = False
        self.synced_at: datetime | None = None

    def local_now(self) -> datetime:
        value = self._local_clock()
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def sync(self, db: Session) -> timedelta:
        try:
            marker = db.get(ServerTime, MARKER_ID)
            if marker is None:
                db.add(ServerTime(MarkerID=MARKER_ID))
            else:
                marker.Timestamp = func.now()
            db.commit()
            stored = db.execute(
                select(ServerTime.Timestamp).where(ServerTime.MarkerID == MARKER_ID)
            ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            db.rollback()
            CLOCK_LOGGER.warning("Clock sync failed, using local time: %s", exc)
            return self._fall_back()

        if stored is None:
            CLOCK_LOGGER.warning("Clock sync marker has no timestamp, using local time")
            return self._fall_back()

        # SQLite hands back CURRENT_TIMESTAMP as a naive UTC value.
        store_time = stored if stored.tzinfo else stored.replace(tzinfo=timezone.utc)
        local_time = self.local_now()
        self.offset = store_time - local_time
        self.synced = True
        self.synced_at = local_time
        CLOCK_LOGGER.info(
            "Clock synced store_time=%s offset_seconds=%s",
            store_time.isoformat(),
            round(self.offset.total_seconds()),
        )
        return self.offset

    def _fall_back(self) -> timedelta:
        self.offset = timedelta(0)
        self.synced = False
        return self.offset

    def now(self) -> datetime:
        if not self.synced:
            return to_local(self.local_now())
        return to_local(self.local_now() + self.offset)

    def today(self) -> date:
        return self.now().date()

    def status(self) -> dict[str, Any]:
        return {
            "serverTime": self.now().isoformat(),
            "clientTime": to_local(self.local_now()).isoformat(),
            "offsetSeconds": round(self.offset.total_seconds()),
            "synced": self.synced,
            "timezone": str(RENTAL_TZ),
        }
