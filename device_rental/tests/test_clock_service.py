import os
import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError


os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("CREDENTIAL_DB_URL", "sqlite+pysqlite:///:memory:")

from device_rental.db.base import Base
from device_rental.db.session import SessionLocalRental, engine_rental
from device_rental.services.clock_service import RENTAL_TZ, ClockSync


class UnreachableDb:
    def __init__(self):
        self.rollbacks = 0

    def get(self, model, identifier):
        raise OperationalError("SELECT", {}, Exception("store unreachable"))

    def rollback(self):
        self.rollbacks += 1


class ClockSyncTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine_rental)
        Base.metadata.create_all(bind=engine_rental)

    def test_sync_against_store_gives_small_offset(self):
        clock = ClockSync()
        with SessionLocalRental() as db:
            offset = clock.sync(db)
            # The marker row is reused on the next round trip.
            clock.sync(db)
        self.assertTrue(clock.synced)
        self.assertLess(abs(offset), timedelta(seconds=5))
        self.assertEqual(clock.now().tzinfo, RENTAL_TZ)

    def test_offset_reflects_skewed_local_clock(self):
        skewed = lambda: datetime.now(timezone.utc) - timedelta(hours=2)
        clock = ClockSync(local_clock=skewed)
        with SessionLocalRental() as db:
            offset = clock.sync(db)
        self.assertLess(abs(offset - timedelta(hours=2)), timedelta(seconds=5))
        self.assertLess(abs(clock.now() - datetime.now(timezone.utc)), timedelta(seconds=5))

    def test_failed_sync_falls_back_to_local_time(self):
        fixed = datetime(2026, 1, 20, 3, 0, 0, tzinfo=timezone.utc)
        clock = ClockSync(local_clock=lambda: fixed)
        db = UnreachableDb()
        with self.assertLogs("device_rental.clock", level="WARNING"):
            offset = clock.sync(db)
        self.assertEqual(offset, timedelta(0))
        self.assertFalse(clock.synced)
        self.assertEqual(db.rollbacks, 1)
        self.assertEqual(clock.now(), datetime(2026, 1, 20, 12, 0, 0, tzinfo=RENTAL_TZ))
        self.assertEqual(clock.status()["synced"], False)

    def test_naive_local_clock_is_read_as_utc(self):
        clock = ClockSync(local_clock=lambda: datetime(2026, 1, 19, 16, 30, 0))
        self.assertEqual(clock.today().isoformat(), "2026-01-20")


if __name__ == "__main__":
    unittest.main()
