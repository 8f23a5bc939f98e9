import unittest
from datetime import date

from device_rental.db.feed import ChangeFeed
from device_rental.schemas.devices import CatalogDevice
from device_rental.services.rental_board import (
    BoardState,
    LocalWrite,
    ManualDeviceAdded,
    RemoteSnapshot,
    RemoteUnavailable,
    RentalBoard,
    reduce,
)
from device_rental.services.submit_lock_service import SubmitLockedError, SubmitLocks


TODAY = date(2026, 1, 20)
CATALOG = (
    CatalogDevice(id="D1", model="Galaxy S24", os="Android", osVersion="14"),
    CatalogDevice(id="D2", model="iPhone 15", os="iOS", osVersion="17"),
)


def _rental(rental_id, device_id="D1", renter="Alice", end_date=date(2026, 3, 31)):
    return {
        "rentalID": rental_id,
        "deviceID": device_id,
        "renterName": renter,
        "rentalType": "quarterly",
        "status": "approved",
        "startDate": date(2026, 1, 20),
        "endDate": end_date,
        "createdAt": None,
    }


class ReducerTests(unittest.TestCase):
    def test_local_write_then_echo_leaves_single_record(self):
        state = BoardState(catalog=CATALOG)
        state = reduce(state, LocalWrite("r1", _rental("r1"), written_at=10.0))
        self.assertEqual(len(state.rentals()), 1)

        state = reduce(state, RemoteSnapshot((_rental("r1"),), as_of=11.0))
        self.assertEqual(len(state.rentals()), 1)
        self.assertEqual(dict(state.pending), {})
        self.assertTrue(state.loaded)

    def test_snapshot_older_than_local_write_keeps_optimistic_record(self):
        state = reduce(BoardState(catalog=CATALOG), LocalWrite("r1", _rental("r1"), written_at=10.0))
        state = reduce(state, RemoteSnapshot((), as_of=9.0))
        self.assertEqual([rental["rentalID"] for rental in state.rentals()], ["r1"])

    def test_stale_snapshot_does_not_resurrect_local_delete(self):
        state = reduce(BoardState(catalog=CATALOG), RemoteSnapshot((_rental("r1"),), as_of=5.0))
        state = reduce(state, LocalWrite("r1", None, written_at=10.0))
        self.assertEqual(state.rentals(), [])

        state = reduce(state, RemoteSnapshot((_rental("r1"),), as_of=9.0))
        self.assertEqual(state.rentals(), [])

        state = reduce(state, RemoteSnapshot((), as_of=12.0))
        self.assertEqual(state.rentals(), [])
        self.assertEqual(dict(state.pending), {})

    def test_out_of_order_snapshot_is_ignored(self):
        state = reduce(BoardState(catalog=CATALOG), LocalWrite("r1", _rental("r1"), written_at=2.0))
        state = reduce(state, RemoteSnapshot((_rental("r1"),), as_of=3.0))
        self.assertEqual(dict(state.pending), {})

        state = reduce(state, RemoteSnapshot((), as_of=1.0))
        self.assertEqual([rental["rentalID"] for rental in state.rentals()], ["r1"])
        self.assertEqual(state.last_as_of, 3.0)

    def test_reduce_does_not_modify_input_state(self):
        before = BoardState(catalog=CATALOG)
        reduce(before, LocalWrite("r1", _rental("r1"), written_at=1.0))
        reduce(before, RemoteSnapshot((_rental("r2"),), as_of=2.0))
        self.assertEqual(before.rentals(), [])
        self.assertFalse(before.loaded)

    def test_unavailable_marks_degraded_until_next_snapshot(self):
        state = reduce(BoardState(catalog=CATALOG), RemoteSnapshot((_rental("r1"),), as_of=1.0))
        state = reduce(state, RemoteUnavailable())
        self.assertTrue(state.degraded)
        self.assertEqual(len(state.rentals()), 1)

        state = reduce(state, RemoteSnapshot((), as_of=2.0))
        self.assertFalse(state.degraded)

    def test_manual_device_is_listed_once(self):
        manual = CatalogDevice(id="EXT-1", model="Xperia 5", os="Android", osVersion="13", isManualEntry=True)
        state = reduce(BoardState(catalog=CATALOG), ManualDeviceAdded(manual))
        state = reduce(state, ManualDeviceAdded(manual))
        state = reduce(state, ManualDeviceAdded(CatalogDevice(id="D1", isManualEntry=True)))
        self.assertEqual([device.id for device in state.devices()], ["D1", "D2", "EXT-1"])
        self.assertEqual(state.devices()[0].model, "Galaxy S24")


class RentalBoardTests(unittest.TestCase):
    def setUp(self):
        self.feed = ChangeFeed("rentals-test")
        self.board = RentalBoard(CATALOG)
        self.board.attach(self.feed)

    def tearDown(self):
        self.board.detach()

    def test_feed_publish_updates_view(self):
        self.feed.publish([_rental("r1", renter="Alice")], self.board.mark())
        views = {view.id: view for view in self.board.view(TODAY)}
        self.assertEqual(views["D1"].status, "rented")
        self.assertEqual(views["D1"].rentedBy, "Alice")
        self.assertEqual(views["D2"].status, "available")

    def test_optimistic_write_visible_before_echo(self):
        self.board.record_local_write(_rental("r1", device_id="D2", renter="Bob"), self.board.mark())
        views = {view.id: view for view in self.board.view(TODAY)}
        self.assertEqual(views["D2"].rentedBy, "Bob")

    def test_detach_stops_updates(self):
        self.board.detach()
        self.assertEqual(self.feed.publish([_rental("r1")], self.board.mark()), 0)
        self.assertEqual(self.board.rentals(), [])

    def test_failing_subscriber_does_not_block_others(self):
        def broken(*args):
            raise RuntimeError("boom")

        self.feed.subscribe(broken)
        with self.assertLogs("device_rental.feed", level="ERROR"):
            notified = self.feed.publish([_rental("r1")], self.board.mark())
        self.assertEqual(notified, 2)
        self.assertEqual(len(self.board.rentals()), 1)

    def test_find_device_includes_manual_entries(self):
        self.assertIsNone(self.board.find_device("EXT-1"))
        self.board.add_manual_device(CatalogDevice(id="EXT-1", model="Xperia", isManualEntry=True))
        self.assertTrue(self.board.find_device("EXT-1").isManualEntry)


class SubmitLockTests(unittest.TestCase):
    def setUp(self):
        self.now = 100.0
        self.locks = SubmitLocks(cooldown_seconds=3, clock=lambda: self.now)

    def test_second_submit_inside_cooldown_is_rejected(self):
        self.locks.acquire("rental", "10.0.0.1")
        with self.assertRaises(SubmitLockedError) as ctx:
            self.locks.acquire("rental", "10.0.0.1")
        self.assertAlmostEqual(ctx.exception.retry_after, 3.0)

    def test_lock_expires_after_cooldown(self):
        self.locks.acquire("rental", "10.0.0.1")
        self.now += 3.0
        self.assertFalse(self.locks.is_locked("rental", "10.0.0.1"))
        self.locks.acquire("rental", "10.0.0.1")

    def test_locks_are_per_action_and_caller(self):
        self.locks.acquire("rental", "10.0.0.1")
        self.locks.acquire("extend", "10.0.0.1")
        self.locks.acquire("rental", "10.0.0.2")
        self.assertTrue(self.locks.is_locked("rental", "10.0.0.1"))
        self.locks.release_all()
        self.assertFalse(self.locks.is_locked("rental", "10.0.0.1"))


if __name__ == "__main__":
    unittest.main()
