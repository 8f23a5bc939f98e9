import json
import tempfile
import unittest
from datetime import date
from pathlib import Path

from device_rental.schemas.devices import CatalogDevice
from device_rental.services.availability_service import (
    CatalogError,
    calculate_days_overdue,
    filter_devices,
    load_catalog,
    reconcile,
    summarize_devices,
)


TODAY = date(2026, 1, 15)


def _device(device_id, note="", os_name="Android", device_type="phone", model=None):
    return CatalogDevice(
        id=device_id,
        type=device_type,
        model=model or f"Model {device_id}",
        os=os_name,
        osVersion="14",
        note=note,
    )


def _rental(rental_id, device_id, end_date, renter="Alice", status="approved", start_date=date(2026, 1, 1)):
    return {
        "rentalID": rental_id,
        "deviceID": device_id,
        "renterName": renter,
        "rentalType": "quarterly",
        "status": status,
        "startDate": start_date,
        "endDate": end_date,
        "createdAt": None,
    }


def _by_id(views):
    return {view.id: view for view in views}


class ReconcileTests(unittest.TestCase):
    def test_disqualifying_note_is_unavailable_without_rental(self):
        catalog = [
            _device("D1", note="screen broken"),
            _device("D2", note="unsupported OS"),
            _device("D3", note="전원 불량"),
            _device("D4", note="sticker on the back"),
        ]
        views = _by_id(reconcile(catalog, [], TODAY))
        self.assertEqual(views["D1"].status, "unavailable")
        self.assertEqual(views["D2"].status, "unavailable")
        self.assertEqual(views["D3"].status, "unavailable")
        self.assertEqual(views["D4"].status, "available")

    def test_end_date_yesterday_is_overdue_by_one_day(self):
        views = _by_id(reconcile([_device("D1")], [_rental("r1", "D1", date(2026, 1, 14))], TODAY))
        self.assertEqual(views["D1"].status, "overdue")
        self.assertEqual(views["D1"].daysOverdue, 1)
        self.assertEqual(views["D1"].rentedBy, "Alice")

    def test_end_date_today_is_rented(self):
        views = _by_id(reconcile([_device("D1")], [_rental("r1", "D1", TODAY)], TODAY))
        self.assertEqual(views["D1"].status, "rented")
        self.assertIsNone(views["D1"].daysOverdue)
        self.assertEqual(views["D1"].rentalID, "r1")

    def test_overdue_delay_in_whole_days(self):
        views = _by_id(reconcile([_device("D2")], [_rental("r2", "D2", date(2026, 1, 10))], TODAY))
        self.assertEqual(views["D2"].status, "overdue")
        self.assertEqual(views["D2"].daysOverdue, 5)
        self.assertEqual(calculate_days_overdue(date(2026, 1, 16), TODAY), 0)

    def test_pending_rental_occupies_device(self):
        views = _by_id(reconcile([_device("D1")], [_rental("r1", "D1", TODAY, status="pending")], TODAY))
        self.assertEqual(views["D1"].status, "rented")
        self.assertEqual(views["D1"].rentalStatus, "pending")

    def test_terminal_and_orphan_rentals_are_ignored(self):
        rentals = [
            _rental("r1", "D1", TODAY, status="returned"),
            _rental("r2", "GHOST", TODAY),
        ]
        views = reconcile([_device("D1")], rentals, TODAY)
        self.assertEqual([view.id for view in views], ["D1"])
        self.assertEqual(views[0].status, "available")

    def test_running_rental_outranks_overdue_one(self):
        rentals = [
            _rental("r-new", "D1", date(2026, 2, 28), renter="Bob"),
            _rental("r-old", "D1", date(2026, 1, 5), renter="Alice"),
        ]
        view = reconcile([_device("D1")], rentals, TODAY)[0]
        self.assertEqual(view.status, "rented")
        self.assertEqual(view.rentedBy, "Bob")

    def test_rental_overrides_disqualifying_note(self):
        view = reconcile([_device("D1", note="broken")], [_rental("r1", "D1", TODAY)], TODAY)[0]
        self.assertEqual(view.status, "rented")

    def test_ordering_by_status_then_catalog_order(self):
        catalog = [
            _device("U1", note="broken"),
            _device("R1"),
            _device("A1"),
            _device("O1"),
            _device("A2"),
        ]
        rentals = [
            _rental("r1", "R1", date(2026, 3, 31)),
            _rental("r2", "O1", date(2026, 1, 1)),
        ]
        views = reconcile(catalog, rentals, TODAY)
        self.assertEqual([view.id for view in views], ["O1", "A1", "A2", "R1", "U1"])

    def test_reconcile_is_pure(self):
        catalog = [_device("D1"), _device("D2", note="broken"), _device("D3")]
        rentals = [_rental("r1", "D1", date(2026, 1, 10)), _rental("r3", "D3", date(2026, 2, 1))]
        snapshot = json.dumps(rentals, default=str, sort_keys=True)

        first = reconcile(catalog, rentals, TODAY)
        second = reconcile(catalog, rentals, TODAY)

        self.assertEqual(first, second)
        self.assertEqual(json.dumps(rentals, default=str, sort_keys=True), snapshot)
        self.assertEqual([device.id for device in catalog], ["D1", "D2", "D3"])


class FilterAndStatsTests(unittest.TestCase):
    def setUp(self):
        catalog = [
            _device("AND-1", model="Galaxy S24"),
            _device("AND-2", model="Pixel 7", note="broken"),
            _device("IOS-1", os_name="iOS", model="iPhone 15"),
            _device("IOS-2", os_name="iOS", device_type="tablet", model="iPad Air"),
        ]
        rentals = [
            _rental("r1", "AND-1", date(2026, 3, 31)),
            _rental("r2", "IOS-2", date(2026, 1, 10)),
        ]
        self.views = reconcile(catalog, rentals, TODAY)

    def test_filters(self):
        self.assertEqual([v.id for v in filter_devices(self.views, search="galaxy")], ["AND-1"])
        self.assertEqual([v.id for v in filter_devices(self.views, search="ios-1")], ["IOS-1"])
        self.assertEqual([v.id for v in filter_devices(self.views, os_name="iOS")], ["IOS-2", "IOS-1"])
        self.assertEqual([v.id for v in filter_devices(self.views, device_type="tablet")], ["IOS-2"])
        self.assertEqual([v.id for v in filter_devices(self.views, status="unavailable")], ["AND-2"])
        self.assertEqual(len(filter_devices(self.views, status="all", os_name="all")), 4)

    def test_summary(self):
        stats = summarize_devices(self.views)
        self.assertEqual(stats["total"], 4)
        self.assertEqual(stats["available"], 1)
        self.assertEqual(stats["rented"], 1)
        self.assertEqual(stats["overdue"], 1)
        self.assertEqual(stats["unavailable"], 1)
        self.assertEqual(stats["percentages"]["available"], 25.0)

    def test_summary_of_empty_board(self):
        stats = summarize_devices([])
        self.assertEqual(stats["total"], 0)
        self.assertEqual(stats["percentages"]["rented"], 0.0)


class CatalogLoaderTests(unittest.TestCase):
    def test_skips_malformed_and_duplicate_entries(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "devices.json"
            path.write_text(
                json.dumps(
                    {
                        "devices": [
                            {"id": "D1", "model": "Galaxy", "os": "Android", "osVersion": "14"},
                            {"model": "missing id"},
                            {"id": "D1", "model": "Duplicate"},
                            {"id": "D2", "model": "iPhone", "os": "iOS", "osVersion": "17", "extra": 1},
                        ]
                    }
                ),
                encoding="utf-8",
            )
            devices = load_catalog(path)
        self.assertEqual([device.id for device in devices], ["D1", "D2"])
        self.assertEqual(devices[0].model, "Galaxy")

    def test_accepts_bare_list(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "devices.json"
            path.write_text(json.dumps([{"id": "D1"}]), encoding="utf-8")
            self.assertEqual(len(load_catalog(path)), 1)

    def test_unreadable_catalog_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "devices.json"
            with self.assertRaises(CatalogError):
                load_catalog(path)
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(CatalogError):
                load_catalog(path)

    def test_bundled_catalog_loads(self):
        devices = load_catalog()
        self.assertGreater(len(devices), 0)
        self.assertEqual(len({device.id for device in devices}), len(devices))


if __name__ == "__main__":
    unittest.main()
