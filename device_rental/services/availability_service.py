from __future__ import annotations

import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from device_rental.schemas.devices import CatalogDevice, DeviceView


_DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "data" / "devices.json"
CATALOG_PATH = Path(os.environ.get("DEVICE_CATALOG_PATH") or _DEFAULT_CATALOG_PATH)

UNAVAILABLE_NOTE_KEYWORDS = tuple(
    item.strip()
    for item in (
        os.environ.get("UNAVAILABLE_NOTE_KEYWORDS")
        or "broken,unsupported,power fault,고장,미지원,전원 불량"
    ).split(",")
    if item.strip()
)

LIVE_RENTAL_STATUSES = ("pending", "approved")
STATUS_ORDER = {
    "overdue": 0,
    "available": 1,
    "pending": 2,
    "rented": 3,
    "unavailable": 4,
}
DEVICE_STATUSES = tuple(STATUS_ORDER)

CATALOG_LOGGER = logging.getLogger("device_rental.catalog")


class CatalogError(RuntimeError):
    pass


def load_catalog(path: Path | str | None = None) -> list[CatalogDevice]:
    source = Path(path) if path else CATALOG_PATH
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CatalogError(f"Device catalog could not be read: {source}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"Device catalog is not valid JSON: {source}") from exc

    rows = payload.get("devices") if isinstance(payload, dict) else payload
    if not isinstance(rows, list):
        raise CatalogError("Device catalog payload has no device list")

    devices: list[CatalogDevice] = []
    seen: set[str] = set()
    for row in rows:
        try:
            device = CatalogDevice.model_validate(row)
        except ValidationError:
            CATALOG_LOGGER.warning("Skipping malformed catalog entry: %r", row)
            continue
        if device.id in seen:
            CATALOG_LOGGER.warning("Skipping duplicate catalog id=%s", device.id)
            continue
        seen.add(device.id)
        devices.append(device)
    CATALOG_LOGGER.info("Loaded %s devices from %s", len(devices), source)
    return devices


def is_disqualified(note: str | None, keywords: Sequence[str] = UNAVAILABLE_NOTE_KEYWORDS) -> bool:
    text = note or ""
    return any(keyword in text for keyword in keywords)


def catalog_status(device: CatalogDevice, keywords: Sequence[str] = UNAVAILABLE_NOTE_KEYWORDS) -> str:
    return "unavailable" if is_disqualified(device.note, keywords) else "available"


def calculate_days_overdue(end_date: date, today: date) -> int:
    return max(0, (today - end_date).days)


def _occupancy_rank(rental: dict[str, Any], today: date) -> tuple:
    # A still-running rental outranks an overdue one; then the latest end date wins.
    return (rental["endDate"] >= today, rental["endDate"], str(rental.get("createdAt") or ""))


def reconcile(
    catalog: Iterable[CatalogDevice],
    rentals: Iterable[dict[str, Any]],
    today: date,
    keywords: Sequence[str] = UNAVAILABLE_NOTE_KEYWORDS,
) -> list[DeviceView]:
    """Derive every device's status from the catalog and the live rental records.

    Pure: neither input is modified and the same inputs give the same output. The
    result is ordered overdue, available, pending, rented, unavailable, keeping
    catalog order inside each group.
    """
    devices = list(catalog)
    known_ids = {device.id for device in devices}

    occupying: dict[str, dict[str, Any]] = {}
    for rental in rentals:
        if rental.get("status") not in LIVE_RENTAL_STATUSES:
            continue
        device_id = rental.get("deviceID")
        if device_id not in known_ids:
            continue
        current = occupying.get(device_id)
        if current is None or _occupancy_rank(rental, today) > _occupancy_rank(current, today):
            occupying[device_id] = rental

    views: list[DeviceView] = []
    for device in devices:
        base = device.model_dump()
        rental = occupying.get(device.id)
        if rental is None:
            views.append(DeviceView(**base, status=catalog_status(device, keywords)))
            continue

        end_date = rental["endDate"]
        overdue = end_date < today
        views.append(
            DeviceView(
                **base,
                status="overdue" if overdue else "rented",
                rentalID=rental.get("rentalID"),
                rentedBy=rental.get("renterName"),
                rentalType=rental.get("rentalType"),
                rentalStatus=rental.get("status"),
                startDate=rental.get("startDate"),
                endDate=end_date,
                daysOverdue=calculate_days_overdue(end_date, today) if overdue else None,
            )
        )

    order = {device.id: index for index, device in enumerate(devices)}
    views.sort(key=lambda view: (STATUS_ORDER.get(view.status, 99), order[view.id]))
    return views


def filter_devices(
    views: Iterable[DeviceView],
    *,
    search: str | None = None,
    device_type: str | None = None,
    os_name: str | None = None,
    status: str | None = None,
) -> list[DeviceView]:
    term = (search or "").strip().lower()
    out: list[DeviceView] = []
    for view in views:
        if term and term not in view.model.lower() and term not in view.id.lower():
            continue
        if device_type and device_type != "all" and view.type != device_type:
            continue
        if os_name and os_name != "all" and view.os != os_name:
            continue
        if status and status != "all" and view.status != status:
            continue
        out.append(view)
    return out


def summarize_devices(views: Sequence[DeviceView]) -> dict[str, Any]:
    total = len(views)
    counts = {
        "available": sum(1 for view in views if view.status == "available"),
        "rented": sum(1 for view in views if view.status in ("rented", "pending")),
        "overdue": sum(1 for view in views if view.status == "overdue"),
        "unavailable": sum(1 for view in views if view.status == "unavailable"),
    }
    percentages = {
        key: round(value * 100 / total, 1) if total else 0.0
        for key, value in counts.items()
    }
    return {"total": total, **counts, "percentages": percentages}
