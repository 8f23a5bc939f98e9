from __future__ import annotations

import logging
from datetime import date, datetime
from io import BytesIO
from typing import Any, Iterable, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font

from device_rental.schemas.devices import DeviceView
from device_rental.services.clock_service import to_local


EXPORTED_STATUSES = ("rented", "pending")
EXPORT_COLUMNS = (
    ("NO.", 6),
    ("Device ID", 14),
    ("Model", 25),
    ("OS ver.", 12),
    ("Renter", 12),
    ("Rental type", 12),
    ("Start", 12),
    ("End", 12),
    ("Requested on", 12),
    ("Status", 10),
    ("Reason", 30),
    ("Note", 20),
)
SHEET_TITLE = "Device rentals"
WIKI_BOM = "\ufeff"

EXPORT_LOGGER = logging.getLogger("device_rental.exports")


class NothingToExportError(LookupError):
    pass


def _day(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return to_local(value).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


def _status_label(rental_status: str | None) -> str:
    return "Requested" if rental_status == "pending" else "Rented"


def build_export_rows(views: Iterable[DeviceView], rentals: Iterable[dict[str, Any]]) -> list[list[Any]]:
    by_id = {rental["rentalID"]: rental for rental in rentals}
    rows: list[list[Any]] = []
    for view in views:
        if view.status not in EXPORTED_STATUSES:
            continue
        rental = by_id.get(view.rentalID or "", {})
        rows.append([
            len(rows) + 1,
            view.id,
            view.model,
            f"{view.os} {view.osVersion}".strip(),
            view.rentedBy or "",
            view.rentalType or "",
            _day(view.startDate),
            _day(view.endDate),
            _day(rental.get("createdAt")),
            _status_label(view.rentalStatus),
            rental.get("reason") or "",
            view.note or "",
        ])
    if not rows:
        raise NothingToExportError("No rental data to export")
    return rows


def build_workbook(rows: Sequence[Sequence[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = SHEET_TITLE
    sheet.append([header for header, _ in EXPORT_COLUMNS])
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(list(row))
    for index, (_, width) in enumerate(EXPORT_COLUMNS):
        sheet.column_dimensions[sheet.cell(row=1, column=index + 1).column_letter].width = width

    buffer = BytesIO()
    workbook.save(buffer)
    EXPORT_LOGGER.info("Spreadsheet export rows=%s", len(rows))
    return buffer.getvalue()


def _wiki_cell(value: Any) -> str:
    # Pipes and line breaks would split the wiki table cell.
    return str(value).replace("|", "/").replace("\r", " ").replace("\n", " ")


def build_wiki_table(rows: Sequence[Sequence[Any]]) -> str:
    lines = ["|| " + " || ".join(header for header, _ in EXPORT_COLUMNS) + " ||"]
    for row in rows:
        lines.append("| " + " | ".join(_wiki_cell(value) or " " for value in row) + " |")
    EXPORT_LOGGER.info("Wiki export rows=%s", len(rows))
    return WIKI_BOM + "\n".join(lines) + "\n"


def spreadsheet_filename(today: date) -> str:
    return f"device_rentals_{today.strftime('%Y%m%d')}.xlsx"


def wiki_filename(today: date) -> str:
    return f"wiki_table_{today.strftime('%Y%m%d')}.txt"
