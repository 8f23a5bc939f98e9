from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from device_rental.db.feed import RENTAL_FEED, ChangeFeed
from device_rental.models.rental_models import Rental
from device_rental.schemas.devices import CatalogDevice
from device_rental.schemas.rentals import ManualDeviceEntry
from device_rental.services.availability_service import LIVE_RENTAL_STATUSES
from device_rental.services.credential_service import CredentialVerifier, require_valid_credential
from device_rental.services.period_service import APPLY_OPEN, PERIOD_STATUS_REASONS, PeriodDescriptor
from device_rental.services.rental_board import RentalBoard
from device_rental.services.submit_lock_service import SubmitLocks


RENTAL_TYPES = ("quarterly", "project", "other")
MIN_RENTER_NAME_LENGTH = 2
MAX_REASON_LENGTH = 500
MANUAL_ENTRY_TYPE = "phone"
MANUAL_ENTRY_NOTE = "Added by manual entry"
UNBOOKABLE_STATUSES = {"unavailable", "overdue"}

RENTAL_LOGGER = logging.getLogger("device_rental.rentals")


class BookingValidationError(ValueError):
    def __init__(self, field_errors: dict[str, str]):
        super().__init__("; ".join(field_errors.values()))
        self.field_errors = dict(field_errors)


class PeriodClosedError(RuntimeError):
    def __init__(self, status: str):
        super().__init__(PERIOD_STATUS_REASONS.get(status, "Applications are not being accepted."))
        self.status = status


class DeviceNotFoundError(RuntimeError):
    pass


class DeviceUnavailableError(RuntimeError):
    def __init__(self, device_id: str, status: str):
        super().__init__(f"Device {device_id} is not available for booking (status: {status}).")
        self.device_id = device_id
        self.status = status


class RentalConflictError(RuntimeError):
    def __init__(self, device_id: str, renter_name: str):
        super().__init__(f"Device {device_id} is already rented by {renter_name}.")
        self.device_id = device_id
        self.renter_name = renter_name


class RentalNotFoundError(RuntimeError):
    pass


class ExtensionError(ValueError):
    pass


def serialize_rental(rental: Rental) -> dict[str, Any]:
    return {
        "rentalID": rental.RentalID,
        "deviceID": rental.DeviceID,
        "deviceName": rental.DeviceName,
        "deviceType": rental.DeviceType,
        "os": rental.OS,
        "osVersion": rental.OSVersion,
        "renterName": rental.RenterName,
        "rentalType": rental.RentalType,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "reason": rental.Reason,
        "status": rental.Status,
        "isManualEntry": bool(rental.IsManualEntry),
        "createdAt": rental.CreatedAt,
        "updatedAt": rental.UpdatedAt,
        "extendedAt": rental.ExtendedAt,
    }


def load_live_rentals(db: Session) -> list[dict[str, Any]]:
    rows = db.execute(
        select(Rental)
        .where(Rental.Status.in_(LIVE_RENTAL_STATUSES))
        .order_by(Rental.CreatedAt, Rental.RentalID)
    ).scalars().all()
    return [serialize_rental(row) for row in rows]


def publish_live_rentals(db: Session, feed: ChangeFeed = RENTAL_FEED) -> None:
    as_of = time.monotonic()
    try:
        rentals = load_live_rentals(db)
    except SQLAlchemyError as exc:
        RENTAL_LOGGER.warning("Could not load rentals for change notification: %s", exc)
        return
    feed.publish(rentals, as_of)


def find_existing_rental(db: Session, device_id: str, today: date) -> Rental | None:
    return db.execute(
        select(Rental)
        .where(Rental.DeviceID == device_id)
        .where(Rental.Status.in_(LIVE_RENTAL_STATUSES))
        .where(Rental.EndDate >= today)
        .order_by(Rental.EndDate.desc())
    ).scalars().first()


def get_user_current_rentals(db: Session, renter_name: str, today: date) -> list[dict[str, Any]]:
    rows = db.execute(
        select(Rental)
        .where(Rental.RenterName == (renter_name or "").strip())
        .where(Rental.Status.in_(LIVE_RENTAL_STATUSES))
        .where(Rental.EndDate >= today)
        .order_by(Rental.EndDate, Rental.RentalID)
    ).scalars().all()
    return [serialize_rental(row) for row in rows]


def ensure_applications_open(period_status: str) -> None:
    if period_status != APPLY_OPEN:
        raise PeriodClosedError(period_status)


def validate_booking(
    *,
    renter_name: str | None,
    rental_type: str | None,
    start_date: date | None,
    end_date: date | None,
    reason: str | None,
    period: PeriodDescriptor | None,
) -> dict[str, str]:
    errors: dict[str, str] = {}

    if len((renter_name or "").strip()) < MIN_RENTER_NAME_LENGTH:
        errors["renterName"] = f"Renter name must be at least {MIN_RENTER_NAME_LENGTH} characters."

    if not rental_type:
        errors["rentalType"] = "Select a rental type."
    elif rental_type not in RENTAL_TYPES:
        errors["rentalType"] = f"Rental type must be one of: {', '.join(RENTAL_TYPES)}."

    if len(reason or "") > MAX_REASON_LENGTH:
        errors["reason"] = f"Reason must be at most {MAX_REASON_LENGTH} characters."

    if start_date is None:
        errors["startDate"] = "Start date is required."
    if end_date is None:
        errors["endDate"] = "End date is required."
    if start_date is None or end_date is None:
        return errors

    if period is not None:
        if start_date < period.rental_start:
            errors["startDate"] = f"Start date must be on or after the quarter start ({period.rental_start})."
        elif start_date > period.rental_end:
            errors["startDate"] = f"Start date must be on or before the quarter end ({period.rental_end})."
        if end_date > period.rental_end:
            errors["endDate"] = f"End date cannot be after the quarter end ({period.rental_end})."

    if end_date <= start_date:
        errors["endDate"] = "End date must be after the start date."
    return errors


def validate_manual_device(entry: ManualDeviceEntry) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not entry.deviceID.strip():
        errors["deviceID"] = "Enter the device ID."
    if not entry.model.strip():
        errors["model"] = "Enter the model name."
    if not entry.os.strip():
        errors["os"] = "Select the OS."
    if not entry.osVersion.strip():
        errors["osVersion"] = "Enter the OS version."
    return errors


def synthesize_manual_device(entry: ManualDeviceEntry) -> CatalogDevice:
    return CatalogDevice(
        id=entry.deviceID.strip(),
        type=MANUAL_ENTRY_TYPE,
        model=entry.model.strip(),
        os=entry.os.strip(),
        osVersion=entry.osVersion.strip(),
        note=MANUAL_ENTRY_NOTE,
        isManualEntry=True,
    )


def ensure_device_bookable(board: RentalBoard, device: CatalogDevice, today: date) -> None:
    current = next((view for view in board.view(today) if view.id == device.id), None)
    if current is not None and current.status in UNBOOKABLE_STATUSES:
        raise DeviceUnavailableError(device.id, current.status)


def create_booking(
    db: Session,
    *,
    device: CatalogDevice,
    renter_name: str,
    rental_type: str,
    start_date: date,
    end_date: date,
    reason: str | None,
    today: date,
    now: datetime,
    is_manual_entry: bool = False,
) -> Rental:
    # Check-then-write: two bookings passing the check before either commits both succeed.
    existing = find_existing_rental(db, device.id, today)
    if existing is not None:
        RENTAL_LOGGER.warning(
            "Booking rejected device=%s renter=%s occupied_by=%s",
            device.id,
            renter_name,
            existing.RenterName,
        )
        raise RentalConflictError(device.id, existing.RenterName)

    rental = Rental(
        DeviceID=device.id,
        DeviceName=device.model,
        DeviceType=device.type,
        OS=device.os,
        OSVersion=device.osVersion,
        RenterName=renter_name.strip(),
        RentalType=rental_type,
        StartDate=start_date,
        EndDate=end_date,
        Reason=(reason or "").strip(),
        Status="approved",
        IsManualEntry=is_manual_entry,
        CreatedAt=now,
        UpdatedAt=now,
    )
    db.add(rental)
    db.commit()
    db.refresh(rental)
    RENTAL_LOGGER.info(
        "Booking created rental=%s device=%s renter=%s %s..%s manual=%s",
        rental.RentalID,
        rental.DeviceID,
        rental.RenterName,
        rental.StartDate,
        rental.EndDate,
        is_manual_entry,
    )
    return rental


def book_device(
    db: Session,
    *,
    device_id: str | None,
    manual_entry: ManualDeviceEntry | None,
    renter_name: str,
    rental_type: str | None,
    start_date: date | None,
    end_date: date | None,
    reason: str | None,
    period: PeriodDescriptor | None,
    period_status: str,
    now: datetime,
    board: RentalBoard,
    locks: SubmitLocks,
    caller: str,
    feed: ChangeFeed = RENTAL_FEED,
) -> dict[str, Any]:
    ensure_applications_open(period_status)

    errors = validate_manual_device(manual_entry) if manual_entry is not None else {}
    errors.update(
        validate_booking(
            renter_name=renter_name,
            rental_type=rental_type,
            start_date=start_date,
            end_date=end_date,
            reason=reason,
            period=period,
        )
    )
    if errors:
        raise BookingValidationError(errors)

    locks.acquire("rental", caller)
    today = now.date()

    synthesized = None
    if manual_entry is not None:
        device = board.find_device(manual_entry.deviceID.strip())
        if device is None:
            device = synthesized = synthesize_manual_device(manual_entry)
    else:
        device = board.find_device((device_id or "").strip())
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found.")
    # A manual entry naming a known device books that device.
    if synthesized is None:
        ensure_device_bookable(board, device, today)

    rental = create_booking(
        db,
        device=device,
        renter_name=renter_name,
        rental_type=rental_type,
        start_date=start_date,
        end_date=end_date,
        reason=reason,
        today=today,
        now=now,
        is_manual_entry=device.isManualEntry,
    )
    record = serialize_rental(rental)

    # Optimistic: the caller's next read shows the booking before the feed echo.
    if synthesized is not None:
        board.add_manual_device(synthesized)
    board.record_local_write(record, board.mark())
    publish_live_rentals(db, feed)
    return record


def extend_rentals(
    db: Session,
    *,
    renter_name: str,
    rental_ids: Sequence[str],
    period: PeriodDescriptor,
    period_status: str,
    now: datetime,
    board: RentalBoard,
    locks: SubmitLocks,
    caller: str,
    feed: ChangeFeed = RENTAL_FEED,
) -> list[dict[str, Any]]:
    ensure_applications_open(period_status)

    name = (renter_name or "").strip()
    wanted = list(dict.fromkeys(rental_id for rental_id in rental_ids if rental_id))
    errors: dict[str, str] = {}
    if len(name) < MIN_RENTER_NAME_LENGTH:
        errors["renterName"] = f"Renter name must be at least {MIN_RENTER_NAME_LENGTH} characters."
    if not wanted:
        errors["rentalIDs"] = "Select at least one rental to extend."
    if errors:
        raise BookingValidationError(errors)

    locks.acquire("extend", caller)
    today = now.date()
    new_end = period.rental_end

    rows = db.execute(select(Rental).where(Rental.RentalID.in_(wanted))).scalars().all()
    by_id = {row.RentalID: row for row in rows}
    for rental_id in wanted:
        row = by_id.get(rental_id)
        if row is None or row.RenterName != name:
            raise RentalNotFoundError(f"Rental {rental_id} not found for {name}.")
        if row.Status not in LIVE_RENTAL_STATUSES or row.EndDate < today:
            raise ExtensionError(f"Rental {rental_id} is no longer active.")
        if row.EndDate > new_end:
            raise ExtensionError(f"Rental {rental_id} already ends after {new_end}.")

    for rental_id in wanted:
        row = by_id[rental_id]
        row.EndDate = new_end
        row.ExtendedAt = now
        row.UpdatedAt = now
    db.commit()

    records = [serialize_rental(by_id[rental_id]) for rental_id in wanted]
    written_at = board.mark()
    for record in records:
        board.record_local_write(record, written_at)
    RENTAL_LOGGER.info("Extended %s rentals renter=%s until=%s", len(records), name, new_end)
    publish_live_rentals(db, feed)
    return records


def return_rental(
    db: Session,
    *,
    rental_id: str,
    password: str | None,
    verifier: CredentialVerifier,
    board: RentalBoard,
    locks: SubmitLocks,
    caller: str,
    feed: ChangeFeed = RENTAL_FEED,
) -> dict[str, Any]:
    if not password:
        raise BookingValidationError({"password": "Enter the password."})

    locks.acquire("return", caller)
    require_valid_credential(verifier, password, "return")

    rental = db.get(Rental, rental_id)
    if rental is None:
        raise RentalNotFoundError(f"Rental {rental_id} not found.")

    record = serialize_rental(rental)
    db.delete(rental)
    db.commit()

    board.record_local_delete(rental_id, board.mark())
    RENTAL_LOGGER.info(
        "Rental returned rental=%s device=%s renter=%s",
        rental_id,
        record["deviceID"],
        record["renterName"],
    )
    publish_live_rentals(db, feed)
    return record
