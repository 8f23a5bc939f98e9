from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from device_rental.models.rental_models import RentalPeriod
from device_rental.services.clock_service import RENTAL_TZ, to_local


CURRENT_PERIOD_ID = "current"
QUARTER_MONTHS = {1: (1, 3), 2: (4, 6), 3: (7, 9), 4: (10, 12)}
APPLY_OPENS_BEFORE = timedelta(days=14)
APPLY_CLOSES_AFTER = timedelta(days=13)
APPLY_END_OF_DAY = time(23, 59, 59)

NO_PERIOD = "no_period"
BEFORE_APPLY = "before_apply"
APPLY_OPEN = "apply_open"
APPLY_CLOSED = "apply_closed"

PERIOD_STATUS_REASONS = {
    NO_PERIOD: "No application period is configured.",
    BEFORE_APPLY: "The application period has not started yet.",
    APPLY_CLOSED: "The application period has ended.",
}

PERIOD_LOGGER = logging.getLogger("device_rental.period")


@dataclass(frozen=True)
class PeriodDescriptor:
    quarter: str
    apply_start: datetime
    apply_end: datetime
    rental_start: date
    rental_end: date
    is_active: bool = True
    is_auto_calculated: bool = False
    period_id: str | None = None


def calculate_quarter_info(year: int, quarter: int) -> PeriodDescriptor:
    first_month, last_month = QUARTER_MONTHS[quarter]
    rental_start = date(year, first_month, 1)
    rental_end = date(year, last_month, calendar.monthrange(year, last_month)[1])
    return PeriodDescriptor(
        quarter=f"{year} Q{quarter}",
        apply_start=datetime.combine(rental_start - APPLY_OPENS_BEFORE, time.min, tzinfo=RENTAL_TZ),
        apply_end=datetime.combine(rental_start + APPLY_CLOSES_AFTER, APPLY_END_OF_DAY, tzinfo=RENTAL_TZ),
        rental_start=rental_start,
        rental_end=rental_end,
        is_active=True,
        is_auto_calculated=True,
    )


def get_relevant_period(now: datetime) -> PeriodDescriptor:
    """Pick the quarter whose application window is the operative one for ``now``.

    That is the first quarter, in calendar order, whose application window has not
    yet closed. Between one window closing and the next opening this is already the
    next quarter, while the previous quarter's rental window is still running.
    """
    today = to_local(now).date()
    candidates = [(today.year, quarter) for quarter in (1, 2, 3, 4)] + [(today.year + 1, 1)]
    for year, quarter in candidates:
        period = calculate_quarter_info(year, quarter)
        if today <= period.apply_end.date():
            return period
    # Unreachable: next year's Q1 window always closes after today.
    return calculate_quarter_info(today.year + 1, 1)


def _descriptor_from_row(row: RentalPeriod) -> PeriodDescriptor:
    return PeriodDescriptor(
        quarter=row.Quarter,
        apply_start=to_local(row.ApplyStart),
        apply_end=to_local(row.ApplyEnd),
        rental_start=row.RentalStart,
        rental_end=row.RentalEnd,
        is_active=bool(row.IsActive),
        is_auto_calculated=False,
        period_id=row.PeriodID,
    )


def resolve_period(db: Session, now: datetime) -> PeriodDescriptor:
    try:
        current = db.get(RentalPeriod, CURRENT_PERIOD_ID)
        if current is not None and current.IsActive:
            PERIOD_LOGGER.debug("Using manual period override id=%s", current.PeriodID)
            return _descriptor_from_row(current)

        active = db.execute(
            select(RentalPeriod)
            .where(RentalPeriod.IsActive.is_(True))
            .order_by(RentalPeriod.PeriodID)
        ).scalars().first()
        if active is not None:
            PERIOD_LOGGER.debug("Using active period document id=%s", active.PeriodID)
            return _descriptor_from_row(active)
    except SQLAlchemyError as exc:
        PERIOD_LOGGER.warning("Period lookup failed, falling back to calendar rules: %s", exc)

    return get_relevant_period(now)


def check_period_status(period: PeriodDescriptor | None, now: datetime) -> str:
    if period is None:
        return NO_PERIOD
    current = to_local(now)
    if current < period.apply_start:
        return BEFORE_APPLY
    if current <= period.apply_end:
        return APPLY_OPEN
    return APPLY_CLOSED


def upsert_current_period(
    db: Session,
    *,
    quarter: str,
    apply_start: datetime,
    apply_end: datetime,
    rental_start: date,
    rental_end: date,
    is_active: bool,
    now: datetime,
) -> PeriodDescriptor:
    if apply_end < apply_start:
        raise ValueError("applyEnd must be on or after applyStart.")
    if rental_end < rental_start:
        raise ValueError("rentalEnd must be on or after rentalStart.")

    row = db.get(RentalPeriod, CURRENT_PERIOD_ID)
    if row is None:
        row = RentalPeriod(PeriodID=CURRENT_PERIOD_ID, CreatedDate=now)
        db.add(row)
    row.Quarter = quarter.strip()
    row.ApplyStart = to_local(apply_start)
    row.ApplyEnd = to_local(apply_end)
    row.RentalStart = rental_start
    row.RentalEnd = rental_end
    row.IsActive = is_active
    row.UpdatedDate = now
    db.commit()
    PERIOD_LOGGER.info("Manual period saved quarter=%s active=%s", row.Quarter, row.IsActive)
    return _descriptor_from_row(row)


def deactivate_current_period(db: Session, now: datetime) -> bool:
    row = db.get(RentalPeriod, CURRENT_PERIOD_ID)
    if row is None or not row.IsActive:
        return False
    row.IsActive = False
    row.UpdatedDate = now
    db.commit()
    PERIOD_LOGGER.info("Manual period deactivated quarter=%s", row.Quarter)
    return True


def serialize_period(period: PeriodDescriptor | None) -> dict[str, Any] | None:
    if period is None:
        return None
    return {
        "periodID": period.period_id,
        "quarter": period.quarter,
        "applyStart": period.apply_start,
        "applyEnd": period.apply_end,
        "rentalStart": period.rental_start,
        "rentalEnd": period.rental_end,
        "isActive": period.is_active,
        "isAutoCalculated": period.is_auto_calculated,
    }


def _format_day(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = to_local(value).date()
    return value.isoformat()


def get_period_notice_text(status: str, period: PeriodDescriptor | None) -> str:
    if period is None:
        return "No application period has been configured."
    apply_start = _format_day(period.apply_start)
    apply_end = _format_day(period.apply_end)
    if status in (BEFORE_APPLY, APPLY_OPEN):
        return f"{period.quarter} applications: {apply_start} ~ {apply_end}"
    if status == APPLY_CLOSED:
        return f"{period.quarter} applications closed ({apply_end})"
    return "No period information."


def get_banner_info(status: str, period: PeriodDescriptor | None) -> dict[str, Any] | None:
    if period is None:
        return None

    apply_window = f"{_format_day(period.apply_start)} ~ {_format_day(period.apply_end)}"
    rental_window = f"{_format_day(period.rental_start)} ~ {_format_day(period.rental_end)}"
    auto_note = " (auto-calculated)" if period.is_auto_calculated else ""

    if status == BEFORE_APPLY:
        return {
            "type": "before-apply",
            "title": f"{period.quarter} applications have not opened yet{auto_note}",
            "message": f"Application period: {apply_window} | Rental period: {rental_window}",
            "showExtendButton": False,
        }
    if status == APPLY_OPEN:
        return {
            "type": "apply-open",
            "title": f"{period.quarter} applications are open{auto_note}",
            "message": f"Application period: {apply_window} | Rental period: {rental_window}",
            "showExtendButton": True,
        }
    if status == APPLY_CLOSED:
        return {
            "type": "apply-closed",
            "title": f"{period.quarter} applications are closed",
            "message": f"Application period: {apply_window} (closed)",
            "showExtendButton": False,
        }
    return None


def get_extend_period_text(period: PeriodDescriptor | None) -> str:
    if period is None:
        return ""
    return f"{_format_day(period.rental_start)} ~ {_format_day(period.rental_end)}"
