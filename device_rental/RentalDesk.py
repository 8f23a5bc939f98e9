import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from device_rental.db.base import Base, CredentialBase
from device_rental.db.deps import get_rental_db
from device_rental.db.feed import RENTAL_FEED
from device_rental.db.session import SessionLocalCredential, SessionLocalRental, engine_credential, engine_rental
from device_rental.schemas.periods import PeriodUpsert
from device_rental.schemas.rentals import BookingRequest, ExtensionRequest, ManualBookingRequest, ReturnRequest
from device_rental.services.availability_service import CatalogError, filter_devices, load_catalog, summarize_devices
from device_rental.services.clock_service import ClockSync
from device_rental.services.credential_service import (
    InvalidCredentialsError,
    StoredHashVerifier,
    require_valid_credential,
)
from device_rental.services.export_service import (
    NothingToExportError,
    build_export_rows,
    build_wiki_table,
    build_workbook,
    spreadsheet_filename,
    wiki_filename,
)
from device_rental.services.period_service import (
    APPLY_OPEN,
    check_period_status,
    deactivate_current_period,
    get_banner_info,
    get_extend_period_text,
    get_period_notice_text,
    resolve_period,
    serialize_period,
    upsert_current_period,
)
from device_rental.services.rental_board import RentalBoard
from device_rental.services.rental_service import (
    MIN_RENTER_NAME_LENGTH,
    BookingValidationError,
    DeviceNotFoundError,
    DeviceUnavailableError,
    ExtensionError,
    PeriodClosedError,
    RentalConflictError,
    RentalNotFoundError,
    book_device,
    extend_rentals,
    get_user_current_rentals,
    load_live_rentals,
    return_rental,
)
from device_rental.services.submit_lock_service import SubmitLockedError, SubmitLocks


APP_LOGGER = logging.getLogger("device_rental.app")
DEGRADED_NOTICE = "Rental data could not be loaded; showing catalog information only."
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@asynccontextmanager
async def lifespan(app: FastAPI):
    _prepare_stores()
    yield


app = FastAPI(title="Device Rental Desk", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials="*" not in _CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _load_board() -> RentalBoard:
    try:
        catalog = load_catalog()
    except CatalogError as exc:
        APP_LOGGER.warning("Device catalog unavailable, starting with an empty board: %s", exc)
        catalog = []
    board = RentalBoard(catalog)
    board.attach(RENTAL_FEED)
    return board


CLOCK = ClockSync()
BOARD = _load_board()
SUBMIT_LOCKS = SubmitLocks()


def get_clock() -> ClockSync:
    return CLOCK


def get_board() -> RentalBoard:
    return BOARD


def get_submit_locks() -> SubmitLocks:
    return SUBMIT_LOCKS


def get_credential_verifier() -> StoredHashVerifier:
    return StoredHashVerifier(SessionLocalCredential)


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _refresh_board(db: Session, board: RentalBoard) -> None:
    as_of = board.mark()
    try:
        rentals = load_live_rentals(db)
    except SQLAlchemyError as exc:
        db.rollback()
        APP_LOGGER.warning("Rental store unavailable, serving catalog data: %s", exc)
        board.mark_unavailable()
        return
    board.on_rentals_changed(rentals, as_of)


def _ensure_board(db: Session, board: RentalBoard, force: bool = False) -> None:
    state = board.state
    if force or not state.loaded or state.degraded:
        _refresh_board(db, board)


def _period_state(db: Session, clock: ClockSync):
    now = clock.now()
    period = resolve_period(db, now)
    return now, period, check_period_status(period, now)


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, BookingValidationError):
        return HTTPException(status_code=400, detail={"message": "Validation failed.", "fieldErrors": exc.field_errors})
    if isinstance(exc, PeriodClosedError):
        return HTTPException(status_code=409, detail={"message": str(exc), "periodStatus": exc.status})
    if isinstance(exc, (RentalConflictError, DeviceUnavailableError, ExtensionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (DeviceNotFoundError, RentalNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidCredentialsError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, SubmitLockedError):
        retry_after = max(1, int(round(exc.retry_after)))
        return HTTPException(status_code=429, detail=str(exc), headers={"Retry-After": str(retry_after)})
    if isinstance(exc, SQLAlchemyError):
        return HTTPException(status_code=503, detail=f"db_unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


DOMAIN_ERRORS = (
    BookingValidationError,
    PeriodClosedError,
    RentalConflictError,
    DeviceUnavailableError,
    ExtensionError,
    DeviceNotFoundError,
    RentalNotFoundError,
    InvalidCredentialsError,
    SubmitLockedError,
    SQLAlchemyError,
)


def _prepare_stores() -> None:
    try:
        Base.metadata.create_all(bind=engine_rental)
        CredentialBase.metadata.create_all(bind=engine_credential)
    except SQLAlchemyError as exc:
        APP_LOGGER.warning("Schema check failed at startup: %s", exc)
    with SessionLocalRental() as db:
        CLOCK.sync(db)
        _refresh_board(db, BOARD)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/time")
def get_time(db: Session = Depends(get_rental_db), clock: ClockSync = Depends(get_clock)):
    now, period, status = _period_state(db, clock)
    return {
        **clock.status(),
        "quarter": period.quarter if period else None,
        "periodStatus": status,
    }


@app.post("/api/time/sync")
def sync_time(db: Session = Depends(get_rental_db), clock: ClockSync = Depends(get_clock)):
    clock.sync(db)
    return clock.status()


@app.get("/api/period")
def get_period(db: Session = Depends(get_rental_db), clock: ClockSync = Depends(get_clock)):
    now, period, status = _period_state(db, clock)
    return {
        "period": serialize_period(period),
        "status": status,
        "notice": get_period_notice_text(status, period),
        "banner": get_banner_info(status, period),
        "extendPeriodText": get_extend_period_text(period),
        "now": now,
    }


@app.put("/api/periods/current")
def put_current_period(
    payload: PeriodUpsert,
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    verifier: StoredHashVerifier = Depends(get_credential_verifier),
    x_admin_password: str | None = Header(None, alias="X-Admin-Password"),
):
    try:
        require_valid_credential(verifier, x_admin_password, "period-update")
    except DOMAIN_ERRORS as exc:
        raise _to_http_error(exc) from exc

    now = clock.now()
    try:
        period = upsert_current_period(
            db,
            quarter=payload.quarter,
            apply_start=payload.applyStart,
            apply_end=payload.applyEnd,
            rental_start=payload.rentalStart,
            rental_end=payload.rentalEnd,
            is_active=payload.isActive,
            now=now,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise _to_http_error(exc) from exc
    status = check_period_status(period, now)
    return {"period": serialize_period(period), "status": status}


@app.delete("/api/periods/current")
def delete_current_period(
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    verifier: StoredHashVerifier = Depends(get_credential_verifier),
    x_admin_password: str | None = Header(None, alias="X-Admin-Password"),
):
    try:
        require_valid_credential(verifier, x_admin_password, "period-deactivate")
        deactivated = deactivate_current_period(db, clock.now())
    except DOMAIN_ERRORS as exc:
        raise _to_http_error(exc) from exc
    if not deactivated:
        raise HTTPException(status_code=404, detail="No active manual period.")
    return {"status": "ok"}


@app.get("/api/devices")
def list_devices(
    search: Optional[str] = Query(None),
    device_type: Optional[str] = Query(None, alias="type"),
    os_name: Optional[str] = Query(None, alias="os"),
    status: Optional[str] = Query(None),
    refresh: bool = Query(False),
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
):
    _ensure_board(db, board, force=refresh)
    views = board.view(clock.today())
    filtered = filter_devices(views, search=search, device_type=device_type, os_name=os_name, status=status)
    degraded = board.state.degraded
    return {
        "devices": filtered,
        "count": len(filtered),
        "stats": summarize_devices(views),
        "degraded": degraded,
        "notice": DEGRADED_NOTICE if degraded else None,
    }


@app.get("/api/devices/stats")
def device_stats(
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
):
    _ensure_board(db, board)
    return summarize_devices(board.view(clock.today()))


@app.get("/api/rentals")
def list_rentals(db: Session = Depends(get_rental_db)):
    try:
        return load_live_rentals(db)
    except SQLAlchemyError as exc:
        raise _to_http_error(exc) from exc


@app.get("/api/rentals/by-renter")
def rentals_by_renter(
    renterName: str = Query(""),
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
):
    name = renterName.strip()
    if len(name) < MIN_RENTER_NAME_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"renterName must be at least {MIN_RENTER_NAME_LENGTH} characters.",
        )
    now, period, status = _period_state(db, clock)
    try:
        rentals = get_user_current_rentals(db, name, now.date())
    except SQLAlchemyError as exc:
        raise _to_http_error(exc) from exc
    return {
        "renterName": name,
        "rentals": rentals,
        "canExtend": status == APPLY_OPEN,
        "extendPeriodText": get_extend_period_text(period),
    }


@app.post("/api/rentals")
def create_rental(
    request: Request,
    payload: BookingRequest,
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
    locks: SubmitLocks = Depends(get_submit_locks),
):
    now, period, status = _period_state(db, clock)
    _ensure_board(db, board)
    try:
        return book_device(
            db,
            device_id=payload.deviceID,
            manual_entry=None,
            renter_name=payload.renterName,
            rental_type=payload.rentalType,
            start_date=payload.startDate,
            end_date=payload.endDate,
            reason=payload.reason,
            period=period,
            period_status=status,
            now=now,
            board=board,
            locks=locks,
            caller=_get_client_ip(request),
        )
    except DOMAIN_ERRORS as exc:
        if isinstance(exc, SQLAlchemyError):
            db.rollback()
        raise _to_http_error(exc) from exc


@app.post("/api/rentals/manual")
def create_manual_rental(
    request: Request,
    payload: ManualBookingRequest,
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
    locks: SubmitLocks = Depends(get_submit_locks),
):
    now, period, status = _period_state(db, clock)
    _ensure_board(db, board)
    try:
        return book_device(
            db,
            device_id=None,
            manual_entry=payload.device,
            renter_name=payload.renterName,
            rental_type=payload.rentalType,
            start_date=payload.startDate,
            end_date=payload.endDate,
            reason=payload.reason,
            period=period,
            period_status=status,
            now=now,
            board=board,
            locks=locks,
            caller=_get_client_ip(request),
        )
    except DOMAIN_ERRORS as exc:
        if isinstance(exc, SQLAlchemyError):
            db.rollback()
        raise _to_http_error(exc) from exc


@app.post("/api/rentals/extend")
def extend_rental(
    request: Request,
    payload: ExtensionRequest,
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
    locks: SubmitLocks = Depends(get_submit_locks),
):
    now, period, status = _period_state(db, clock)
    try:
        records = extend_rentals(
            db,
            renter_name=payload.renterName,
            rental_ids=payload.rentalIDs,
            period=period,
            period_status=status,
            now=now,
            board=board,
            locks=locks,
            caller=_get_client_ip(request),
        )
    except DOMAIN_ERRORS as exc:
        if isinstance(exc, SQLAlchemyError):
            db.rollback()
        raise _to_http_error(exc) from exc
    return {"extended": len(records), "rentals": records}


@app.post("/api/rentals/{rental_id}/return")
def return_rental_endpoint(
    rental_id: str,
    request: Request,
    payload: ReturnRequest,
    db: Session = Depends(get_rental_db),
    board: RentalBoard = Depends(get_board),
    locks: SubmitLocks = Depends(get_submit_locks),
    verifier: StoredHashVerifier = Depends(get_credential_verifier),
):
    try:
        record = return_rental(
            db,
            rental_id=rental_id,
            password=payload.password,
            verifier=verifier,
            board=board,
            locks=locks,
            caller=_get_client_ip(request),
        )
    except DOMAIN_ERRORS as exc:
        if isinstance(exc, SQLAlchemyError):
            db.rollback()
        raise _to_http_error(exc) from exc
    return {"status": "returned", "rental": record}


def _export_rows(db, clock, board, search, device_type, os_name):
    _ensure_board(db, board)
    views = filter_devices(board.view(clock.today()), search=search, device_type=device_type, os_name=os_name)
    try:
        return build_export_rows(views, board.rentals())
    except NothingToExportError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/exports/spreadsheet")
def export_spreadsheet(
    search: Optional[str] = Query(None),
    device_type: Optional[str] = Query(None, alias="type"),
    os_name: Optional[str] = Query(None, alias="os"),
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
):
    rows = _export_rows(db, clock, board, search, device_type, os_name)
    filename = spreadsheet_filename(clock.today())
    return Response(
        content=build_workbook(rows),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/exports/wiki")
def export_wiki(
    search: Optional[str] = Query(None),
    device_type: Optional[str] = Query(None, alias="type"),
    os_name: Optional[str] = Query(None, alias="os"),
    db: Session = Depends(get_rental_db),
    clock: ClockSync = Depends(get_clock),
    board: RentalBoard = Depends(get_board),
):
    rows = _export_rows(db, clock, board, search, device_type, os_name)
    filename = wiki_filename(clock.today())
    return Response(
        content=build_wiki_table(rows).encode("utf-8"),
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
