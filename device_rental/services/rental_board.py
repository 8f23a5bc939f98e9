from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import date
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from device_rental.schemas.devices import CatalogDevice, DeviceView
from device_rental.services.availability_service import reconcile


BOARD_LOGGER = logging.getLogger("device_rental.board")


@dataclass(frozen=True)
class PendingWrite:
    rental_id: str
    record: Optional[dict[str, Any]]
    written_at: float


@dataclass(frozen=True)
class BoardState:
    catalog: tuple[CatalogDevice, ...] = ()
    manual_devices: tuple[CatalogDevice, ...] = ()
    confirmed: Mapping[str, dict[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    pending: Mapping[str, PendingWrite] = field(default_factory=lambda: MappingProxyType({}))
    loaded: bool = False
    degraded: bool = False
    last_as_of: Optional[float] = None

    def devices(self) -> list[CatalogDevice]:
        known = {device.id for device in self.catalog}
        return list(self.catalog) + [device for device in self.manual_devices if device.id not in known]

    def rentals(self) -> list[dict[str, Any]]:
        merged = dict(self.confirmed)
        for write in self.pending.values():
            if write.record is None:
                merged.pop(write.rental_id, None)
            else:
                merged[write.rental_id] = write.record
        return list(merged.values())


@dataclass(frozen=True)
class RemoteSnapshot:
    rentals: tuple[dict[str, Any], ...]
    as_of: float


@dataclass(frozen=True)
class RemoteUnavailable:
    pass


@dataclass(frozen=True)
class LocalWrite:
    rental_id: str
    record: Optional[dict[str, Any]]
    written_at: float


@dataclass(frozen=True)
class ManualDeviceAdded:
    device: CatalogDevice


@dataclass(frozen=True)
class CatalogReplaced:
    catalog: tuple[CatalogDevice, ...]


BoardEvent = Union[RemoteSnapshot, RemoteUnavailable, LocalWrite, ManualDeviceAdded, CatalogReplaced]


def reduce(state: BoardState, event: BoardEvent) -> BoardState:
    """Return the state after ``event``; ``state`` itself is never modified.

    A snapshot replaces the confirmed rentals unless it is older than the last
    one applied. Local writes stay layered on top until a snapshot taken at or
    after the write arrives, which already reflects it (or its later deletion by
    someone else).
    """
    if isinstance(event, RemoteSnapshot):
        if state.last_as_of is not None and event.as_of < state.last_as_of:
            return state
        confirmed = {rental["rentalID"]: rental for rental in event.rentals}
        pending = {
            rental_id: write
            for rental_id, write in state.pending.items()
            if write.written_at > event.as_of
        }
        return replace(
            state,
            confirmed=MappingProxyType(confirmed),
            pending=MappingProxyType(pending),
            loaded=True,
            degraded=False,
            last_as_of=event.as_of,
        )
    if isinstance(event, RemoteUnavailable):
        return replace(state, degraded=True)
    if isinstance(event, LocalWrite):
        pending = dict(state.pending)
        pending[event.rental_id] = PendingWrite(event.rental_id, event.record, event.written_at)
        return replace(state, pending=MappingProxyType(pending))
    if isinstance(event, ManualDeviceAdded):
        others = tuple(device for device in state.manual_devices if device.id != event.device.id)
        return replace(state, manual_devices=others + (event.device,))
    if isinstance(event, CatalogReplaced):
        return replace(state, catalog=tuple(event.catalog))
    raise TypeError(f"Unknown board event: {event!r}")


class RentalBoard:
    """Owns the process-local projection of catalog plus live rentals."""

    def __init__(self, catalog: Iterable[CatalogDevice] = ()):
        self._lock = threading.Lock()
        self._state = BoardState(catalog=tuple(catalog))
        self._unsubscribe = None

    @property
    def state(self) -> BoardState:
        with self._lock:
            return self._state

    def dispatch(self, event: BoardEvent) -> BoardState:
        with self._lock:
            self._state = reduce(self._state, event)
            return self._state

    def mark(self) -> float:
        return time.monotonic()

    def attach(self, feed) -> None:
        self.detach()
        self._unsubscribe = feed.subscribe(self.on_rentals_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_rentals_changed(self, rentals: Iterable[dict[str, Any]], as_of: float) -> None:
        state = self.dispatch(RemoteSnapshot(tuple(rentals), as_of))
        BOARD_LOGGER.debug(
            "Board refreshed confirmed=%s pending=%s", len(state.confirmed), len(state.pending)
        )

    def mark_unavailable(self) -> None:
        self.dispatch(RemoteUnavailable())

    def record_local_write(self, rental: dict[str, Any], written_at: float) -> None:
        self.dispatch(LocalWrite(rental["rentalID"], dict(rental), written_at))

    def record_local_delete(self, rental_id: str, written_at: float) -> None:
        self.dispatch(LocalWrite(rental_id, None, written_at))

    def add_manual_device(self, device: CatalogDevice) -> None:
        self.dispatch(ManualDeviceAdded(device))

    def replace_catalog(self, catalog: Iterable[CatalogDevice]) -> None:
        self.dispatch(CatalogReplaced(tuple(catalog)))

    def find_device(self, device_id: str) -> CatalogDevice | None:
        for device in self.state.devices():
            if device.id == device_id:
                return device
        return None

    def rentals(self) -> list[dict[str, Any]]:
        return self.state.rentals()

    def view(self, today: date) -> list[DeviceView]:
        state = self.state
        return reconcile(state.devices(), state.rentals(), today)
