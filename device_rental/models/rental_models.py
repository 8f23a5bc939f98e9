import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, String
from sqlalchemy.sql import func

from device_rental.db.base import Base


def _new_document_id() -> str:
    return uuid.uuid4().hex


class Rental(Base):
    __tablename__ = "Rentals"

    RentalID = Column(String(36), primary_key=True, default=_new_document_id)
    DeviceID = Column(String(100), nullable=False, index=True)
    DeviceName = Column(String(255))
    DeviceType = Column(String(50))
    OS = Column(String(50))
    OSVersion = Column(String(50))
    RenterName = Column(String(100), nullable=False, index=True)
    RentalType = Column(String(50), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Reason = Column(String(1000))
    Status = Column(String(20), nullable=False, default="approved", index=True)
    IsManualEntry = Column(Boolean, default=False)
    CreatedAt = Column(DateTime(timezone=True))
    UpdatedAt = Column(DateTime(timezone=True))
    ExtendedAt = Column(DateTime(timezone=True))
    StoreCreatedAt = Column(DateTime(timezone=True), server_default=func.now())


class RentalPeriod(Base):
    __tablename__ = "RentalPeriods"

    PeriodID = Column(String(50), primary_key=True)
    Quarter = Column(String(50), nullable=False)
    ApplyStart = Column(DateTime(timezone=True), nullable=False)
    ApplyEnd = Column(DateTime(timezone=True), nullable=False)
    RentalStart = Column(Date, nullable=False)
    RentalEnd = Column(Date, nullable=False)
    IsActive = Column(Boolean, default=True, index=True)
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())


class ServerTime(Base):
    __tablename__ = "ServerTime"

    MarkerID = Column(String(50), primary_key=True)
    Timestamp = Column(DateTime(timezone=True), server_default=func.now())
