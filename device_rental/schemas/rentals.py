from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class BookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deviceID: str
    renterName: str = ""
    rentalType: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    reason: Optional[str] = None


class ManualDeviceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deviceID: str = ""
    model: str = ""
    os: str = ""
    osVersion: str = ""


class ManualBookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device: ManualDeviceEntry
    renterName: str = ""
    rentalType: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    reason: Optional[str] = None


class ExtensionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    renterName: str
    rentalIDs: List[str] = []


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    password: Optional[str] = None
