from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CatalogDevice(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    type: str = "phone"
    model: str = ""
    os: str = ""
    osVersion: str = ""
    note: str = ""
    isManualEntry: bool = False


class DeviceView(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str
    type: str
    model: str
    os: str
    osVersion: str
    note: str = ""
    isManualEntry: bool = False
    status: str
    rentalID: Optional[str] = None
    rentedBy: Optional[str] = None
    rentalType: Optional[str] = None
    rentalStatus: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    daysOverdue: Optional[int] = None
