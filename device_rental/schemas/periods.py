from datetime import date, datetime

from pydantic import BaseModel, ConfigDict


class PeriodUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    quarter: str
    applyStart: datetime
    applyEnd: datetime
    rentalStart: date
    rentalEnd: date
    isActive: bool = True
