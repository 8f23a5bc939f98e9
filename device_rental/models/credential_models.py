from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from device_rental.db.base import CredentialBase


class AdminCredential(CredentialBase):
    __tablename__ = "AdminCredentials"

    CredentialKey = Column(String(50), primary_key=True)
    PasswordHash = Column(String(256), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    PasswordUpdatedAt = Column(Integer)
    UpdatedAt = Column(DateTime(timezone=True), server_default=func.now())
