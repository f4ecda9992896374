import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base
from services.device_status import DeviceStatus


def new_id() -> str:
    return uuid.uuid4().hex


class Device(Base):
    __tablename__ = "Devices"
    __table_args__ = (
        CheckConstraint(
            '"Status" IN (%s)' % ", ".join(f"'{status.value}'" for status in DeviceStatus),
            name="CK_Devices_Status",
        ),
    )

    DeviceID = Column(String(32), primary_key=True, default=new_id)
    CallSign = Column(String(50), nullable=False)
    SerialNumber = Column(String(100))
    DeviceType = Column(String(50))
    Status = Column(String(20), nullable=False, default=DeviceStatus.AVAILABLE.value)
    Notes = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Loans = relationship("Loan", back_populates="Device")


class Loan(Base):
    __tablename__ = "Loans"

    LoanID = Column(String(32), primary_key=True, default=new_id)
    DeviceID = Column(String(32), ForeignKey("Devices.DeviceID"), nullable=False, index=True)
    BorrowerName = Column(String(100), nullable=False)
    BorrowedAt = Column(DateTime, nullable=False)
    ReturnedAt = Column(DateTime)
    ReturnNote = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Device = relationship("Device", back_populates="Loans")


# At most one open loan per device, even if a writer bypasses the guarded updates.
Index(
    "UX_Loans_ActiveDevice",
    Loan.DeviceID,
    unique=True,
    sqlite_where=Loan.ReturnedAt.is_(None),
    postgresql_where=Loan.ReturnedAt.is_(None),
)
