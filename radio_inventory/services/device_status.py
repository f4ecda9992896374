from __future__ import annotations

from enum import Enum
from typing import Any


class DeviceStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ON_LOAN = "ON_LOAN"
    DEFECT = "DEFECT"
    MAINTENANCE = "MAINTENANCE"


def parse_status(raw: str | None) -> DeviceStatus | None:
    value = (raw or "").strip().upper()
    try:
        return DeviceStatus(value)
    except ValueError:
        return None


def can_borrow(device: Any) -> bool:
    if device is None:
        return False
    # Exact match; the guarded update compares the stored value verbatim.
    return device.Status == DeviceStatus.AVAILABLE.value


def can_return(loan: Any) -> bool:
    if loan is None:
        return False
    return loan.ReturnedAt is None
