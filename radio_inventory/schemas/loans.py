import os
import re
import unicodedata
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


BORROWER_NAME_MAX = 100
RETURN_NOTE_MAX = 500
MAX_SKIP = int(os.environ.get("LOANS_MAX_SKIP") or "10000")
ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")


def sanitize_text(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    # Reject absurd payloads before doing any normalization work.
    if len(value) > max_length * 2 + 100:
        raise ValueError(f"must be at most {max_length} characters")
    cleaned = _ZERO_WIDTH.sub("", unicodedata.normalize("NFC", value)).strip()
    if len(cleaned) > max_length:
        raise ValueError(f"must be at most {max_length} characters")
    return cleaned


class CreateLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    deviceId: str = Field(pattern=ID_PATTERN)
    borrowerName: str

    @field_validator("borrowerName")
    @classmethod
    def _clean_borrower_name(cls, value: str) -> str:
        cleaned = sanitize_text(value, BORROWER_NAME_MAX)
        if not cleaned:
            raise ValueError("borrowerName is required")
        return cleaned


class ReturnLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnNote: Optional[str] = None

    @field_validator("returnNote")
    @classmethod
    def _clean_return_note(cls, value: Optional[str]) -> Optional[str]:
        cleaned = sanitize_text(value, RETURN_NOTE_MAX)
        return cleaned or None
