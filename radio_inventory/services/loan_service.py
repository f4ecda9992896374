from __future__ import annotations

from typing import Any


class LoanService:
    """Stable entry point for request handlers; all rules live in the repository."""

    def __init__(self, repository: Any):
        self._repository = repository

    def find_active(self, take: int | None = None, skip: int | None = None) -> list[dict]:
        # Only forward what the caller set so the repository applies its own defaults.
        options: dict[str, int] = {}
        if take is not None:
            options["take"] = take
        if skip is not None:
            options["skip"] = skip
        return self._repository.find_active(**options)

    def create(self, device_id: str, borrower_name: str) -> dict:
        return self._repository.create(device_id, borrower_name)

    def return_loan(self, loan_id: str, return_note: str | None = None) -> dict:
        return self._repository.return_loan(loan_id, return_note)
