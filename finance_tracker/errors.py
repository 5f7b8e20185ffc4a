"""Typed exceptions raised by the finance_tracker core.

Every exception exposes a machine-readable :attr:`code` plus the structured
attributes needed to act on it, so the HTTP layer and tests can branch on the
type instead of parsing messages.
"""
from __future__ import annotations

from typing import Optional, Sequence


class FinanceTrackerError(Exception):
    """Base class for all domain errors."""

    code: str = "FINANCE_TRACKER_ERROR"

    def to_payload(self) -> dict[str, object]:
        return {"code": self.code, "detail": str(self)}


class ValidationError(FinanceTrackerError):
    """Input rejected before any persistence call was made."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload["field"] = self.field
        return payload


class RecordNotFoundError(FinanceTrackerError):
    code = "RECORD_NOT_FOUND"

    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record {record_id!r} not found")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(collection=self.collection, record_id=self.record_id)
        return payload


class PersistenceError(FinanceTrackerError):
    """The storage collaborator failed; the write may be retried."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, collection: str, message: Optional[str] = None) -> None:
        self.operation = operation
        self.collection = collection
        super().__init__(message or f"{operation} on {collection} failed")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(operation=self.operation, collection=self.collection)
        return payload


class PartialBatchError(PersistenceError):
    """A row-by-row batch stopped part way; ``written_ids`` are persisted.

    Callers decide whether to retry the remainder or compensate by deleting
    the written subset.
    """

    code = "PARTIAL_BATCH"

    def __init__(self, collection: str, written_ids: Sequence[str], failed_index: int) -> None:
        self.written_ids = list(written_ids)
        self.failed_index = failed_index
        super().__init__(
            "create_batch",
            collection,
            f"batch on {collection} stopped at row {failed_index}; "
            f"{len(self.written_ids)} row(s) already written",
        )

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(written_ids=self.written_ids, failed_index=self.failed_index)
        return payload


class StateConflictError(FinanceTrackerError):
    """A versioned update lost a race against a concurrent writer."""

    code = "STATE_CONFLICT"

    def __init__(self, collection: str, record_id: str, expected_version: int) -> None:
        self.collection = collection
        self.record_id = record_id
        self.expected_version = expected_version
        super().__init__(
            f"{collection} record {record_id!r} changed since version {expected_version}"
        )

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(
            collection=self.collection,
            record_id=self.record_id,
            expected_version=self.expected_version,
        )
        return payload


class IntegrityError(FinanceTrackerError):
    """The operation would leave dangling references behind."""

    code = "INTEGRITY_ERROR"

    def __init__(self, collection: str, record_id: str, reason: str) -> None:
        self.collection = collection
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{collection} record {record_id!r}: {reason}")

    def to_payload(self) -> dict[str, object]:
        payload = super().to_payload()
        payload.update(collection=self.collection, record_id=self.record_id)
        return payload


__all__ = [
    "FinanceTrackerError",
    "ValidationError",
    "RecordNotFoundError",
    "PersistenceError",
    "PartialBatchError",
    "StateConflictError",
    "IntegrityError",
]
