"""Error taxonomy for assessment workflows and the record store.

Single-record operations raise these directly. Bulk operations catch them
per item and fold them into a tally, so one failing record never aborts the
rest of the batch.
"""


class AttendanceError(Exception):
    """Base class for every error the core raises on purpose."""

    title = "Request failed"
    status_code = 500

    def __init__(self, message: str, record_id=None):
        super().__init__(message)
        self.message = message
        self.record_id = record_id


class ValidationError(AttendanceError):
    """Input rejected before any store call (bad score, missing field)."""

    title = "Validation failed"
    status_code = 400


class PermissionDenied(AttendanceError):
    """Actor may not perform the operation on this record."""

    title = "Permission denied"
    status_code = 403


class NotFound(AttendanceError):
    title = "Record not found"
    status_code = 404


class StoreError(AttendanceError):
    """The persistence layer failed. Never retried by the core."""

    title = "Record store unavailable"
    status_code = 503


class WriteConflict(StoreError):
    """A conditional write found the record in an unexpected state."""

    title = "Write conflict"
    status_code = 409


__all__ = [
    "AttendanceError",
    "NotFound",
    "PermissionDenied",
    "StoreError",
    "ValidationError",
    "WriteConflict",
]
