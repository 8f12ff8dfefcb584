"""Draft → Exported lifecycle of assessment records.

A trainer records results as drafts, then exports them to admin. Export is
one-way for trainers: afterwards only an admin may edit, delete, review or
unlock the record. Every operation works on one record at a time; bulk
operations loop and report a tally instead of stopping at the first failure.
Nothing is rolled back when part of a batch fails, so re-running an
operation only touches what is still pending.

State-dependent writes go through :meth:`RecordStore.update` with an
``expected`` condition, so two exports racing on one record cannot both
succeed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from app_logging import get_logger
from errors import AttendanceError, PermissionDenied, ValidationError
from models import AssessmentRecord, utcnow, validate_assessment_fields, validate_score
from permissions import (
    Actor,
    can_delete,
    can_edit,
    can_export,
    can_review,
    can_unlock,
    is_locked,
    is_orphaned_draft,
)
from record_store import RecordStore

_logger = get_logger("app.workflow")

_DRAFT = {"exported_to_admin": False}
_EXPORTED = {"exported_to_admin": True}


@dataclass
class BulkResult:
    """Outcome of a bulk operation.

    ``excluded`` counts records filtered out before the batch ran; they are
    neither successes nor failures. ``errors`` keeps a few sample
    ``(record_id, reason)`` pairs for display.
    """

    success: int = 0
    failed: int = 0
    excluded: int = 0
    errors: List[Tuple[Any, str]] = field(default_factory=list)
    sample_size: int = 5

    def add_failure(self, record_id, reason: str) -> None:
        self.failed += 1
        if len(self.errors) < self.sample_size:
            self.errors.append((record_id, reason))

    @property
    def attempted(self) -> int:
        return self.success + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "excluded": self.excluded,
            "errors": [{"id": record_id, "reason": reason} for record_id, reason in self.errors],
        }


class ExportWorkflowController:
    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], Any] = utcnow,
        error_sample_size: int = 5,
    ) -> None:
        self.store = store
        self.clock = clock
        self.error_sample_size = error_sample_size

    # -- creation --------------------------------------------------------

    def record_score(self, fields: Dict[str, Any], actor: Actor) -> AssessmentRecord:
        """Create one draft record owned by ``actor``."""
        if not actor.is_trainer:
            raise PermissionDenied("only trainers record assessment scores")
        data = validate_assessment_fields({**fields, "trainer_id": actor.id})
        record = AssessmentRecord(**data)
        self.store.create(record)
        _logger.info("assessment recorded", extra={"operation": "create", "record_id": record.id})
        return record

    def record_session(self, common: Dict[str, Any], scores: Iterable[Dict[str, Any]], actor: Actor) -> List[AssessmentRecord]:
        """Create one record per student for a batch assessment session.

        Every entry is validated before the first write, so a bad score
        leaves nothing half-saved.
        """
        if not actor.is_trainer:
            raise PermissionDenied("only trainers record assessment scores")
        rows = [validate_assessment_fields({**common, **entry, "trainer_id": actor.id}) for entry in scores]
        if not rows:
            raise ValidationError("scores must contain at least one student")
        records = []
        for data in rows:
            record = AssessmentRecord(**data)
            self.store.create(record)
            records.append(record)
        _logger.info("assessment session recorded", extra={"operation": "create", "count": len(records)})
        return records

    # -- export ----------------------------------------------------------

    def export_one(self, record_id: int, actor: Actor) -> None:
        record = self.store.get(record_id)
        if not can_export(record, actor):
            if is_locked(record):
                raise PermissionDenied("assessment already exported", record_id=record_id)
            raise PermissionDenied("only the trainer who recorded an assessment can export it", record_id=record_id)
        self._mark_exported(record_id, actor)

    def export_selected(self, record_ids: Iterable[int], actor: Actor) -> BulkResult:
        result = BulkResult(sample_size=self.error_sample_size)
        for record_id in record_ids:
            try:
                self.export_one(record_id, actor)
            except AttendanceError as exc:
                self._note_failure(result, "export", record_id, exc)
            else:
                result.success += 1
        _logger.info("export finished", extra={"operation": "export", **result.to_dict()})
        return result

    def admin_export(self, record_id: int, actor: Actor) -> None:
        """Export a draft left behind after the rest of its occasion was
        exported. Works whoever the original trainer was."""
        if not actor.is_admin:
            raise PermissionDenied("admin export requires an admin", record_id=record_id)
        record = self.store.get(record_id)
        if is_locked(record):
            raise PermissionDenied("assessment already exported", record_id=record_id)
        peers = self.store.query_by_group(record.group_id)
        if not is_orphaned_draft(record, peers):
            raise PermissionDenied("other records of this assessment are still drafts", record_id=record_id)
        self._mark_exported(record_id, actor)

    def _mark_exported(self, record_id: int, actor: Actor) -> None:
        self.store.update(
            record_id,
            {"exported_to_admin": True, "exported_at": self.clock(), "exported_by": actor.id},
            expected=_DRAFT,
        )
        _logger.info("assessment exported", extra={"operation": "export", "record_id": record_id})

    # -- edits -----------------------------------------------------------

    def edit_score(self, record_id: int, new_score, actor: Actor) -> AssessmentRecord:
        record = self.store.get(record_id)
        if not can_edit(record, actor):
            self._reject("edit", record_id, "record is locked or owned by another trainer")
        score = validate_score(new_score, record.max_score)
        self.store.update(
            record_id,
            {
                "score": score,
                "edit_count": AssessmentRecord.edit_count + 1,
                "last_edited_at": self.clock(),
                "last_edited_by": actor.id,
            },
            # Admins may edit locked records; trainers only while the row is
            # still a draft at write time.
            expected=None if actor.is_admin else _DRAFT,
        )
        _logger.info("score edited", extra={"operation": "edit", "record_id": record_id})
        return self.store.get(record_id)

    def delete_record(self, record_id: int, actor: Actor) -> None:
        record = self.store.get(record_id)
        if not can_delete(record, actor):
            self._reject("delete", record_id, "record is locked or owned by another trainer")
        self.store.delete(record_id, expected=None if actor.is_admin else _DRAFT)
        _logger.info("assessment deleted", extra={"operation": "delete", "record_id": record_id})

    def bulk_delete(self, records: Iterable[AssessmentRecord], actor: Actor) -> BulkResult:
        """Delete many records. Trainers' batches silently skip exported
        records; admins' batches include everything."""
        records = list(records)
        batch = records if actor.is_admin else [record for record in records if not is_locked(record)]
        result = BulkResult(excluded=len(records) - len(batch), sample_size=self.error_sample_size)
        for record in batch:
            try:
                self.delete_record(record.id, actor)
            except AttendanceError as exc:
                self._note_failure(result, "delete", record.id, exc)
            else:
                result.success += 1
        _logger.info("bulk delete finished", extra={"operation": "bulk_delete", **result.to_dict()})
        return result

    # -- admin review ----------------------------------------------------

    def unlock(self, record_id: int, actor: Actor) -> None:
        """Return an exported record to Draft. Admin only."""
        record = self.store.get(record_id)
        if not can_unlock(record, actor):
            self._reject("unlock", record_id, "only admins can unlock exported assessments")
        self.store.update(
            record_id,
            {
                "exported_to_admin": False,
                "exported_at": None,
                "exported_by": None,
                "reviewed_by_admin": False,
                "reviewed_at": None,
                "reviewed_by": None,
                "last_edited_at": self.clock(),
                "last_edited_by": actor.id,
            },
            expected=_EXPORTED,
        )
        _logger.info("assessment unlocked", extra={"operation": "unlock", "record_id": record_id})

    def mark_reviewed(self, record_id: int, actor: Actor) -> None:
        record = self.store.get(record_id)
        if not can_review(record, actor):
            self._reject("review", record_id, "only admins can review exported assessments")
        self.store.update(
            record_id,
            {"reviewed_by_admin": True, "reviewed_at": self.clock(), "reviewed_by": actor.id},
            expected=_EXPORTED,
        )
        _logger.info("assessment reviewed", extra={"operation": "review", "record_id": record_id})

    # -- listings --------------------------------------------------------

    def drafts_for(self, trainer_id: str) -> List[AssessmentRecord]:
        return self.store.query_by_trainer(trainer_id, exported=False)

    def exported_records(self) -> List[AssessmentRecord]:
        return self.store.exported()

    # -- helpers ---------------------------------------------------------

    def _reject(self, operation: str, record_id: int, reason: str) -> None:
        _logger.warning("operation rejected", extra={"operation": operation, "record_id": record_id, "reason": reason})
        raise PermissionDenied(reason, record_id=record_id)

    def _note_failure(self, result: BulkResult, operation: str, record_id, exc: AttendanceError) -> None:
        _logger.warning(
            "bulk item failed",
            extra={"operation": operation, "record_id": record_id, "error_type": type(exc).__name__, "reason": exc.message},
        )
        result.add_failure(record_id, exc.message)


__all__ = ["BulkResult", "ExportWorkflowController"]
