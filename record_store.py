"""Persistence adapter for assessment and attendance records.

The workflow and reporting code never touch ``db.session`` directly; they go
through :class:`RecordStore`. Every failure of the database layer surfaces as
:class:`errors.StoreError` and is not retried here. Successful writes are
announced to subscribers (the UI refresh channel) after the commit.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app_logging import get_logger
from errors import NotFound, StoreError, WriteConflict
from models import AssessmentRecord, AttendanceRecord, Group, Student, db

_logger = get_logger("app.store")


@dataclass(frozen=True)
class ChangeEvent:
    action: str  # created | updated | deleted
    entity: str
    record_id: int


Listener = Callable[[ChangeEvent], None]


class RecordStore:
    """Record-granular access to the assessment and attendance tables."""

    def __init__(self, session=None) -> None:
        self._session = session
        self._listeners: List[Listener] = []

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # -- notifications ---------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, action: str, model, record_id: int) -> None:
        event = ChangeEvent(action=action, entity=model.__tablename__, record_id=record_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # The write is already committed; a broken subscriber must
                # not turn it into a reported failure.
                _logger.exception("change listener failed", extra={"record_id": record_id})

    @contextmanager
    def _guard(self, operation: str, record_id: Optional[int] = None) -> Iterator[None]:
        try:
            yield
        except IntegrityError as exc:
            self.session.rollback()
            _logger.warning(
                "store write rejected by constraint",
                extra={"operation": operation, "record_id": record_id, "error": str(exc.orig)},
            )
            raise WriteConflict(f"{operation} conflicts with an existing record", record_id=record_id) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            _logger.error(
                "store operation failed",
                extra={"operation": operation, "record_id": record_id, "error": str(exc)},
            )
            raise StoreError(f"{operation} failed: {exc.__class__.__name__}", record_id=record_id) from exc

    # -- writes ----------------------------------------------------------

    def create(self, record) -> int:
        with self._guard("create"):
            self.session.add(record)
            self.session.commit()
            record_id = record.id
        self._notify("created", type(record), record_id)
        return record_id

    def update(
        self,
        record_id: int,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
        model=AssessmentRecord,
    ) -> None:
        """Apply ``fields`` to one row in a single ``UPDATE`` statement.

        When ``expected`` is given the row is only changed if each of those
        columns currently holds the given value. A row that exists but fails
        the condition raises :class:`WriteConflict`; a missing row raises
        :class:`NotFound`.
        """
        with self._guard("update", record_id):
            stmt = update(model).where(model.id == record_id)
            for column, value in (expected or {}).items():
                stmt = stmt.where(getattr(model, column) == value)
            result = self.session.execute(stmt.values(**fields))
            matched = result.rowcount
            self.session.commit()
            if not matched:
                exists = self.session.get(model, record_id) is not None
        if not matched:
            if not exists:
                raise NotFound(f"{model.__tablename__} {record_id} does not exist", record_id=record_id)
            raise WriteConflict(f"{model.__tablename__} {record_id} changed concurrently", record_id=record_id)
        self._notify("updated", model, record_id)

    def delete(
        self,
        record_id: int,
        expected: Optional[Mapping[str, Any]] = None,
        model=AssessmentRecord,
    ) -> None:
        """Remove one row outright; ``expected`` works as in :meth:`update`."""
        with self._guard("delete", record_id):
            stmt = delete(model).where(model.id == record_id)
            for column, value in (expected or {}).items():
                stmt = stmt.where(getattr(model, column) == value)
            matched = self.session.execute(stmt).rowcount
            self.session.commit()
            if not matched:
                exists = self.session.get(model, record_id) is not None
        if not matched:
            if not exists:
                raise NotFound(f"{model.__tablename__} {record_id} does not exist", record_id=record_id)
            raise WriteConflict(f"{model.__tablename__} {record_id} changed concurrently", record_id=record_id)
        self._notify("deleted", model, record_id)

    # -- reads -----------------------------------------------------------

    def get(self, record_id: int, model=AssessmentRecord):
        with self._guard("get", record_id):
            record = self.session.get(model, record_id)
        if record is None:
            raise NotFound(f"{model.__tablename__} {record_id} does not exist", record_id=record_id)
        return record

    def query_by_group(self, group_id: int) -> List[AssessmentRecord]:
        with self._guard("query_by_group"):
            stmt = (select(AssessmentRecord)
                    .where(AssessmentRecord.group_id == group_id)
                    .order_by(AssessmentRecord.date, AssessmentRecord.id))
            return list(self.session.scalars(stmt))

    def query_by_date(self, day: date) -> List[AttendanceRecord]:
        with self._guard("query_by_date"):
            stmt = (select(AttendanceRecord)
                    .where(AttendanceRecord.date == day)
                    .order_by(AttendanceRecord.student_id))
            return list(self.session.scalars(stmt))

    def find_attendance(self, student_id: int, group_id: int, day: date) -> Optional[AttendanceRecord]:
        """The mark for one student, group and day, or ``None``."""
        with self._guard("find_attendance"):
            stmt = select(AttendanceRecord).where(
                AttendanceRecord.student_id == student_id,
                AttendanceRecord.group_id == group_id,
                AttendanceRecord.date == day,
            )
            return self.session.scalars(stmt).first()

    def query_by_trainer(self, trainer_id: str, exported: Optional[bool] = None) -> List[AssessmentRecord]:
        with self._guard("query_by_trainer"):
            stmt = select(AssessmentRecord).where(AssessmentRecord.trainer_id == trainer_id)
            if exported is not None:
                stmt = stmt.where(AssessmentRecord.exported_to_admin == exported)
            return list(self.session.scalars(stmt.order_by(AssessmentRecord.date, AssessmentRecord.id)))

    def exported(self) -> List[AssessmentRecord]:
        with self._guard("exported"):
            stmt = (select(AssessmentRecord)
                    .where(AssessmentRecord.exported_to_admin.is_(True))
                    .order_by(AssessmentRecord.date, AssessmentRecord.id))
            return list(self.session.scalars(stmt))

    def snapshot(self) -> Dict[str, list]:
        """Read every table the report aggregator needs in one go."""
        with self._guard("snapshot"):
            return {
                "assessments": list(self.session.scalars(select(AssessmentRecord).order_by(AssessmentRecord.id))),
                "attendance": list(self.session.scalars(select(AttendanceRecord).order_by(AttendanceRecord.id))),
                "students": list(self.session.scalars(select(Student).order_by(Student.name, Student.id))),
                "groups": list(self.session.scalars(select(Group).order_by(Group.name))),
            }


__all__ = ["ChangeEvent", "RecordStore"]
