"""Database models for cohort attendance and graded assessments.

SQLAlchemy is used as the ORM layer. The models are:

* :class:`Group` - a named cohort within one programme year. Year 2 and 3
  groups rotate through units and record the one they are currently on.
* :class:`Student` - a student belonging to exactly one group.
* :class:`AssessmentRecord` - one graded result for one student on one
  assessment occasion. A batch "assessment session" is simply N records that
  share name, date, type and group; no parent row exists.
* :class:`AttendanceRecord` - one attendance mark per student, group and
  date.

Assessment records carry their own lifecycle flags (``exported_to_admin``,
``reviewed_by_admin``) and edit audit fields. The rules that govern those
flags live in :mod:`permissions` and :mod:`export_workflow`, not here.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional

from flask_sqlalchemy import SQLAlchemy

from config import Config
from errors import ValidationError

db = SQLAlchemy()

ASSESSMENT_TYPES = ('exam', 'quiz', 'assignment', 'project', 'presentation')

STATUS_PRESENT = 'present'
STATUS_ABSENT = 'absent'
STATUS_LATE = 'late'
STATUS_EXCUSED = 'excused'
ATTENDANCE_STATUSES = (STATUS_PRESENT, STATUS_ABSENT, STATUS_LATE, STATUS_EXCUSED)

ROLE_ADMIN = 'admin'
ROLE_TRAINER = 'trainer'


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Group(db.Model):
    __tablename__ = 'groups'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    current_unit = db.Column(db.String(20), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    students = db.relationship('Student', backref='group', lazy=True)

    def __repr__(self) -> str:
        return f"<Group {self.name} year={self.year}>"


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    student_number = db.Column(db.String(20), nullable=True)
    year = db.Column(db.Integer, nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    unit = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(120), nullable=True)

    def __repr__(self) -> str:
        return f"<Student {self.name}>"


class AssessmentRecord(db.Model):
    """One student's result on one assessment occasion.

    ``edit_count`` grows by exactly one per accepted score edit. Once
    ``exported_to_admin`` is set only admin actors may change the row.
    """

    __tablename__ = 'assessment_records'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False, index=True)
    trainer_id = db.Column(db.String(64), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)

    assessment_name = db.Column(db.String(120), nullable=False)
    assessment_type = db.Column(db.String(20), nullable=False)
    score = db.Column(db.Float, nullable=False)
    max_score = db.Column(db.Float, nullable=False)
    date = db.Column(db.Date, nullable=False, index=True)
    unit = db.Column(db.String(20), nullable=True)
    week = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    is_excused = db.Column(db.Boolean, nullable=False, default=False)

    exported_to_admin = db.Column(db.Boolean, nullable=False, default=False, index=True)
    exported_at = db.Column(db.DateTime, nullable=True)
    exported_by = db.Column(db.String(64), nullable=True)

    reviewed_by_admin = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.String(64), nullable=True)

    last_edited_at = db.Column(db.DateTime, nullable=True)
    last_edited_by = db.Column(db.String(64), nullable=True)
    edit_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __init__(self, **kwargs: Any) -> None:
        # Column defaults only apply on flush; transient rows used by the
        # report code need them straight away.
        kwargs.setdefault('is_excused', False)
        kwargs.setdefault('exported_to_admin', False)
        kwargs.setdefault('reviewed_by_admin', False)
        kwargs.setdefault('edit_count', 0)
        super().__init__(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'student_id': self.student_id,
            'group_id': self.group_id,
            'trainer_id': self.trainer_id,
            'year': self.year,
            'assessment_name': self.assessment_name,
            'assessment_type': self.assessment_type,
            'score': self.score,
            'max_score': self.max_score,
            'date': _iso(self.date),
            'unit': self.unit,
            'week': self.week,
            'notes': self.notes,
            'is_excused': self.is_excused,
            'exported_to_admin': self.exported_to_admin,
            'exported_at': _iso(self.exported_at),
            'exported_by': self.exported_by,
            'reviewed_by_admin': self.reviewed_by_admin,
            'reviewed_at': _iso(self.reviewed_at),
            'reviewed_by': self.reviewed_by,
            'last_edited_at': _iso(self.last_edited_at),
            'last_edited_by': self.last_edited_by,
            'edit_count': self.edit_count,
        }

    def __repr__(self) -> str:
        return (f"<AssessmentRecord {self.assessment_name!r} student={self.student_id} "
                f"score={self.score}/{self.max_score} exported={self.exported_to_admin}>")


class AttendanceRecord(db.Model):
    __tablename__ = 'attendance_records'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    group_id = db.Column(db.Integer, db.ForeignKey('groups.id'), nullable=False)
    trainer_id = db.Column(db.String(64), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    date = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)
    unit = db.Column(db.String(20), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    __table_args__ = (db.UniqueConstraint('student_id', 'group_id', 'date', name='uix_attendance_student_day'),)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'student_id': self.student_id,
            'group_id': self.group_id,
            'trainer_id': self.trainer_id,
            'year': self.year,
            'date': _iso(self.date),
            'status': self.status,
            'unit': self.unit,
            'notes': self.notes,
        }

    def __repr__(self) -> str:
        return f"<AttendanceRecord student={self.student_id} date={self.date} status={self.status}>"


def parse_date(value, field: str = 'date') -> date:
    """Accept a ``date`` or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'{field} must be a YYYY-MM-DD date')


def validate_score(score, max_score) -> float:
    try:
        score = float(score)
    except (TypeError, ValueError):
        raise ValidationError('score must be a number')
    if score < 0 or score > max_score:
        raise ValidationError(f'score must be between 0 and {max_score:g}')
    return score


def validate_assessment_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Check and normalise the fields of a new assessment record.

    Returns a copy with the date parsed and numbers coerced. Raises
    :class:`ValidationError` on the first problem found.
    """
    data = dict(fields)
    for required in ('student_id', 'group_id', 'trainer_id', 'year', 'assessment_name',
                     'assessment_type', 'score', 'max_score', 'date'):
        if data.get(required) in (None, ''):
            raise ValidationError(f'{required} is required')

    if data['year'] not in Config.YEARS:
        raise ValidationError('year must be between 1 and 6')
    if data['assessment_type'] not in ASSESSMENT_TYPES:
        raise ValidationError(f"assessment_type must be one of {', '.join(ASSESSMENT_TYPES)}")
    if not str(data['assessment_name']).strip():
        raise ValidationError('assessment_name must not be blank')

    try:
        data['max_score'] = float(data['max_score'])
    except (TypeError, ValueError):
        raise ValidationError('max_score must be a number')
    if data['max_score'] <= 0:
        raise ValidationError('max_score must be greater than 0')
    data['score'] = validate_score(data['score'], data['max_score'])
    data['date'] = parse_date(data['date'])

    week = data.get('week')
    if week is not None:
        if not isinstance(week, int) or not Config.MIN_WEEK <= week <= Config.MAX_WEEK:
            raise ValidationError(f'week must be between {Config.MIN_WEEK} and {Config.MAX_WEEK}')
    unit = data.get('unit')
    if unit:
        if data['year'] not in Config.WEEKLY_YEARS:
            raise ValidationError('unit only applies to year 2 and year 3 assessments')
        if unit not in Config.UNITS_BY_YEAR[data['year']]:
            raise ValidationError(f"unit must be one of {', '.join(Config.UNITS_BY_YEAR[data['year']])}")

    data['is_excused'] = bool(data.get('is_excused', False))
    return data


def validate_attendance_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(fields)
    for required in ('student_id', 'group_id', 'trainer_id', 'year', 'date', 'status'):
        if data.get(required) in (None, ''):
            raise ValidationError(f'{required} is required')
    if data['status'] not in ATTENDANCE_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ATTENDANCE_STATUSES)}")
    if data['year'] not in Config.YEARS:
        raise ValidationError('year must be between 1 and 6')
    data['date'] = parse_date(data['date'])
    return data
