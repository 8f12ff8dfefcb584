"""Cross-sectional performance reports built from three record streams.

Assessment records, attendance records and the roster are reconciled into a
pivot of students × assessment occasions. There is no stored "assessment"
entity; an occasion is reconstructed by key from the per-student records:

* year 2/3 reports key records that carry a week by ``week, unit,
  max_score``, so the same week's assessment given to several groups of one
  unit lands in one column;
* everything else is keyed by ``name, type, max_score, date``.

Each cell is one of four explicit states, resolved in this order:

1. :class:`ScoredCell` / :class:`ExcusedCell` - the student has a record for
   the occasion;
2. :class:`AbsentCell` - no record, but the occasion was issued to the
   student's group and the student was marked absent that day (counts as 0);
3. :class:`EmptyCell` - not assessed.

Averages add up scores and maximums of scored and absent cells; excused and
empty cells are left out. A student with nothing to average gets ``None``,
which renders as ``-`` and is never shown as 0%.

All index structures are built per call and dropped afterwards. The
aggregator only reads, so it can run alongside writes on a slightly stale
snapshot.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from app_logging import get_logger
from config import Config
from errors import ValidationError
from models import STATUS_ABSENT, STATUS_EXCUSED, STATUS_LATE, STATUS_PRESENT, parse_date
from permissions import Actor, visible_records

_logger = get_logger("app.reports")

SUMMARY = 'summary'
DETAILED = 'detailed'
WEEKLY = 'weekly'
VIEWS = (SUMMARY, DETAILED, WEEKLY)

DASH = '-'
_ATTENDED = (STATUS_PRESENT, STATUS_LATE)


def _optional_int(value, name: str) -> Optional[int]:
    if value in (None, '', 'all'):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be a number or "all"')


def _optional_text(value) -> Optional[str]:
    return None if value in (None, '', 'all') else str(value)


@dataclass(frozen=True)
class ReportFilter:
    """Which slice of the records a report covers. ``None`` means all."""

    year: Optional[int] = None
    group_id: Optional[int] = None
    unit: Optional[str] = None
    trainer_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @classmethod
    def from_mapping(cls, args: Mapping[str, Any]) -> 'ReportFilter':
        year = _optional_int(args.get('year'), 'year')
        if year is not None and year not in Config.YEARS:
            raise ValidationError('year must be between 1 and 6')
        start = args.get('start') or args.get('start_date')
        end = args.get('end') or args.get('end_date')
        report_filter = cls(
            year=year,
            group_id=_optional_int(args.get('group_id'), 'group_id'),
            unit=_optional_text(args.get('unit')),
            trainer_id=_optional_text(args.get('trainer_id')),
            start_date=parse_date(start, 'start') if start else None,
            end_date=parse_date(end, 'end') if end else None,
        )
        if report_filter.start_date and report_filter.end_date and report_filter.end_date < report_filter.start_date:
            raise ValidationError('end date must not be before start date')
        return report_filter

    @property
    def uses_weeks(self) -> bool:
        return self.year in Config.WEEKLY_YEARS

    def matches_assessment(self, record) -> bool:
        if self.year is not None and record.year != self.year:
            return False
        if self.group_id is not None and record.group_id != self.group_id:
            return False
        if self.unit is not None and record.unit != self.unit:
            return False
        if self.trainer_id is not None and record.trainer_id != self.trainer_id:
            return False
        if self.start_date is not None and record.date < self.start_date:
            return False
        if self.end_date is not None and record.date > self.end_date:
            return False
        return True

    def matches_student(self, student, group=None) -> bool:
        if self.year is not None and student.year != self.year:
            return False
        if self.group_id is not None and student.group_id != self.group_id:
            return False
        if self.unit is not None:
            unit = student.unit or (group.current_unit if group is not None else None)
            if unit != self.unit:
                return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'year': self.year,
            'group_id': self.group_id,
            'unit': self.unit,
            'trainer_id': self.trainer_id,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
        }


# ---------------------------------------------------------------------------
# Columns
# ---------------------------------------------------------------------------

def column_key(record, report_filter: ReportFilter) -> Tuple:
    if report_filter.uses_weeks and record.week is not None:
        return ('week', record.week, record.unit, record.max_score)
    return ('occasion', record.assessment_name, record.assessment_type, record.max_score, record.date)


@dataclass
class AssessmentColumn:
    """One assessment occasion as a report column. Derived, never stored.

    Display metadata comes from the first record seen under :attr:`key`.
    :attr:`dates_by_group` remembers on which days the occasion was given to
    which group, which is what absence back-fill checks against.
    """

    key: Tuple
    name: str
    assessment_type: str
    max_score: float
    date: date
    unit: Optional[str] = None
    week: Optional[int] = None
    dates_by_group: Dict[int, Set[date]] = field(default_factory=dict)

    @classmethod
    def from_record(cls, key: Tuple, record) -> 'AssessmentColumn':
        return cls(
            key=key,
            name=record.assessment_name,
            assessment_type=record.assessment_type,
            max_score=record.max_score,
            date=record.date,
            unit=record.unit,
            week=record.week,
        )

    def add_issue(self, group_id: int, day: date) -> None:
        self.dates_by_group.setdefault(group_id, set()).add(day)

    def issued_to(self, group_id: int) -> bool:
        return group_id in self.dates_by_group

    @property
    def is_weekly(self) -> bool:
        return self.key[0] == 'week'

    @property
    def label(self) -> str:
        if self.is_weekly:
            return f"Week {self.week} {self.unit}" if self.unit else f"Week {self.week}"
        return f"{self.name} ({self.date.isoformat()})"

    def sort_key(self) -> Tuple:
        if self.is_weekly:
            return (0, self.week, self.date, self.unit or '', self.max_score)
        return (1, 0, self.date, self.name, self.max_score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label': self.label,
            'name': self.name,
            'assessment_type': self.assessment_type,
            'max_score': self.max_score,
            'date': self.date.isoformat(),
            'unit': self.unit,
            'week': self.week,
        }


@dataclass
class WeekColumn:
    """A weekly-view column gathering every occasion of one week."""

    week: int
    columns: List[AssessmentColumn] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"Week {self.week}"

    def to_dict(self) -> Dict[str, Any]:
        return {'label': self.label, 'week': self.week, 'occasions': len(self.columns)}


def build_columns(records: Iterable, report_filter: ReportFilter) -> List[AssessmentColumn]:
    columns: Dict[Tuple, AssessmentColumn] = {}
    for record in records:
        key = column_key(record, report_filter)
        column = columns.get(key)
        if column is None:
            column = columns[key] = AssessmentColumn.from_record(key, record)
        column.add_issue(record.group_id, record.date)
    return sorted(columns.values(), key=AssessmentColumn.sort_key)


# ---------------------------------------------------------------------------
# Cells
# ---------------------------------------------------------------------------

class Cell:
    kind = 'cell'
    is_absent = False
    is_excused = False

    @property
    def counts(self) -> bool:
        """Whether the cell takes part in averaging."""
        return False

    def display(self) -> str:
        return ''

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return {
            'kind': self.kind,
            'score': self.score,
            'max_score': self.max_score,
            'is_absent': self.is_absent,
            'is_excused': self.is_excused,
        }


@dataclass(frozen=True)
class ScoredCell(Cell):
    score: float
    max_score: float
    kind = 'scored'

    @property
    def counts(self) -> bool:
        return True

    def display(self) -> str:
        return f"{self.score:g}/{self.max_score:g}"


@dataclass(frozen=True)
class AbsentCell(Cell):
    """No score recorded and the student was absent: treated as zero."""

    max_score: float
    score: float = 0
    kind = 'absent'
    is_absent = True

    @property
    def counts(self) -> bool:
        return True

    def display(self) -> str:
        return f"0/{self.max_score:g} (A)"


@dataclass(frozen=True)
class ExcusedCell(Cell):
    score: float
    max_score: float
    kind = 'excused'
    is_excused = True

    def display(self) -> str:
        return 'EX'


@dataclass(frozen=True)
class EmptyCell(Cell):
    kind = 'empty'

    def to_dict(self) -> None:
        return None


EMPTY = EmptyCell()


def combine_records(records: Sequence) -> Cell:
    """Cell for a student holding one or more records under one column."""
    counted = [record for record in records if not record.is_excused]
    if counted:
        return ScoredCell(score=sum(r.score for r in counted), max_score=sum(r.max_score for r in counted))
    return ExcusedCell(score=sum(r.score for r in records), max_score=sum(r.max_score for r in records))


def merge_cells(cells: Sequence[Cell]) -> Cell:
    """Fold several occasion cells into one, summing rather than averaging
    percentages."""
    counted = [cell for cell in cells if cell.counts]
    if counted:
        total_max = sum(cell.max_score for cell in counted)
        if all(cell.is_absent for cell in counted):
            return AbsentCell(max_score=total_max)
        return ScoredCell(score=sum(cell.score for cell in counted), max_score=total_max)
    excused = [cell for cell in cells if cell.is_excused]
    if excused:
        return ExcusedCell(score=sum(c.score for c in excused), max_score=sum(c.max_score for c in excused))
    return EMPTY


def percentage(numerator: float, denominator: float, decimals: int = 2) -> Optional[float]:
    if not denominator:
        return None
    return round(numerator / denominator * 100, decimals)


def average_score(cells: Iterable[Cell], decimals: int = 2) -> Optional[float]:
    counted = [cell for cell in cells if cell.counts]
    if not counted:
        return None
    return percentage(sum(c.score for c in counted), sum(c.max_score for c in counted), decimals)


def format_percentage(value: Optional[float]) -> str:
    return DASH if value is None else f"{value:g}%"


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class ReportRow:
    student_id: int
    student_name: str
    student_number: Optional[str]
    group_id: int
    group_name: str
    year: int
    unit: Optional[str]
    cells: List[Cell]
    average_score: Optional[float]
    attendance_rate: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'student_id': self.student_id,
            'student_name': self.student_name,
            'student_number': self.student_number,
            'group_id': self.group_id,
            'group_name': self.group_name,
            'year': self.year,
            'unit': self.unit,
            'cells': [cell.to_dict() for cell in self.cells],
            'average_score': self.average_score,
            'attendance_rate': self.attendance_rate,
        }


@dataclass
class Report:
    view: str
    filter: ReportFilter
    columns: list
    rows: List[ReportRow]
    total_records: int = 0

    @property
    def summary(self) -> Dict[str, Any]:
        averages = [row.average_score for row in self.rows if row.average_score is not None]
        rates = [row.attendance_rate for row in self.rows if row.attendance_rate is not None]
        return {
            'total_students': len(self.rows),
            'total_groups': len({row.group_id for row in self.rows}),
            'total_columns': len(self.columns),
            'total_assessment_records': self.total_records,
            'average_score': round(sum(averages) / len(averages), 2) if averages else None,
            'average_attendance_rate': round(sum(rates) / len(rates), 2) if rates else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'view': self.view,
            'filter': self.filter.to_dict(),
            'columns': [column.to_dict() for column in self.columns],
            'rows': [row.to_dict() for row in self.rows],
            'summary': self.summary,
        }

    def to_table(self) -> List[List[str]]:
        """Header plus one list of display strings per student, ready for a
        spreadsheet writer."""
        header = ['Student', 'Student ID', 'Group']
        header += [column.label for column in self.columns]
        header += ['Average Score', 'Attendance Rate']
        table = [header]
        for row in self.rows:
            line = [row.student_name, row.student_number or '', row.group_name]
            line += [cell.display() for cell in row.cells]
            line += [format_percentage(row.average_score), format_percentage(row.attendance_rate)]
            table.append(line)
        return table


class ReportAggregator:
    """Builds summary, detailed and weekly reports from a record snapshot."""

    def __init__(self, decimals: int = 2) -> None:
        self.decimals = decimals

    def build(
        self,
        assessments: Iterable,
        attendance: Iterable,
        students: Iterable,
        groups: Iterable,
        report_filter: ReportFilter = ReportFilter(),
        view: str = DETAILED,
        actor: Optional[Actor] = None,
    ) -> Report:
        if view not in VIEWS:
            raise ValidationError(f"view must be one of {', '.join(VIEWS)}")
        if view == WEEKLY and not report_filter.uses_weeks:
            raise ValidationError('weekly view is only available for year 2 and year 3')

        if actor is not None:
            assessments = visible_records(assessments, actor)
        records = [record for record in assessments if report_filter.matches_assessment(record)]
        if view == WEEKLY:
            records = [record for record in records if record.week is not None]

        groups_by_id = {group.id: group for group in groups}
        roster = sorted(
            (s for s in students if report_filter.matches_student(s, groups_by_id.get(s.group_id))),
            key=lambda s: (s.name, s.id),
        )

        columns = build_columns(records, report_filter)
        records_by_cell: Dict[Tuple[int, Tuple], List] = defaultdict(list)
        for record in records:
            records_by_cell[(record.student_id, column_key(record, report_filter))].append(record)
        issued_dates: Dict[int, Set[date]] = defaultdict(set)
        for record in records:
            issued_dates[record.group_id].add(record.date)
        statuses: Dict[int, Dict[date, List[str]]] = defaultdict(lambda: defaultdict(list))
        for mark in attendance:
            statuses[mark.student_id][mark.date].append(mark.status)

        week_columns = self._week_columns(columns) if view == WEEKLY else []
        positions = {column.key: index for index, column in enumerate(columns)}
        week_indexes = [[positions[column.key] for column in week.columns] for week in week_columns]

        rows = []
        for student in roster:
            student_statuses = statuses.get(student.id, {})
            cells = [
                self._cell(student, column, records_by_cell.get((student.id, column.key)), student_statuses)
                for column in columns
            ]
            if view == WEEKLY:
                cells = [merge_cells([cells[i] for i in indexes]) for indexes in week_indexes]
            group = groups_by_id.get(student.group_id)
            rows.append(ReportRow(
                student_id=student.id,
                student_name=student.name,
                student_number=student.student_number,
                group_id=student.group_id,
                group_name=group.name if group is not None else 'Unknown group',
                year=student.year,
                unit=student.unit or (group.current_unit if group is not None else None),
                cells=cells if view != SUMMARY else [],
                average_score=average_score(cells, self.decimals),
                attendance_rate=self._attendance_rate(student_statuses, issued_dates.get(student.group_id, set())),
            ))

        report_columns = {SUMMARY: [], DETAILED: columns, WEEKLY: week_columns}[view]
        _logger.info(
            "report built",
            extra={"view": view, "rows": len(rows), "columns": len(report_columns), "records": len(records)},
        )
        return Report(view=view, filter=report_filter, columns=report_columns, rows=rows, total_records=len(records))

    def _cell(self, student, column: AssessmentColumn, records, student_statuses) -> Cell:
        if records:
            return combine_records(records)
        if column.issued_to(student.group_id):
            for day in column.dates_by_group[student.group_id]:
                if STATUS_ABSENT in student_statuses.get(day, ()):
                    return AbsentCell(max_score=column.max_score)
        return EMPTY

    def _attendance_rate(self, student_statuses, days: Set[date]) -> Optional[float]:
        attended = counted = 0
        for day in days:
            for status in student_statuses.get(day, ()):
                if status == STATUS_EXCUSED:
                    continue
                counted += 1
                if status in _ATTENDED:
                    attended += 1
        return percentage(attended, counted, self.decimals)

    @staticmethod
    def _week_columns(columns: List[AssessmentColumn]) -> List[WeekColumn]:
        weeks: Dict[int, WeekColumn] = {}
        for column in columns:
            if column.week is None:
                continue
            weeks.setdefault(column.week, WeekColumn(week=column.week)).columns.append(column)
        return [weeks[week] for week in sorted(weeks)]

    # -- attendance grid -------------------------------------------------

    def attendance_grid(
        self,
        assessments: Iterable,
        attendance: Iterable,
        students: Iterable,
        groups: Iterable,
        report_filter: ReportFilter = ReportFilter(),
        actor: Optional[Actor] = None,
    ) -> 'AttendanceGrid':
        """Attendance of each student on each assessment day.

        Occasions are keyed by name, date, type, group and trainer. A cell is
        1 (present or late), 0 (absent) or ``-`` (no mark, or excused), taken
        from the attendance the same trainer recorded for the same group
        that day.
        """
        if actor is not None:
            assessments = visible_records(assessments, actor)
        records = sorted(
            (r for r in assessments if report_filter.matches_assessment(r)),
            key=lambda r: (r.date, r.assessment_name),
        )
        occasions: Dict[Tuple, Any] = {}
        for record in records:
            key = (record.assessment_name, record.date, record.assessment_type, record.group_id, record.trainer_id)
            occasions.setdefault(key, record)

        marks: Dict[Tuple, str] = {}
        for mark in attendance:
            marks[(mark.student_id, mark.date, mark.trainer_id, mark.group_id)] = mark.status

        groups_by_id = {group.id: group for group in groups}
        rows = []
        for student in sorted(students, key=lambda s: (s.name, s.id)):
            if not report_filter.matches_student(student, groups_by_id.get(student.group_id)):
                continue
            values = []
            for occasion in occasions.values():
                status = marks.get((student.id, occasion.date, occasion.trainer_id, occasion.group_id))
                values.append(1 if status in _ATTENDED else 0 if status == STATUS_ABSENT else DASH)
            present = values.count(1)
            absent = values.count(0)
            group = groups_by_id.get(student.group_id)
            rows.append(AttendanceGridRow(
                student_id=student.id,
                student_name=student.name,
                group_name=group.name if group is not None else 'Unknown group',
                values=values,
                present=present,
                absent=absent,
                attendance_rate=percentage(present, present + absent, self.decimals),
            ))
        columns = [
            {
                'name': record.assessment_name,
                'assessment_type': record.assessment_type,
                'date': record.date.isoformat(),
                'group_id': record.group_id,
                'trainer_id': record.trainer_id,
                'week': record.week,
            }
            for record in occasions.values()
        ]
        return AttendanceGrid(columns=columns, rows=rows)

    # -- trainer summary -------------------------------------------------

    def trainer_summary(
        self,
        assessments: Iterable,
        attendance: Iterable,
        report_filter: ReportFilter = ReportFilter(),
    ) -> List['TrainerStats']:
        stats: Dict[str, TrainerStats] = {}

        def _for(trainer_id: str) -> TrainerStats:
            return stats.setdefault(trainer_id, TrainerStats(trainer_id=trainer_id))

        for record in assessments:
            if report_filter.matches_assessment(record):
                _for(record.trainer_id).add_assessment(record)
        for mark in attendance:
            if report_filter.year is not None and mark.year != report_filter.year:
                continue
            if report_filter.trainer_id is not None and mark.trainer_id != report_filter.trainer_id:
                continue
            _for(mark.trainer_id).add_attendance(mark)
        return [stats[trainer_id].finish(self.decimals) for trainer_id in sorted(stats)]


@dataclass
class AttendanceGridRow:
    student_id: int
    student_name: str
    group_name: str
    values: list
    present: int
    absent: int
    attendance_rate: Optional[float]

    @property
    def total_days(self) -> int:
        return self.present + self.absent

    def to_dict(self) -> Dict[str, Any]:
        return {
            'student_id': self.student_id,
            'student_name': self.student_name,
            'group_name': self.group_name,
            'values': self.values,
            'total_days': self.total_days,
            'present': self.present,
            'absent': self.absent,
            'attendance_rate': self.attendance_rate,
        }


@dataclass
class AttendanceGrid:
    columns: List[Dict[str, Any]]
    rows: List[AttendanceGridRow]

    def to_dict(self) -> Dict[str, Any]:
        rates = [row.attendance_rate for row in self.rows if row.attendance_rate is not None]
        return {
            'columns': self.columns,
            'rows': [row.to_dict() for row in self.rows],
            'summary': {
                'total_students': len(self.rows),
                'total_assessments': len(self.columns),
                'average_attendance_rate': round(sum(rates) / len(rates), 2) if rates else None,
            },
        }


@dataclass
class TrainerStats:
    trainer_id: str
    students: Set[int] = field(default_factory=set)
    total_assessments: int = 0
    total_attendance_records: int = 0
    assessment_types: Dict[str, int] = field(default_factory=dict)
    attendance_rate: Optional[float] = None
    average_score: Optional[float] = None
    _attended: int = 0
    _counted_marks: int = 0
    _score: float = 0
    _max_score: float = 0

    def add_assessment(self, record) -> None:
        self.students.add(record.student_id)
        self.total_assessments += 1
        self.assessment_types[record.assessment_type] = self.assessment_types.get(record.assessment_type, 0) + 1
        if not record.is_excused:
            self._score += record.score
            self._max_score += record.max_score

    def add_attendance(self, mark) -> None:
        self.students.add(mark.student_id)
        self.total_attendance_records += 1
        if mark.status != STATUS_EXCUSED:
            self._counted_marks += 1
            if mark.status in _ATTENDED:
                self._attended += 1

    def finish(self, decimals: int = 2) -> 'TrainerStats':
        self.attendance_rate = percentage(self._attended, self._counted_marks, decimals)
        self.average_score = percentage(self._score, self._max_score, decimals)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trainer_id': self.trainer_id,
            'total_students': len(self.students),
            'total_assessments': self.total_assessments,
            'total_attendance_records': self.total_attendance_records,
            'attendance_rate': self.attendance_rate,
            'average_score': self.average_score,
            'assessment_types': dict(sorted(self.assessment_types.items())),
        }


__all__ = [
    "AbsentCell",
    "AssessmentColumn",
    "AttendanceGrid",
    "Cell",
    "DETAILED",
    "EmptyCell",
    "ExcusedCell",
    "Report",
    "ReportAggregator",
    "ReportFilter",
    "ReportRow",
    "SUMMARY",
    "ScoredCell",
    "TrainerStats",
    "WEEKLY",
    "WeekColumn",
    "build_columns",
    "format_percentage",
]
