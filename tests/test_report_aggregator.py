from datetime import date
from itertools import count

import pytest

from errors import ValidationError
from models import AssessmentRecord, AttendanceRecord, Group, Student
from permissions import Actor
from report_aggregator import (
    DETAILED,
    EMPTY,
    SUMMARY,
    WEEKLY,
    AbsentCell,
    ExcusedCell,
    ReportAggregator,
    ReportFilter,
    ScoredCell,
    merge_cells,
)

_ids = count(1)

WEEK3 = date(2024, 3, 13)
WEEK4 = date(2024, 3, 20)


def assessment(student, score, max_score=10, name='Quiz1', day=date(2024, 1, 10), **overrides):
    fields = dict(
        id=next(_ids), student_id=student.id, group_id=student.group_id, trainer_id='trainer-1',
        year=student.year, assessment_name=name, assessment_type='quiz', score=score,
        max_score=max_score, date=day,
    )
    fields.update(overrides)
    return AssessmentRecord(**fields)


def mark(student, day, status, trainer_id='trainer-1'):
    return AttendanceRecord(id=next(_ids), student_id=student.id, group_id=student.group_id,
                            trainer_id=trainer_id, year=student.year, date=day, status=status)


@pytest.fixture
def aggregator():
    return ReportAggregator()


@pytest.fixture
def year1():
    group = Group(id=1, name='Group A', year=1)
    students = [Student(id=i, name=name, student_number=f'S-{i}', year=1, group_id=1)
                for i, name in enumerate(('Amal', 'Badr', 'Chadi'), start=1)]
    return group, students


@pytest.fixture
def msk():
    group = Group(id=2, name='G2 MSK', year=2, current_unit='MSK')
    dana = Student(id=10, name='Dana', student_number='D-10', year=2, group_id=2)
    emre = Student(id=11, name='Emre', student_number='E-11', year=2, group_id=2)
    return group, dana, emre


def test_excused_cell_excluded_from_average(aggregator, year1):
    group, (amal, *_) = year1
    records = [
        assessment(amal, 10),
        assessment(amal, 0, name='Quiz2', day=date(2024, 1, 11), is_excused=True),
    ]
    report = aggregator.build(records, [], [amal], [group])

    row = report.rows[0]
    assert row.cells == [ScoredCell(score=10, max_score=10), ExcusedCell(score=0, max_score=10)]
    assert row.average_score == 100.0


def test_explicit_zero_is_not_absent(aggregator, year1):
    group, (amal, *_) = year1
    records = [assessment(amal, 0)]
    attendance = [mark(amal, date(2024, 1, 10), 'absent')]

    cell = aggregator.build(records, attendance, [amal], [group]).rows[0].cells[0]

    assert cell == ScoredCell(score=0, max_score=10)
    assert not cell.is_absent


def test_absent_backfill_and_empty_cells(aggregator, year1):
    group, (amal, badr, chadi) = year1
    records = [assessment(amal, 8)]
    attendance = [mark(badr, date(2024, 1, 10), 'absent'), mark(chadi, date(2024, 1, 10), 'present')]

    report = aggregator.build(records, attendance, [amal, badr, chadi], [group])

    cells = {row.student_name: row.cells[0] for row in report.rows}
    assert cells['Amal'] == ScoredCell(score=8, max_score=10)
    assert cells['Badr'] == AbsentCell(max_score=10)
    assert cells['Chadi'] is EMPTY
    averages = {row.student_name: row.average_score for row in report.rows}
    assert averages == {'Amal': 80.0, 'Badr': 0.0, 'Chadi': None}


def test_absence_not_backfilled_for_other_groups(aggregator, year1):
    group, (amal, *_) = year1
    other_group = Group(id=5, name='Group B', year=1)
    outsider = Student(id=50, name='Zeyn', year=1, group_id=5)
    records = [assessment(amal, 8)]
    attendance = [mark(outsider, date(2024, 1, 10), 'absent')]

    report = aggregator.build(records, attendance, [amal, outsider], [group, other_group])

    zeyn = next(row for row in report.rows if row.student_name == 'Zeyn')
    assert zeyn.cells == [EMPTY]


def test_null_average_when_only_excused(aggregator, year1):
    group, (amal, *_) = year1
    records = [assessment(amal, 0, is_excused=True)]
    report = aggregator.build(records, [], [amal], [group])

    assert report.rows[0].average_score is None
    assert report.to_table()[1][-2] == '-'


def test_year2_week_columns_with_absence(aggregator, msk):
    group, dana, emre = msk
    records = [
        assessment(dana, 7, name='MSK quiz 3', day=WEEK3, week=3, unit='MSK'),
        assessment(emre, 8, name='MSK quiz 4', day=WEEK4, week=4, unit='MSK'),
    ]
    attendance = [mark(dana, WEEK4, 'absent'), mark(emre, WEEK4, 'present')]

    report = aggregator.build(records, attendance, [dana, emre], [group],
                              ReportFilter(year=2, unit='MSK'), view=DETAILED)

    assert [column.week for column in report.columns] == [3, 4]
    assert [column.label for column in report.columns] == ['Week 3 MSK', 'Week 4 MSK']
    dana_row = report.rows[0]
    assert dana_row.student_name == 'Dana'
    assert dana_row.cells == [ScoredCell(score=7, max_score=10), AbsentCell(max_score=10)]
    assert dana_row.cells[1].to_dict() == {
        'kind': 'absent', 'score': 0, 'max_score': 10, 'is_absent': True, 'is_excused': False,
    }
    assert dana_row.average_score == 35.0
    assert dana_row.attendance_rate == 0.0
    assert report.rows[1].cells == [EMPTY, ScoredCell(score=8, max_score=10)]


def test_same_week_from_different_groups_share_a_column(aggregator, msk):
    group, dana, _ = msk
    other = Group(id=3, name='G2 MSK b', year=2, current_unit='MSK')
    farah = Student(id=12, name='Farah', year=2, group_id=3)
    records = [
        assessment(dana, 7, name='MSK quiz', day=WEEK3, week=3, unit='MSK'),
        assessment(farah, 9, name='MSK quiz (b)', day=date(2024, 3, 14), week=3, unit='MSK'),
    ]

    report = aggregator.build(records, [], [dana, farah], [group, other], ReportFilter(year=2))

    assert len(report.columns) == 1
    assert report.columns[0].name == 'MSK quiz'
    assert [row.cells[0].score for row in report.rows] == [7, 9]


def test_year1_columns_keyed_by_occasion_and_sorted_by_date(aggregator, year1):
    group, (amal, *_) = year1
    records = [
        assessment(amal, 5, name='Later', day=date(2024, 2, 1), week=3),
        assessment(amal, 6, name='Earlier', day=date(2024, 1, 5), week=3),
    ]
    report = aggregator.build(records, [], [amal], [group], ReportFilter(year=1))
    assert [column.name for column in report.columns] == ['Earlier', 'Later']


def test_weekly_view_sums_scores_within_a_week(aggregator, msk):
    group, dana, _ = msk
    records = [
        assessment(dana, 7, name='Quiz', day=WEEK3, week=3, unit='MSK'),
        assessment(dana, 15, max_score=20, name='Assignment', day=WEEK3, week=3, unit='MSK',
                   assessment_type='assignment'),
        assessment(dana, 5, name='Quiz', day=WEEK4, week=4, unit='MSK', is_excused=True),
        assessment(dana, 9, name='Unweekly', day=WEEK4, unit='MSK'),
    ]

    report = aggregator.build(records, [], [dana], [group], ReportFilter(year=2), view=WEEKLY)

    assert [column.label for column in report.columns] == ['Week 3', 'Week 4']
    assert report.rows[0].cells == [ScoredCell(score=22, max_score=30), ExcusedCell(score=5, max_score=10)]
    assert report.rows[0].average_score == pytest.approx(73.33)
    assert report.total_records == 3


def test_weekly_view_rejected_outside_years_2_and_3(aggregator, year1):
    group, students = year1
    with pytest.raises(ValidationError):
        aggregator.build([], [], students, [group], ReportFilter(year=1), view=WEEKLY)
    with pytest.raises(ValidationError):
        aggregator.build([], [], students, [group], view='pivot')


def test_summary_view_has_no_columns(aggregator, year1):
    group, (amal, *_) = year1
    report = aggregator.build([assessment(amal, 4)], [], [amal], [group], view=SUMMARY)
    assert report.columns == []
    assert report.rows[0].cells == []
    assert report.rows[0].average_score == 40.0


def test_empty_roster_and_empty_records(aggregator, year1):
    group, students = year1
    empty = aggregator.build([assessment(students[0], 4)], [], [], [group])
    assert empty.rows == []
    assert empty.summary['total_students'] == 0

    no_columns = aggregator.build([], [], students, [group])
    assert no_columns.columns == []
    assert [row.cells for row in no_columns.rows] == [[], [], []]
    assert no_columns.summary['average_score'] is None


def test_attendance_rate_only_counts_assessment_days(aggregator, year1):
    group, (amal, *_) = year1
    records = [assessment(amal, 5), assessment(amal, 5, name='Quiz2', day=date(2024, 1, 11)),
               assessment(amal, 5, name='Quiz3', day=date(2024, 1, 12))]
    attendance = [
        mark(amal, date(2024, 1, 10), 'present'),
        mark(amal, date(2024, 1, 11), 'late'),
        mark(amal, date(2024, 1, 12), 'excused'),
        mark(amal, date(2024, 1, 15), 'absent'),
    ]
    report = aggregator.build(records, attendance, [amal], [group])
    assert report.rows[0].attendance_rate == 100.0


def test_attendance_rate_is_null_without_marks(aggregator, year1):
    group, (amal, *_) = year1
    report = aggregator.build([assessment(amal, 5)], [], [amal], [group])
    assert report.rows[0].attendance_rate is None


def test_actor_visibility(aggregator, year1):
    group, (amal, *_) = year1
    draft = assessment(amal, 5)
    exported = assessment(amal, 9, name='Quiz2', day=date(2024, 1, 11), exported_to_admin=True)
    theirs = assessment(amal, 1, name='Quiz3', day=date(2024, 1, 12), trainer_id='trainer-2')

    admin_report = aggregator.build([draft, exported, theirs], [], [amal], [group],
                                    actor=Actor(role='admin', id='a'))
    trainer_report = aggregator.build([draft, exported, theirs], [], [amal], [group],
                                      actor=Actor(role='trainer', id='trainer-1'))

    assert [column.name for column in admin_report.columns] == ['Quiz2']
    assert [column.name for column in trainer_report.columns] == ['Quiz1', 'Quiz2']


def test_filters_narrow_records_and_roster(aggregator, year1, msk):
    group, students = year1
    msk_group, dana, _ = msk
    records = [assessment(students[0], 5), assessment(dana, 7, day=WEEK3, week=3, unit='MSK')]
    roster = students + [dana]

    report = aggregator.build(records, [], roster, [group, msk_group], ReportFilter(group_id=1))
    assert [row.student_name for row in report.rows] == ['Amal', 'Badr', 'Chadi']
    assert len(report.columns) == 1

    dated = aggregator.build(records, [], roster, [group, msk_group],
                             ReportFilter(start_date=date(2024, 2, 1)))
    assert [column.date for column in dated.columns] == [WEEK3]


def test_to_table_renders_each_cell_state(aggregator, year1):
    group, (amal, badr, chadi) = year1
    records = [
        assessment(amal, 8),
        assessment(chadi, 0, is_excused=True),
    ]
    attendance = [mark(badr, date(2024, 1, 10), 'absent')]

    table = aggregator.build(records, attendance, [amal, badr, chadi], [group]).to_table()

    assert table[0] == ['Student', 'Student ID', 'Group', 'Quiz1 (2024-01-10)', 'Average Score', 'Attendance Rate']
    assert table[1] == ['Amal', 'S-1', 'Group A', '8/10', '80%', '-']
    assert table[2] == ['Badr', 'S-2', 'Group A', '0/10 (A)', '0%', '0%']
    assert table[3] == ['Chadi', 'S-3', 'Group A', 'EX', '-', '-']


def test_merge_cells_prefers_counted_cells():
    assert merge_cells([]) is EMPTY
    assert merge_cells([EMPTY, AbsentCell(max_score=10)]) == AbsentCell(max_score=10)
    assert merge_cells([AbsentCell(max_score=10), ScoredCell(score=5, max_score=10)]) == ScoredCell(score=5, max_score=20)


def test_report_filter_from_mapping():
    report_filter = ReportFilter.from_mapping({'year': '2', 'group_id': 'all', 'unit': 'MSK',
                                               'start': '2024-03-01', 'end': '2024-03-31'})
    assert report_filter == ReportFilter(year=2, unit='MSK', start_date=date(2024, 3, 1),
                                         end_date=date(2024, 3, 31))
    assert report_filter.uses_weeks

    with pytest.raises(ValidationError):
        ReportFilter.from_mapping({'year': '9'})
    with pytest.raises(ValidationError):
        ReportFilter.from_mapping({'year': 'two'})
    with pytest.raises(ValidationError):
        ReportFilter.from_mapping({'start': '2024-03-02', 'end': '2024-03-01'})


def test_attendance_grid(aggregator, year1):
    group, (amal, badr, chadi) = year1
    records = [assessment(amal, 5), assessment(badr, 6),
               assessment(amal, 7, name='Quiz2', day=date(2024, 1, 11))]
    attendance = [
        mark(amal, date(2024, 1, 10), 'present'),
        mark(badr, date(2024, 1, 10), 'absent'),
        mark(amal, date(2024, 1, 11), 'late'),
        mark(badr, date(2024, 1, 11), 'present', trainer_id='trainer-2'),
    ]

    grid = aggregator.attendance_grid(records, attendance, [amal, badr, chadi], [group])

    assert [column['name'] for column in grid.columns] == ['Quiz1', 'Quiz2']
    rows = {row.student_name: row for row in grid.rows}
    assert rows['Amal'].values == [1, 1]
    assert rows['Amal'].attendance_rate == 100.0
    assert rows['Badr'].values == [0, '-']
    assert rows['Badr'].attendance_rate == 0.0
    assert rows['Chadi'].values == ['-', '-']
    assert rows['Chadi'].attendance_rate is None
    assert grid.to_dict()['summary']['average_attendance_rate'] == 50.0


def test_trainer_summary(aggregator, year1):
    group, (amal, badr, _) = year1
    records = [
        assessment(amal, 8),
        assessment(badr, 0, is_excused=True),
        assessment(badr, 3, name='Exam', trainer_id='trainer-2', assessment_type='exam'),
    ]
    attendance = [
        mark(amal, date(2024, 1, 10), 'present'),
        mark(badr, date(2024, 1, 10), 'absent'),
        mark(badr, date(2024, 1, 11), 'excused'),
    ]

    stats = aggregator.trainer_summary(records, attendance)

    assert [entry.trainer_id for entry in stats] == ['trainer-1', 'trainer-2']
    first = stats[0].to_dict()
    assert first['total_students'] == 2
    assert first['total_assessments'] == 2
    assert first['average_score'] == 80.0
    assert first['attendance_rate'] == 50.0
    assert first['assessment_types'] == {'quiz': 2}
    assert stats[1].attendance_rate is None


def test_attendance_rate_counts_every_mark(aggregator, year1):
    group, (amal, *_) = year1
    records = [assessment(amal, 5), assessment(amal, 5, name='Quiz2', day=date(2024, 1, 11))]
    attendance = [
        mark(amal, date(2024, 1, 10), 'present'),
        mark(amal, date(2024, 1, 10), 'present', trainer_id='trainer-2'),
        mark(amal, date(2024, 1, 11), 'absent'),
    ]
    report = aggregator.build(records, attendance, [amal], [group])
    assert report.rows[0].attendance_rate == pytest.approx(66.67)


@pytest.mark.parametrize('cell_type', [ScoredCell, ExcusedCell, AbsentCell])
def test_tagged_cells_need_their_scores(cell_type):
    with pytest.raises(TypeError):
        cell_type()
