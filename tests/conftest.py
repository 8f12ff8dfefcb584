import sys
from datetime import date
from pathlib import Path
from typing import Generator

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import create_app
from export_workflow import ExportWorkflowController
from models import AssessmentRecord, Group, Student, db
from permissions import Actor
from record_store import RecordStore


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch) -> Generator:
    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    application = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    })
    with application.app_context():
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app) -> RecordStore:
    return RecordStore()


@pytest.fixture
def workflow(store) -> ExportWorkflowController:
    return ExportWorkflowController(store)


@pytest.fixture
def trainer() -> Actor:
    return Actor(role='trainer', id='trainer-1')


@pytest.fixture
def other_trainer() -> Actor:
    return Actor(role='trainer', id='trainer-2')


@pytest.fixture
def admin() -> Actor:
    return Actor(role='admin', id='admin-1')


@pytest.fixture
def roster(app):
    """One year-1 group with three students, persisted."""
    group = Group(name='Group A', year=1)
    db.session.add(group)
    db.session.flush()
    students = [Student(name=name, student_number=f'S-{index}', year=1, group_id=group.id)
                for index, name in enumerate(('Amal', 'Badr', 'Chadi'), start=1)]
    db.session.add_all(students)
    db.session.commit()
    return group, students


@pytest.fixture
def quiz_session(store, roster):
    """Draft 'Quiz1' records by trainer-1: A scored 8, B 10, C excused."""
    group, students = roster
    records = []
    for student, score, excused in zip(students, (8, 10, 0), (False, False, True)):
        record = AssessmentRecord(
            student_id=student.id, group_id=group.id, trainer_id='trainer-1', year=1,
            assessment_name='Quiz1', assessment_type='quiz', score=score, max_score=10,
            date=date(2024, 1, 10), is_excused=excused,
        )
        store.create(record)
        records.append(record)
    return records
