"""Flask application exposing the assessment workflow and reports as JSON.

The acting user is supplied by the upstream auth layer through the
``X-Actor-Id`` and ``X-Actor-Role`` headers; this service only reads them.

Endpoints:

* ``GET /health`` - liveness probe.
* ``POST /api/assessments`` - record one score, or a whole session when the
  body carries a ``scores`` list.
* ``GET /api/assessments?group_id=`` - records of a group with their lock
  status and what the caller may do with them.
* ``GET /api/assessments/drafts`` (trainer) and ``/exported`` (admin) - listings.
* ``GET /api/assessments/occasions?group_id=`` - Draft / Partially-Locked /
  Fully-Locked summary per assessment occasion.
* ``POST /api/assessments/export`` - export the given ids to admin; returns a
  ``{success, failed}`` tally.
* ``POST /api/assessments/<id>/admin-export`` - admin export of an orphaned
  draft.
* ``PATCH /api/assessments/<id>`` - edit a score.
* ``DELETE /api/assessments/<id>`` - delete one record.
* ``POST /api/assessments/bulk-delete`` - delete many records; returns a
  tally.
* ``POST /api/assessments/<id>/unlock`` and ``/review`` - admin review tools.
* ``PUT /api/attendance`` - correct (or create) the mark of one student, group and day.
* ``POST /api/attendance`` / ``GET /api/attendance?date=`` - attendance marks.
* ``GET /api/reports`` - summary, detailed or weekly report.
* ``GET /api/reports/attendance-grid`` and ``/api/reports/trainers``.

Errors are returned as problem-details JSON carrying the request ID.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Mapping, Optional

from flask import Flask, current_app, g, jsonify, request
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from werkzeug.exceptions import BadRequest, HTTPException, Unauthorized

from app_logging import bind_actor, get_logger
from config import Config
from correlation_id_middleware import init_correlation_id
from db_utils import retry_with_backoff
from errors import AttendanceError, NotFound, PermissionDenied, WriteConflict
from export_workflow import ExportWorkflowController
from models import (
    ROLE_ADMIN,
    ROLE_TRAINER,
    AttendanceRecord,
    db,
    parse_date,
    validate_attendance_fields,
)
from permissions import (
    Actor,
    can_delete,
    can_edit,
    occasion_key,
    occasion_status,
    restriction_message,
    status_message,
    status_of,
)
from record_store import RecordStore
from report_aggregator import DETAILED, ReportAggregator, ReportFilter
from request_logging_middleware import init_request_logging

_logger = get_logger("app")


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Application factory used by both the server and tests."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    db.init_app(app)

    init_correlation_id(app)
    init_request_logging(app)

    store = RecordStore()
    store.subscribe(lambda event: _logger.debug(
        "record changed", extra={"operation": event.action, "record_id": event.record_id, "entity": event.entity}
    ))
    app.extensions['record_store'] = store
    app.extensions['export_workflow'] = ExportWorkflowController(
        store, error_sample_size=app.config['BULK_ERROR_SAMPLE_SIZE'],
    )
    app.extensions['report_aggregator'] = ReportAggregator(decimals=app.config['SCORE_DECIMALS'])

    with app.app_context():
        try:
            retry_with_backoff(db.create_all)
        except OperationalError as exc:
            # Keep booting; /health stays up and requests surface the outage.
            _logger.warning("database unavailable during table creation: %s", exc)

    _register_routes(app)
    _register_error_handlers(app)
    return app


def _store() -> RecordStore:
    return current_app.extensions['record_store']


def _workflow() -> ExportWorkflowController:
    return current_app.extensions['export_workflow']


def _aggregator() -> ReportAggregator:
    return current_app.extensions['report_aggregator']


def _current_actor() -> Actor:
    actor_id = request.headers.get('X-Actor-Id', '').strip()
    role = request.headers.get('X-Actor-Role', '').strip().lower()
    if not actor_id or role not in (ROLE_ADMIN, ROLE_TRAINER):
        raise Unauthorized('X-Actor-Id and X-Actor-Role (admin or trainer) headers are required')
    actor = Actor(role=role, id=actor_id)
    bind_actor(actor)
    return actor


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest('Missing JSON payload')
    return data


def _ids(data: Mapping[str, Any]) -> list:
    ids = data.get('ids')
    if not isinstance(ids, list) or not all(isinstance(i, int) for i in ids):
        raise BadRequest('ids must be a list of integers')
    return ids


def _attendance_body(actor: Actor) -> Dict[str, Any]:
    data = _json_body()
    if actor.is_trainer:
        data['trainer_id'] = actor.id
    return validate_attendance_fields(data)


def _record_view(record, actor: Actor) -> Dict[str, Any]:
    payload = record.to_dict()
    payload.update(
        status=status_of(record),
        status_message=status_message(record),
        restriction=restriction_message(record),
        can_edit=can_edit(record, actor),
        can_delete=can_delete(record, actor),
    )
    return payload


def _register_routes(app: Flask) -> None:

    @app.route('/health')
    def healthcheck():
        return jsonify({'status': 'ok'}), 200

    @app.route('/api/assessments', methods=['POST'])
    def api_create_assessments():
        actor = _current_actor()
        data = _json_body()
        scores = data.pop('scores', None)
        if scores is None:
            record = _workflow().record_score(data, actor)
            return jsonify(_record_view(record, actor)), 201
        if not isinstance(scores, list):
            raise BadRequest('scores must be a list')
        records = _workflow().record_session(data, scores, actor)
        return jsonify([_record_view(record, actor) for record in records]), 201

    @app.route('/api/assessments', methods=['GET'])
    def api_list_assessments():
        actor = _current_actor()
        group_id = request.args.get('group_id', type=int)
        if not group_id:
            raise BadRequest('Missing group_id parameter')
        records = _store().query_by_group(group_id)
        if actor.is_trainer:
            records = [record for record in records if record.trainer_id == actor.id]
        return jsonify([_record_view(record, actor) for record in records])

    @app.route('/api/assessments/drafts', methods=['GET'])
    def api_list_drafts():
        actor = _current_actor()
        if not actor.is_trainer:
            raise PermissionDenied('only trainers have drafts')
        return jsonify([_record_view(record, actor) for record in _workflow().drafts_for(actor.id)])

    @app.route('/api/assessments/exported', methods=['GET'])
    def api_list_exported():
        actor = _current_actor()
        if not actor.is_admin:
            raise PermissionDenied('exported assessments are only listed for admins')
        return jsonify([_record_view(record, actor) for record in _workflow().exported_records()])

    @app.route('/api/assessments/occasions', methods=['GET'])
    def api_list_occasions():
        actor = _current_actor()
        group_id = request.args.get('group_id', type=int)
        if not group_id:
            raise BadRequest('Missing group_id parameter')
        records = _store().query_by_group(group_id)
        if actor.is_trainer:
            records = [record for record in records if record.trainer_id == actor.id]
        occasions = defaultdict(list)
        for record in records:
            occasions[occasion_key(record)].append(record)
        result = []
        for (name, day, assessment_type, occasion_group), members in occasions.items():
            summary = occasion_status(members)
            result.append({
                'assessment_name': name,
                'date': day.isoformat(),
                'assessment_type': assessment_type,
                'group_id': occasion_group,
                'max_score': members[0].max_score,
                'record_ids': [record.id for record in members],
                'status': summary.label,
                'all_exported': summary.all_exported,
                'draft_count': summary.draft_count,
                'exported_count': summary.exported_count,
            })
        return jsonify(result)

    @app.route('/api/assessments/export', methods=['POST'])
    def api_export_assessments():
        actor = _current_actor()
        result = _workflow().export_selected(_ids(_json_body()), actor)
        return jsonify(result.to_dict())

    @app.route('/api/assessments/<int:record_id>/admin-export', methods=['POST'])
    def api_admin_export(record_id: int):
        actor = _current_actor()
        _workflow().admin_export(record_id, actor)
        return jsonify(_record_view(_store().get(record_id), actor))

    @app.route('/api/assessments/<int:record_id>', methods=['PATCH'])
    def api_edit_score(record_id: int):
        actor = _current_actor()
        data = _json_body()
        if 'score' not in data:
            raise BadRequest('score is required')
        record = _workflow().edit_score(record_id, data['score'], actor)
        return jsonify(_record_view(record, actor))

    @app.route('/api/assessments/<int:record_id>', methods=['DELETE'])
    def api_delete_assessment(record_id: int):
        actor = _current_actor()
        _workflow().delete_record(record_id, actor)
        return '', 204

    @app.route('/api/assessments/bulk-delete', methods=['POST'])
    def api_bulk_delete():
        actor = _current_actor()
        records, missing = [], []
        for record_id in _ids(_json_body()):
            try:
                records.append(_store().get(record_id))
            except NotFound as exc:
                missing.append((record_id, exc.message))
        result = _workflow().bulk_delete(records, actor)
        for record_id, reason in missing:
            result.add_failure(record_id, reason)
        return jsonify(result.to_dict())

    @app.route('/api/assessments/<int:record_id>/unlock', methods=['POST'])
    def api_unlock(record_id: int):
        actor = _current_actor()
        _workflow().unlock(record_id, actor)
        return jsonify(_record_view(_store().get(record_id), actor))

    @app.route('/api/assessments/<int:record_id>/review', methods=['POST'])
    def api_review(record_id: int):
        actor = _current_actor()
        _workflow().mark_reviewed(record_id, actor)
        return jsonify(_record_view(_store().get(record_id), actor))

    @app.route('/api/attendance', methods=['POST'])
    def api_record_attendance():
        data = _attendance_body(_current_actor())
        existing = _store().find_attendance(data['student_id'], data['group_id'], data['date'])
        if existing is not None:
            raise WriteConflict(
                f"student {data['student_id']} already has a mark for {data['date'].isoformat()}; use PUT to correct it",
                record_id=existing.id,
            )
        record = AttendanceRecord(**data)
        _store().create(record)
        return jsonify(record.to_dict()), 201

    @app.route('/api/attendance', methods=['PUT'])
    def api_correct_attendance():
        data = _attendance_body(_current_actor())
        existing = _store().find_attendance(data['student_id'], data['group_id'], data['date'])
        if existing is None:
            record = AttendanceRecord(**data)
            _store().create(record)
            return jsonify(record.to_dict()), 201
        changes = {field: data.get(field) for field in ('status', 'trainer_id', 'year', 'unit', 'notes')}
        _store().update(existing.id, changes, model=AttendanceRecord)
        return jsonify(_store().get(existing.id, model=AttendanceRecord).to_dict())

    @app.route('/api/attendance', methods=['GET'])
    def api_list_attendance():
        _current_actor()
        date_str = request.args.get('date')
        if not date_str:
            raise BadRequest('Missing date parameter')
        return jsonify([mark.to_dict() for mark in _store().query_by_date(parse_date(date_str))])

    @app.route('/api/reports', methods=['GET'])
    def api_report():
        actor = _current_actor()
        snapshot = _store().snapshot()
        report = _aggregator().build(
            snapshot['assessments'],
            snapshot['attendance'],
            snapshot['students'],
            snapshot['groups'],
            ReportFilter.from_mapping(request.args),
            view=request.args.get('view', DETAILED),
            actor=actor,
        )
        if request.args.get('format') == 'table':
            return jsonify({'table': report.to_table(), 'summary': report.summary})
        return jsonify(report.to_dict())

    @app.route('/api/reports/attendance-grid', methods=['GET'])
    def api_attendance_grid():
        actor = _current_actor()
        snapshot = _store().snapshot()
        grid = _aggregator().attendance_grid(
            snapshot['assessments'],
            snapshot['attendance'],
            snapshot['students'],
            snapshot['groups'],
            ReportFilter.from_mapping(request.args),
            actor=actor,
        )
        return jsonify(grid.to_dict())

    @app.route('/api/reports/trainers', methods=['GET'])
    def api_trainer_summary():
        actor = _current_actor()
        if not actor.is_admin:
            raise PermissionDenied('trainer summary is only available to admins')
        snapshot = _store().snapshot()
        stats = _aggregator().trainer_summary(
            snapshot['assessments'], snapshot['attendance'], ReportFilter.from_mapping(request.args),
        )
        return jsonify([entry.to_dict() for entry in stats])


def _problem(status: int, title: str, detail: str):
    response = jsonify({
        'type': 'about:blank',
        'title': title,
        'status': status,
        'detail': detail,
        'request_id': g.get('request_id'),
    })
    response.status_code = status
    response.mimetype = 'application/problem+json'
    return response


def _register_error_handlers(app: Flask) -> None:

    @app.errorhandler(AttendanceError)
    def handle_domain_error(error: AttendanceError):
        return _problem(error.status_code, error.title, error.message)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _problem(error.code or 500, error.name, error.description or error.name)

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(error: SQLAlchemyError):
        db.session.rollback()
        _logger.error("Database operation failed: %s", error)
        return _problem(503, 'Database unavailable', 'Database temporarily unavailable')


if __name__ == '__main__':
    # Development server only; production runs ``gunicorn "app:create_app()"``.
    import os

    port = int(os.environ.get('PORT', 8000))
    create_app().run(host='0.0.0.0', port=port, debug=True)
