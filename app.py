"""Flask application providing the tutoring attendance API.

This module wires together the configuration, database models and route
definitions. Every endpoint returns JSON with a ``success`` flag.

Endpoints:

* ``POST /api/auth/login`` – exchange admin email/password for a bearer token.
* ``GET /api/auth/me`` – the admin behind the current token.
* ``GET|POST /api/students`` – list students with their history / create one.
* ``PUT|DELETE /api/students/<id>`` – edit name and notes / delete a student.
* ``GET /api/students/<id>/history`` – history entries plus every lesson the
  student appears in, newest first.
* ``GET|POST /api/groups`` – list groups with their members / create one.
* ``GET|DELETE /api/groups/<id>`` – group detail with lessons / delete.
* ``POST /api/groups/<id>/lessons`` – start a lesson from current membership.
* ``PUT /api/groups/<id>/lessons/<lesson_id>/students/<student_id>`` – edit
  one attendance entry during the lesson.
* ``POST /api/groups/<id>/lessons/<lesson_id>/end`` – finalise the lesson:
  final attendance plus history for every attended student, atomically.

Write endpoints require ``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from sqlalchemy.exc import SQLAlchemyError

import auth
import lessons
from app_logging import get_logger, get_request_id
from config import Config
from db_utils import retry_with_backoff
from errors import NotFoundError, ServiceError, StorageError, ValidationError
from models import Group, Lesson, Student, StudentAttendance, db
from request_logging_middleware import init_request_logging

_logger = get_logger("app")


def _json_object(required: bool = True) -> Mapping[str, Any]:
    data = request.get_json(silent=True)
    if data is None and not required:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Expected a JSON object')
    return data


def _required_text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{key} is required')
    return value.strip()


def _optional_text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return str(value) if value is not None else ''


def _get_student(student_id: Any) -> Student:
    student = db.session.get(Student, lessons.parse_id(student_id, 'student'))
    if student is None:
        raise NotFoundError('Student not found')
    return student


def _get_group(group_id: Any) -> Group:
    group = db.session.get(Group, lessons.parse_id(group_id, 'group'))
    if group is None:
        raise NotFoundError('Group not found')
    return group


def _members(student_ids: Any) -> list:
    if student_ids is None:
        return []
    if not isinstance(student_ids, list):
        raise ValidationError('studentIds must be a list')
    ids = []
    for raw in student_ids:
        parsed = lessons.parse_id(raw, 'student')
        if parsed not in ids:
            ids.append(parsed)
    members = []
    for student_id in ids:
        student = db.session.get(Student, student_id)
        if student is None:
            raise ValidationError(f'Unknown student id {student_id}')
        members.append(student)
    return members


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Application factory used by both the server and tests.

    ``test_config`` overrides :class:`config.Config` before the database
    extension is initialised, so tests can point at an in-memory database.
    Tables are created at start-up; if the database is unreachable the app
    still starts and requests report 503 until it comes back.
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    app.json.ensure_ascii = False
    db.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})
    init_request_logging(app)

    with app.app_context():
        try:
            retry_with_backoff(db.create_all)
        except SQLAlchemyError as exc:
            _logger.warning("Database unavailable during table creation: %s", exc)

    @app.route('/health')
    def healthcheck():
        return jsonify({'status': 'ok'}), 200

    # --- auth ---------------------------------------------------------------

    @app.route('/api/auth/login', methods=['POST'])
    def api_login():
        data = _json_object()
        token, admin = auth.login(data.get('email'), data.get('password'))
        return jsonify({'success': True, 'token': token, 'admin': admin.to_dict()})

    @app.route('/api/auth/me', methods=['GET'])
    @auth.admin_required
    def api_me(identity):
        return jsonify({'success': True, 'admin': identity.to_dict()})

    # --- students -----------------------------------------------------------

    @app.route('/api/students', methods=['POST'])
    @auth.admin_required
    def api_create_student(identity):
        data = _json_object()
        student = Student(name=_required_text(data, 'name'), notes=_optional_text(data, 'notes'))
        db.session.add(student)
        db.session.commit()
        return jsonify({'success': True, 'student': student.to_dict()}), 201

    @app.route('/api/students', methods=['GET'])
    def api_list_students():
        students = Student.query.order_by(Student.id).all()
        return jsonify({
            'success': True,
            'message': 'Students fetched successfully',
            'students': [s.to_dict() for s in students],
        })

    @app.route('/api/students/<student_id>', methods=['PUT'])
    @auth.admin_required
    def api_update_student(identity, student_id):
        student = _get_student(student_id)
        data = _json_object()
        # History is append-only and only written by lesson finalisation.
        if 'name' in data:
            student.name = _required_text(data, 'name')
        if 'notes' in data:
            student.notes = _optional_text(data, 'notes')
        db.session.commit()
        return jsonify({'success': True, 'message': 'Updated successfully', 'student': student.to_dict()})

    @app.route('/api/students/<student_id>', methods=['DELETE'])
    @auth.admin_required
    def api_delete_student(identity, student_id):
        student = _get_student(student_id)
        deleted_id = student.id
        db.session.delete(student)
        db.session.commit()
        _logger.info("student deleted", extra={"student_id": deleted_id})
        return jsonify({'success': True, 'message': 'Student deleted'})

    @app.route('/api/students/<student_id>/history', methods=['GET'])
    @auth.admin_required
    def api_student_history(identity, student_id):
        student = _get_student(student_id)
        rows = (
            db.session.query(StudentAttendance, Lesson, Group)
            .join(Lesson, StudentAttendance.lesson_id == Lesson.id)
            .join(Group, Lesson.group_id == Group.id)
            .filter(StudentAttendance.student_id == student.id)
            .order_by(Lesson.date.desc(), Lesson.id.desc())
            .all()
        )
        attended_lessons = [
            {
                'groupId': group.id,
                'groupTitle': group.title,
                'lessonId': lesson.id,
                'lessonDate': lesson.date.isoformat(),
                'attended': entry.attended,
                'notes': entry.notes,
                'nextRevision': entry.revision,
            }
            for entry, lesson, group in rows
        ]
        return jsonify({'success': True, 'student': student.to_dict(), 'lessons': attended_lessons})

    # --- groups -------------------------------------------------------------

    @app.route('/api/groups', methods=['POST'])
    @auth.admin_required
    def api_create_group(identity):
        data = _json_object()
        group = Group(
            title=_required_text(data, 'title'),
            notes=_optional_text(data, 'notes'),
            day=_optional_text(data, 'day'),
            time=_optional_text(data, 'time'),
        )
        group.students = _members(data.get('studentIds'))
        db.session.add(group)
        db.session.commit()
        return jsonify({'success': True, 'group': group.to_dict()}), 201

    @app.route('/api/groups', methods=['GET'])
    def api_list_groups():
        groups = Group.query.order_by(Group.id).all()
        return jsonify({'success': True, 'groups': [g.to_dict() for g in groups]})

    @app.route('/api/groups/<group_id>', methods=['GET'])
    def api_get_group(group_id):
        return jsonify({'success': True, 'group': _get_group(group_id).to_dict()})

    @app.route('/api/groups/<group_id>', methods=['DELETE'])
    @auth.admin_required
    def api_delete_group(identity, group_id):
        group = _get_group(group_id)
        db.session.delete(group)
        db.session.commit()
        return jsonify({'success': True, 'message': 'Group deleted'})

    @app.route('/api/groups/<group_id>/lessons', methods=['POST'])
    @auth.admin_required
    def api_start_lesson(identity, group_id):
        data = _json_object(required=False)
        lesson = lessons.start_lesson(identity, group_id, data.get('date'))
        return jsonify({'success': True, 'lesson': lesson.to_dict()}), 201

    @app.route('/api/groups/<group_id>/lessons/<lesson_id>/students/<student_id>', methods=['PUT'])
    @auth.admin_required
    def api_update_attendance(identity, group_id, lesson_id, student_id):
        entry = lessons.update_attendance_entry(identity, group_id, lesson_id, student_id, _json_object())
        return jsonify({'success': True, 'studentEntry': entry.to_dict()})

    @app.route('/api/groups/<group_id>/lessons/<lesson_id>/end', methods=['POST'])
    @auth.admin_required
    def api_finalize_lesson(identity, group_id, lesson_id):
        data = _json_object(required=False)
        result = lessons.finalize_lesson(identity, group_id, lesson_id, data.get('attendance', []))
        return jsonify({
            'success': True,
            'message': 'Lesson finalized',
            'group': result.group.to_dict(),
            'historyEntries': len(result.history_entries),
        })

    # --- errors -------------------------------------------------------------

    def _error_response(message: str, status: int, **extra):
        body = {'success': False, 'error': message, 'request_id': get_request_id()}
        body.update(extra)
        return jsonify(body), status

    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        if isinstance(error, StorageError):
            app.logger.error("Storage failure: %s", error.message)
        return _error_response(error.message, error.status_code, retryable=error.retryable)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return _error_response(error.description, error.code or 500)

    def handle_db_error(error):
        db.session.rollback()
        app.logger.error("Database operation failed: %s", error)
        return _error_response('Database temporarily unavailable', 503, retryable=True)

    app.register_error_handler(SQLAlchemyError, handle_db_error)

    return app


app = create_app()

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    app.run(host='0.0.0.0', port=port, debug=True)
