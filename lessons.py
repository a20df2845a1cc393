"""Lesson lifecycle: starting a lesson, editing attendance and finalising it.

A lesson is started from the group's current membership, edited while the
session runs and finalised once it is over. Finalisation writes the final
attendance and appends a history entry to every student who attended, all in
one transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping

from sqlalchemy.exc import SQLAlchemyError

from app_logging import DBTimer, get_logger
from auth import Identity
from db_utils import UnitOfWork
from errors import NotFoundError, StorageError, UnauthorizedError, ValidationError
from models import Group, HistoryEntry, Lesson, Student, StudentAttendance, db, utcnow
from revision import normalize_revision

_logger = get_logger("app.lessons")


@dataclass
class FinalizedLesson:
    group: Group
    lesson: Lesson
    history_entries: List[HistoryEntry] = field(default_factory=list)


def parse_id(value: Any, label: str) -> int:
    """Return ``value`` as a positive integer id or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {label} id')
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValidationError(f'Invalid {label} id')
    if parsed <= 0:
        raise ValidationError(f'Invalid {label} id')
    return parsed


def parse_lesson_date(value: Any) -> datetime:
    """Parse an ISO-8601 date or datetime into naive UTC; ``None`` means now."""
    if value in (None, ''):
        return utcnow()
    if not isinstance(value, str):
        raise ValidationError('date must be an ISO-8601 string')
    try:
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError('Invalid date format, must be ISO-8601')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _require_admin(identity: Identity) -> None:
    if identity is None or not identity.is_admin:
        raise UnauthorizedError('Unauthorized')


def _load_group(group_id: int) -> Group:
    group = db.session.get(Group, group_id)
    if group is None:
        raise NotFoundError('Group not found')
    return group


def _load_lesson(group: Group, lesson_id: int) -> Lesson:
    for lesson in group.lessons:
        if lesson.id == lesson_id:
            return lesson
    raise NotFoundError('Lesson not found')


def _raw_revision(submission: Mapping[str, Any]) -> Any:
    if 'nextRevision' in submission:
        return submission['nextRevision']
    return submission.get('revision')


def _text(value: Any) -> str:
    return str(value) if value else ''


def start_lesson(identity: Identity, group_id: Any, date: Any = None) -> Lesson:
    """Create a lesson with one absent attendance entry per current member."""
    _require_admin(identity)
    group_id = parse_id(group_id, 'group')
    lesson_date = parse_lesson_date(date)

    uow = UnitOfWork(db.session, 'start lesson').begin()
    try:
        group = _load_group(group_id)
        lesson = Lesson(date=lesson_date)
        lesson.students = [StudentAttendance(student=s, attended=False) for s in group.students]
        group.lessons.append(lesson)
        uow.flush()
    except SQLAlchemyError as exc:
        uow.abort()
        raise StorageError(f"{uow.name} failed: {exc.__class__.__name__}") from exc
    except Exception:
        uow.abort()
        raise
    uow.commit()
    _logger.info(
        "lesson started",
        extra={"group_id": group_id, "lesson_id": lesson.id, "students": len(lesson.students)},
    )
    return lesson


def update_attendance_entry(
    identity: Identity,
    group_id: Any,
    lesson_id: Any,
    student_id: Any,
    payload: Mapping[str, Any],
) -> StudentAttendance:
    """Edit one student's entry while the lesson is running.

    ``attended`` and ``notes`` are only changed when present in ``payload``.
    The revision is always replaced by the normalised submitted value.
    """
    _require_admin(identity)
    group_id = parse_id(group_id, 'group')
    lesson_id = parse_id(lesson_id, 'lesson')
    student_id = parse_id(student_id, 'student')
    if not isinstance(payload, Mapping):
        raise ValidationError('Expected a JSON object')

    uow = UnitOfWork(db.session, 'update attendance').begin()
    try:
        lesson = _load_lesson(_load_group(group_id), lesson_id)
        entry = lesson.entry_for(student_id)
        if entry is None:
            raise NotFoundError('Student not in this lesson')
        if 'attended' in payload:
            entry.attended = bool(payload['attended'])
        if 'notes' in payload:
            entry.notes = _text(payload['notes'])
        entry.revision = normalize_revision(_raw_revision(payload))
        uow.flush()
    except SQLAlchemyError as exc:
        uow.abort()
        raise StorageError(f"{uow.name} failed: {exc.__class__.__name__}") from exc
    except Exception:
        uow.abort()
        raise
    uow.commit()
    return entry


def _index_submissions(submissions: Any) -> tuple:
    """Validate the submitted attendance list before anything is written.

    Returns the list with parsed ids, in submission order, and a lookup by
    student id in which the last duplicate wins.
    """
    if submissions is None:
        submissions = []
    if not isinstance(submissions, list):
        raise ValidationError('attendance must be a list')
    cleaned: List[Dict[str, Any]] = []
    by_student: Dict[int, Dict[str, Any]] = {}
    for raw in submissions:
        if not isinstance(raw, Mapping):
            raise ValidationError('attendance entries must be objects')
        item = dict(raw)
        item['studentId'] = parse_id(raw.get('studentId'), 'student')
        cleaned.append(item)
        by_student[item['studentId']] = item
    return cleaned, by_student


def _apply_attendance(lesson: Lesson, by_student: Mapping[int, Mapping[str, Any]]) -> int:
    updated = 0
    for entry in lesson.students:
        submission = by_student.get(entry.student_id)
        if submission is None:
            continue
        entry.attended = bool(submission.get('attended'))
        entry.notes = _text(submission.get('notes'))
        entry.revision = normalize_revision(_raw_revision(submission))
        updated += 1
    return updated


def _append_history(group: Group, lesson: Lesson, submissions: Iterable[Mapping[str, Any]]) -> List[HistoryEntry]:
    created: List[HistoryEntry] = []
    for submission in submissions:
        if not submission.get('attended'):
            continue
        student = db.session.get(Student, submission['studentId'])
        if student is None:
            _logger.warning(
                "history skipped for unknown student",
                extra={"group_id": group.id, "lesson_id": lesson.id,
                       "student_id": submission['studentId']},
            )
            continue
        entry = HistoryEntry(
            group=group,
            date=lesson.date,
            revised=True,
            notes=_text(submission.get('notes')),
            revision=normalize_revision(_raw_revision(submission)),
        )
        student.history.append(entry)
        created.append(entry)
    return created


def finalize_lesson(
    identity: Identity,
    group_id: Any,
    lesson_id: Any,
    submissions: Any,
) -> FinalizedLesson:
    """Write the final attendance of a lesson and the attended students' history.

    Either everything is committed or nothing is: on a missing group or
    lesson the transaction is rolled back and :class:`errors.NotFoundError`
    is raised; on a database failure it is rolled back and
    :class:`errors.StorageError` is raised. Any other error also rolls back
    before it propagates. History entries carry the lesson's date, not the
    time of finalisation. Finalising the same lesson again overwrites
    attendance and appends further history entries.
    """
    _require_admin(identity)
    group_id = parse_id(group_id, 'group')
    lesson_id = parse_id(lesson_id, 'lesson')
    cleaned, by_student = _index_submissions(submissions)

    uow = UnitOfWork(db.session, 'finalize lesson').begin()
    try:
        with DBTimer():
            group = _load_group(group_id)
            lesson = _load_lesson(group, lesson_id)
            updated = _apply_attendance(lesson, by_student)
            uow.flush()
            history = _append_history(group, lesson, cleaned)
            uow.flush()
    except SQLAlchemyError as exc:
        uow.abort()
        raise StorageError(f"{uow.name} failed: {exc.__class__.__name__}") from exc
    except Exception:
        uow.abort()
        raise
    uow.commit()

    _logger.info(
        "lesson finalized",
        extra={
            "group_id": group_id,
            "lesson_id": lesson_id,
            "attendance_updated": updated,
            "history_appended": len(history),
            "admin_id": identity.admin_id,
        },
    )
    return FinalizedLesson(group=group, lesson=lesson, history_entries=history)


__all__ = [
    "FinalizedLesson",
    "finalize_lesson",
    "parse_id",
    "parse_lesson_date",
    "start_lesson",
    "update_attendance_entry",
]
