from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

import lessons
from auth import ANONYMOUS
from db_utils import UnitOfWork
from errors import NotFoundError, StorageError, UnauthorizedError, ValidationError
from models import db, HistoryEntry, Student, StudentAttendance


@pytest.fixture
def class_setup(make_student, make_group):
    ali = make_student('Ali')
    sara = make_student('Sara')
    group = make_group('Morning circle', [ali, sara])
    return group, ali, sara


def _history_count() -> int:
    return db.session.query(HistoryEntry).count()


def test_start_lesson_snapshots_current_members(identity, class_setup):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id, '2024-03-01T08:30:00')

    assert lesson.date == datetime(2024, 3, 1, 8, 30)
    assert [e.student_id for e in lesson.students] == [ali.id, sara.id]
    assert all(e.attended is False for e in lesson.students)
    assert all(e.revision is None for e in lesson.students)


def test_start_lesson_rejects_bad_date(identity, class_setup):
    group, _, _ = class_setup
    with pytest.raises(ValidationError):
        lessons.start_lesson(identity, group.id, 'next tuesday')
    assert group.lessons == []


def test_start_lesson_for_missing_group(identity):
    with pytest.raises(NotFoundError):
        lessons.start_lesson(identity, 999)


def test_finalize_writes_attendance_and_history_for_attended_only(identity, class_setup):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id, '2024-03-01')

    result = lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True, 'notes': 'good', 'nextRevision': 'سورة يس 1-10'},
        {'studentId': str(sara.id), 'attended': False, 'notes': 'sick'},
    ])

    entries = {e.student_id: e for e in result.lesson.students}
    assert entries[ali.id].attended is True
    assert entries[ali.id].notes == 'good'
    assert entries[ali.id].revision == {'surah': 'يس', 'fromAyah': 1, 'toAyah': 10, 'count': 10}
    assert entries[sara.id].attended is False
    assert entries[sara.id].notes == 'sick'

    assert len(result.history_entries) == 1
    assert len(ali.history) == 1
    assert sara.history == []
    entry = ali.history[0]
    assert entry.group_id == group.id
    assert entry.revised is True
    assert entry.notes == 'good'
    assert entry.date == datetime(2024, 3, 1)
    assert entry.revision['surah'] == 'يس'


def test_entries_without_submission_are_left_alone(identity, class_setup):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id)
    lessons.update_attendance_entry(identity, group.id, lesson.id, sara.id,
                                    {'attended': True, 'notes': 'early'})

    lessons.finalize_lesson(identity, group.id, lesson.id, [{'studentId': ali.id, 'attended': True}])

    sara_entry = lesson.entry_for(sara.id)
    assert sara_entry.attended is True
    assert sara_entry.notes == 'early'
    assert sara.history == []


def test_duplicate_submissions_last_one_sets_attendance(identity, class_setup):
    group, ali, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True, 'notes': 'first'},
        {'studentId': ali.id, 'attended': False, 'notes': 'second'},
    ])

    entry = lesson.entry_for(ali.id)
    assert entry.attended is False
    assert entry.notes == 'second'


def test_missing_lesson_leaves_history_untouched(identity, class_setup):
    group, ali, _ = class_setup
    before = _history_count()

    with pytest.raises(NotFoundError, match='Lesson not found'):
        lessons.finalize_lesson(identity, group.id, 12345, [{'studentId': ali.id, 'attended': True}])

    assert _history_count() == before


def test_lesson_of_another_group_is_not_found(identity, class_setup, make_group):
    group, ali, _ = class_setup
    other = make_group('Evening circle', [ali])
    lesson = lessons.start_lesson(identity, other.id)

    with pytest.raises(NotFoundError):
        lessons.finalize_lesson(identity, group.id, lesson.id, [{'studentId': ali.id, 'attended': True}])
    assert _history_count() == 0


def test_missing_group_is_not_found(identity):
    with pytest.raises(NotFoundError, match='Group not found'):
        lessons.finalize_lesson(identity, 777, 1, [])


def test_refinalizing_overwrites_attendance_and_appends_history(identity, class_setup):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True},
        {'studentId': sara.id, 'attended': False},
    ])
    lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True, 'revision': {'surah': 'Mulk', 'from': 1, 'to': 5}},
        {'studentId': sara.id, 'attended': True},
    ])

    rows = db.session.query(StudentAttendance).filter_by(lesson_id=lesson.id).all()
    assert len(rows) == 2
    assert all(row.attended for row in rows)
    assert len(ali.history) == 2
    assert ali.history[1].revision == {'surah': 'Mulk', 'fromAyah': 1, 'toAyah': 5, 'count': 5}
    assert len(sara.history) == 1


def test_storage_failure_during_history_rolls_everything_back(identity, class_setup, monkeypatch):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id)
    lesson_id = lesson.id
    real_append = lessons._append_history

    def failing_append(*args, **kwargs):
        real_append(*args, **kwargs)
        raise OperationalError('INSERT INTO history_entry', {}, Exception('disk I/O error'))

    monkeypatch.setattr(lessons, '_append_history', failing_append)

    with pytest.raises(StorageError) as excinfo:
        lessons.finalize_lesson(identity, group.id, lesson_id, [
            {'studentId': ali.id, 'attended': True, 'notes': 'x'},
            {'studentId': sara.id, 'attended': True},
        ])

    assert excinfo.value.retryable is True
    assert _history_count() == 0
    rows = db.session.query(StudentAttendance).filter_by(lesson_id=lesson_id).all()
    assert [row.attended for row in rows] == [False, False]
    assert [row.notes for row in rows] == ['', '']


def test_unexpected_error_mid_finalize_rolls_everything_back(identity, class_setup, monkeypatch):
    group, ali, sara = class_setup
    lesson = lessons.start_lesson(identity, group.id)
    lesson_id = lesson.id
    real_normalize = lessons.normalize_revision

    def exploding_normalize(value):
        if value == 'explode':
            raise RuntimeError('unexpected')
        return real_normalize(value)

    monkeypatch.setattr(lessons, 'normalize_revision', exploding_normalize)

    with pytest.raises(RuntimeError):
        lessons.finalize_lesson(identity, group.id, lesson_id, [
            {'studentId': ali.id, 'attended': True, 'notes': 'partial'},
            {'studentId': sara.id, 'attended': True, 'revision': 'explode'},
        ])

    # A later commit in the same session must not pick up the half-applied edits.
    db.session.commit()
    rows = db.session.query(StudentAttendance).filter_by(lesson_id=lesson_id).all()
    assert [(row.attended, row.notes) for row in rows] == [(False, ''), (False, '')]
    assert _history_count() == 0


def test_finalize_stores_no_revision_for_oversized_bounds(identity, class_setup):
    group, ali, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    result = lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True, 'revision': {'surah': 'X', 'from': 10 ** 400, 'to': 1}},
    ])

    assert lesson.entry_for(ali.id).revision is None
    assert result.history_entries[0].revision is None


def test_unit_of_work_accepts_the_scoped_session(class_setup):
    _, ali, _ = class_setup
    uow = UnitOfWork(db.session, 'rename').begin()
    assert uow.active is True
    ali.notes = 'moved'
    uow.commit()
    assert uow.active is False

    uow = UnitOfWork(db.session, 'rename again').begin()
    ali.notes = 'discarded'
    uow.abort()
    assert db.session.get(Student, ali.id).notes == 'moved'


def test_unknown_student_in_submission_is_skipped(identity, class_setup):
    group, ali, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    result = lessons.finalize_lesson(identity, group.id, lesson.id, [
        {'studentId': ali.id, 'attended': True},
        {'studentId': 4242, 'attended': True},
    ])

    assert len(result.history_entries) == 1


@pytest.mark.parametrize('submissions', [
    {'studentId': 1},
    ['not an object'],
    [{'attended': True}],
    [{'studentId': 'abc', 'attended': True}],
])
def test_malformed_submissions_are_rejected_before_writing(identity, class_setup, submissions):
    group, _, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    with pytest.raises(ValidationError):
        lessons.finalize_lesson(identity, group.id, lesson.id, submissions)
    assert _history_count() == 0


def test_anonymous_identity_cannot_finalize(class_setup):
    group, _, _ = class_setup
    with pytest.raises(UnauthorizedError):
        lessons.finalize_lesson(ANONYMOUS, group.id, 1, [])


def test_update_attendance_entry_keeps_absent_fields(identity, class_setup):
    group, ali, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)

    entry = lessons.update_attendance_entry(identity, group.id, lesson.id, ali.id,
                                            {'attended': 1, 'notes': 'late', 'nextRevision': 'سورة الملك 1-5'})
    assert (entry.attended, entry.notes) == (True, 'late')
    assert entry.revision['count'] == 5

    entry = lessons.update_attendance_entry(identity, group.id, lesson.id, ali.id, {'nextRevision': 'tbd'})
    assert (entry.attended, entry.notes) == (True, 'late')
    assert entry.revision is None


def test_update_attendance_entry_null_attended_clears_it(identity, class_setup):
    group, ali, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)
    lessons.update_attendance_entry(identity, group.id, lesson.id, ali.id, {'attended': True})

    entry = lessons.update_attendance_entry(identity, group.id, lesson.id, ali.id, {'attended': None})
    assert entry.attended is False


def test_update_attendance_entry_for_student_outside_lesson(identity, class_setup, make_student):
    group, _, _ = class_setup
    lesson = lessons.start_lesson(identity, group.id)
    stranger = make_student('Stranger')

    with pytest.raises(NotFoundError, match='Student not in this lesson'):
        lessons.update_attendance_entry(identity, group.id, lesson.id, stranger.id, {'attended': True})


@pytest.mark.parametrize('value', ['abc', '', '-3', 0, True, None, 1.5])
def test_parse_id_rejects_malformed_ids(value):
    with pytest.raises(ValidationError):
        lessons.parse_id(value, 'group')
