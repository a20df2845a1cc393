"""Database models for the tutoring attendance backend.

SQLAlchemy is used as the ORM layer. The models include:

* :class:`Admin` – an account allowed to change data through the API.
* :class:`Student` – a student with an append-only revision history.
* :class:`HistoryEntry` – one attended, finalised lesson in a student's
  history. Entries are owned by their student and are only created when a
  lesson is finalised.
* :class:`Group` – a study group with an ordered membership and its lessons.
* :class:`Lesson` – one session of a group. Owned by the group and addressed
  by id within it.
* :class:`StudentAttendance` – a student's attendance, notes and next
  revision for one lesson. A unique constraint across ``lesson_id`` and
  ``student_id`` keeps exactly one entry per student and lesson.

Revision ranges are stored as JSON documents in the shape produced by
:func:`revision.normalize_revision`.
"""

from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite and Postgres ``DateTime`` store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


group_members = db.Table(
    'group_member',
    db.Column('id', db.Integer, primary_key=True),
    db.Column('group_id', db.Integer, db.ForeignKey('study_group.id'), nullable=False),
    db.Column('student_id', db.Integer, db.ForeignKey('student.id'), nullable=False),
    db.UniqueConstraint('group_id', 'student_id', name='uix_group_member'),
)


class Admin(db.Model):
    __tablename__ = 'admin'

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(100), nullable=False)
    email: str = db.Column(db.String(255), unique=True, nullable=False)
    password_hash: str = db.Column(db.String(255), nullable=False)

    def to_dict(self) -> dict:
        return {'id': self.id, 'name': self.name, 'email': self.email}

    def __repr__(self) -> str:
        return f"<Admin {self.email}>"


class Student(db.Model):
    """Represents a student.

    ``history`` is ordered by insertion and is never edited in place;
    deleting the student deletes it together with the student's group
    memberships and lesson attendance entries.
    """

    __tablename__ = 'student'

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(100), nullable=False)
    notes: str = db.Column(db.Text, nullable=False, default='')
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    history = db.relationship('HistoryEntry', back_populates='student', lazy=True,
                              order_by='HistoryEntry.id', cascade='all, delete-orphan')
    attendances = db.relationship('StudentAttendance', back_populates='student', lazy=True,
                                  cascade='all')
    groups = db.relationship('Group', secondary=group_members, back_populates='students', lazy=True)

    @property
    def lessons_count(self) -> int:
        return len(self.history)

    def to_summary(self) -> dict:
        return {'id': self.id, 'name': self.name, 'notes': self.notes}

    def to_dict(self) -> dict:
        data = self.to_summary()
        data.update({
            'history': [entry.to_dict() for entry in self.history],
            'lessonsCount': self.lessons_count,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        })
        return data

    def __repr__(self) -> str:
        return f"<Student {self.name}>"


class HistoryEntry(db.Model):
    """A finalised lesson the student attended.

    ``group_id`` becomes ``NULL`` when the group is deleted; the entry itself
    survives.
    """

    __tablename__ = 'history_entry'

    id: int = db.Column(db.Integer, primary_key=True)
    student_id: int = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    group_id: int = db.Column(db.Integer, db.ForeignKey('study_group.id'), nullable=True)
    date: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    revised: bool = db.Column(db.Boolean, nullable=False, default=False)
    notes: str = db.Column(db.Text, nullable=False, default='')
    revision = db.Column(db.JSON, nullable=True)

    student = db.relationship('Student', back_populates='history')
    group = db.relationship('Group', back_populates='history_entries')

    def to_dict(self) -> dict:
        group = None
        if self.group is not None:
            group = {'id': self.group.id, 'title': self.group.title}
        return {
            'id': self.id,
            'group': group,
            'date': _iso(self.date),
            'revised': self.revised,
            'notes': self.notes,
            'nextRevision': self.revision,
        }

    def __repr__(self) -> str:
        return f"<HistoryEntry student={self.student_id} group={self.group_id} date={self.date}>"


class Group(db.Model):
    """A study group.

    ``students`` keeps the order in which members were added. Lessons are
    owned by the group and removed with it.
    """

    __tablename__ = 'study_group'

    id: int = db.Column(db.Integer, primary_key=True)
    title: str = db.Column(db.String(200), nullable=False)
    notes: str = db.Column(db.Text, nullable=False, default='')
    day: str = db.Column(db.String(50), nullable=False, default='')
    time: str = db.Column(db.String(50), nullable=False, default='')
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    students = db.relationship('Student', secondary=group_members, back_populates='groups',
                               order_by=group_members.c.id, lazy=True)
    lessons = db.relationship('Lesson', back_populates='group', lazy=True,
                              order_by='Lesson.id', cascade='all, delete-orphan')
    history_entries = db.relationship('HistoryEntry', back_populates='group', lazy=True)

    def to_dict(self, with_lessons: bool = True) -> dict:
        data = {
            'id': self.id,
            'title': self.title,
            'notes': self.notes,
            'day': self.day,
            'time': self.time,
            'students': [s.to_summary() for s in self.students],
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }
        if with_lessons:
            data['lessons'] = [lesson.to_dict() for lesson in self.lessons]
        return data

    def __repr__(self) -> str:
        return f"<Group {self.title}>"


class Lesson(db.Model):
    __tablename__ = 'lesson'

    id: int = db.Column(db.Integer, primary_key=True)
    group_id: int = db.Column(db.Integer, db.ForeignKey('study_group.id'), nullable=False)
    date: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at: datetime = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    group = db.relationship('Group', back_populates='lessons')
    students = db.relationship('StudentAttendance', back_populates='lesson', lazy=True,
                               order_by='StudentAttendance.id', cascade='all, delete-orphan')

    def entry_for(self, student_id: int):
        for entry in self.students:
            if entry.student_id == student_id:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'date': _iso(self.date),
            'students': [entry.to_dict() for entry in self.students],
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Lesson group={self.group_id} date={self.date}>"


class StudentAttendance(db.Model):
    """A student's attendance in one lesson."""

    __tablename__ = 'student_attendance'

    id: int = db.Column(db.Integer, primary_key=True)
    lesson_id: int = db.Column(db.Integer, db.ForeignKey('lesson.id'), nullable=False)
    student_id: int = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    attended: bool = db.Column(db.Boolean, nullable=False, default=False)
    notes: str = db.Column(db.Text, nullable=False, default='')
    revision = db.Column(db.JSON, nullable=True)

    lesson = db.relationship('Lesson', back_populates='students')
    student = db.relationship('Student', back_populates='attendances')

    __table_args__ = (db.UniqueConstraint('lesson_id', 'student_id', name='uix_lesson_student'),)

    def to_dict(self) -> dict:
        student = self.student.to_summary() if self.student is not None else None
        return {
            'student': student,
            'attended': self.attended,
            'notes': self.notes,
            'nextRevision': self.revision,
        }

    def __repr__(self) -> str:
        return (f"<StudentAttendance lesson={self.lesson_id} student={self.student_id} "
                f"attended={self.attended}>")
