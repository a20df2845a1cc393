import os
import sys
from pathlib import Path
from typing import Generator

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from app import create_app
from auth import Identity, hash_password, issue_token
from models import db, Admin, Group, Student


@pytest.fixture
def app(monkeypatch: pytest.MonkeyPatch) -> Generator:
    monkeypatch.setenv('REQUEST_LOG_SAMPLE_RATE', '1')
    os.environ.pop('DATABASE_URL', None)
    application = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'TOKEN_SECRET': 'test-secret',
        'TOKEN_TTL_HOURS': 1,
    })
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin(app) -> Admin:
    account = Admin(name='Admin', email='admin@example.com', password_hash=hash_password('secret'))
    db.session.add(account)
    db.session.commit()
    return account


@pytest.fixture
def identity(admin) -> Identity:
    return Identity(admin_id=admin.id, name=admin.name, email=admin.email)


@pytest.fixture
def auth_headers(admin):
    return {'Authorization': f'Bearer {issue_token(admin)}'}


@pytest.fixture
def make_student(app):
    def _make(name: str, notes: str = '') -> Student:
        student = Student(name=name, notes=notes)
        db.session.add(student)
        db.session.commit()
        return student
    return _make


@pytest.fixture
def make_group(app):
    def _make(title: str, students=()) -> Group:
        group = Group(title=title, students=list(students))
        db.session.add(group)
        db.session.commit()
        return group
    return _make
