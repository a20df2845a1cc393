"""Seed the database with an admin account and demo data.

Creates (or resets the password of) the admin named by ``ADMIN_EMAIL`` /
``ADMIN_PASSWORD`` and, unless ``--admin-only`` is given, a few students and
a group so the API has something to show on a fresh database.

Usage:
    python seed.py [--admin-only]

"""

import os
import sys

from app import create_app
from auth import hash_password
from models import db, Admin, Group, Student


def seed_admin(name: str, email: str, password: str) -> Admin:
    email = email.strip().lower()
    admin = Admin.query.filter_by(email=email).first()
    if admin is None:
        admin = Admin(name=name, email=email, password_hash=hash_password(password))
        db.session.add(admin)
    else:
        admin.password_hash = hash_password(password)
    db.session.commit()
    return admin


def seed_demo_data() -> Group:
    """Insert sample students and one group containing all of them."""
    names = ['عبد الله', 'يوسف', 'مريم', 'فاطمة']
    students = []
    for name in names:
        student = Student(name=name, notes='')
        db.session.add(student)
        students.append(student)
    group = Group(title='حلقة الفجر', day='Saturday', time='07:00', students=students)
    db.session.add(group)
    db.session.commit()
    return group


def main(argv=None) -> None:
    argv = sys.argv[1:] if argv is None else argv
    app = create_app()
    with app.app_context():
        admin = seed_admin(
            os.environ.get('ADMIN_NAME', 'Admin'),
            os.environ.get('ADMIN_EMAIL', 'admin@example.com'),
            os.environ.get('ADMIN_PASSWORD', 'change-me'),
        )
        print(f'Admin ready: {admin.email}')
        if '--admin-only' not in argv:
            group = seed_demo_data()
            print(f'Database seeded successfully (group {group.id}).')


if __name__ == '__main__':
    main()
