"""Application configuration module.

Settings are read from environment variables. A local ``.env`` file is loaded
first when present so development machines do not need exported variables.
Hosted Postgres providers still hand out ``postgres://`` URLs which recent
SQLAlchemy releases reject, so the prefix is normalised here.
"""

import os
from dotenv import load_dotenv


def _csv(value: str) -> list:
    return [item.strip() for item in value.split(',') if item.strip()]


class Config:
    """Base configuration class.

    Flask, Flask-SQLAlchemy and flask-cors read their settings from the
    attributes of this class. Without ``DATABASE_URL`` a local SQLite file is
    used so the API still starts in development.
    """

    load_dotenv()

    # Flask session signing. Tokens use ``TOKEN_SECRET`` below.
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///tutoring.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Admin bearer tokens (HS256).
    TOKEN_SECRET = os.environ.get('TOKEN_SECRET', SECRET_KEY)
    TOKEN_TTL_HOURS = int(os.environ.get('TOKEN_TTL_HOURS', '12'))

    # The admin front-end is served from a different origin.
    CORS_ORIGINS = _csv(os.environ.get('CORS_ORIGINS', '*'))
