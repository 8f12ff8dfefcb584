"""Application configuration module.

Settings are read from environment variables, with a local ``.env`` file
loaded first when present. ``DATABASE_URL`` may use the legacy
``postgres://`` prefix handed out by some hosting platforms; it is rewritten
to ``postgresql://`` so SQLAlchemy recognises the dialect. Without a URL the
service falls back to a local SQLite file.

Business constants for the assessment domain (years, weeks, units) are kept
here as plain class attributes. They describe fixed rules of the cohort
programme and are not meant to be overridden per deployment.
"""

import os
from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    """Base configuration class.

    Flask-SQLAlchemy reads ``SQLALCHEMY_DATABASE_URI`` from this class. The
    remaining attributes are consumed by the workflow and reporting modules
    through ``current_app.config`` or directly as class attributes.
    """

    load_dotenv()

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///assessments.db'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # Number of sample failure reasons carried in a bulk operation tally.
    BULK_ERROR_SAMPLE_SIZE = _int_env('BULK_ERROR_SAMPLE_SIZE', 5)

    # Percentages in reports are rounded to this many decimal places.
    SCORE_DECIMALS = _int_env('SCORE_DECIMALS', 2)

    # --- Domain constants ---
    YEARS = range(1, 7)
    MIN_WEEK = 1
    MAX_WEEK = 12

    # Years whose assessments are organised by unit and week. Reports for
    # these years merge same-week assessments into one column.
    WEEKLY_YEARS = frozenset({2, 3})

    UNITS_BY_YEAR = {
        2: ('MSK', 'HEM', 'CVS', 'Resp'),
        3: ('GIT', 'GUT', 'Neuro', 'END'),
    }
