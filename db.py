"""
PostgreSQL access for the school report API.

Queries are written with ``?`` placeholders and adapted for psycopg2.
Driver errors never leave this module raw: unique violations become
ConflictError, broken references and missing required values
ValidationError, everything else InternalError (logged here with full
detail).
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

import psycopg2
import psycopg2.errors
from psycopg2.extras import DictCursor

import config
from errors import ConflictError, InternalError, ValidationError

logger = logging.getLogger(__name__)


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_db():
    """Create a PostgreSQL DB connection."""
    return psycopg2.connect(
        config.DATABASE_URL,
        cursor_factory=DictCursor,
        connect_timeout=config.DB_CONNECT_TIMEOUT,
    )


def _translate_error(exc):
    if isinstance(exc, psycopg2.errors.UniqueViolation):
        logger.info("Unique violation: %s", exc)
        return ConflictError('Record already exists')
    if isinstance(exc, psycopg2.errors.ForeignKeyViolation):
        logger.info("Foreign key violation: %s", exc)
        return ValidationError('Referenced record does not exist')
    if isinstance(exc, psycopg2.errors.NotNullViolation):
        logger.info("Not-null violation: %s", exc)
        return ValidationError('A required value is missing')
    logger.error("SQL ERROR: %s", exc, exc_info=exc)
    return InternalError(str(exc))


@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    try:
        conn = get_db()
    except psycopg2.Error as exc:
        logger.error("Database connection failed: %s", exc)
        raise InternalError('Database unavailable') from exc
    try:
        yield conn
        if commit:
            conn.commit()
    except psycopg2.Error as exc:
        conn.rollback()
        raise _translate_error(exc) from exc
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def transaction():
    """Yield a cursor whose statements commit together or not at all."""
    with db_connection(commit=True) as conn:
        yield conn.cursor()


@contextmanager
def savepoint(cursor, name):
    """Scope a group of statements so their failure only undoes themselves."""
    db_execute(cursor, f'SAVEPOINT {name}')
    try:
        yield
    except psycopg2.Error:
        db_execute(cursor, f'ROLLBACK TO SAVEPOINT {name}')
        raise
    else:
        db_execute(cursor, f'RELEASE SAVEPOINT {name}')


def _plain(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def row_to_dict(row):
    if row is None:
        return None
    return {key: _plain(value) for key, value in dict(row).items()}


def fetch_all(cursor):
    return [row_to_dict(row) for row in cursor.fetchall()]


def fetch_one(cursor):
    return row_to_dict(cursor.fetchone())


def query_all(query, params=None):
    """Run one read query on a short-lived connection."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return fetch_all(c)


def query_one(query, params=None):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return fetch_one(c)


class Conditions:
    """WHERE predicates collected together with their parameters."""

    def __init__(self):
        self.clauses = []
        self.params = []

    def add(self, clause, *params):
        self.clauses.append(clause)
        self.params.extend(params)
        return self

    def add_if(self, value, clause, transform=None):
        """Add *clause* only when a filter value was supplied."""
        if value is None or value == '':
            return self
        return self.add(clause, transform(value) if transform else value)

    def sql(self, keyword='WHERE'):
        if not self.clauses:
            return ''
        return f' {keyword} ' + ' AND '.join(self.clauses)


def assignments(fields, allowed):
    """
    Build a SET clause for the keys of ``fields`` that appear in ``allowed``.

    ``allowed`` is the column whitelist; absent keys are left untouched.
    Returns ``(clause, params)``; the clause is empty when nothing applies.
    """
    columns = [column for column in allowed if column in fields]
    clause = ', '.join(f'{column} = ?' for column in columns)
    return clause, [fields[column] for column in columns]


def ping():
    """Return server time and version, or raise InternalError."""
    return query_one('SELECT NOW() AS now, VERSION() AS version')
