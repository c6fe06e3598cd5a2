"""
Term lifecycle.

At most one term is active. Switching the active term is one conditional
UPDATE, so there is never a moment with zero or two active terms.
"""

import logging

from db import assignments, db_execute, fetch_one, query_all, query_one, transaction
from errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TERM_COLUMNS = 'id, term_number, term_name, exam_month, exam_year, status, created_at, updated_at'
UPDATABLE = ('term_number', 'term_name', 'exam_month', 'exam_year')

DEFAULT_TERM_NAMES = {1: 'First Term', 2: 'Second Term', 3: 'Third Term'}


def list_terms(exam_year=None):
    if exam_year:
        return query_all(
            f'SELECT {TERM_COLUMNS} FROM terms WHERE exam_year = ? ORDER BY exam_year DESC, term_number',
            (exam_year,),
        )
    return query_all(f'SELECT {TERM_COLUMNS} FROM terms ORDER BY exam_year DESC, term_number')


def get_term(term_id):
    term = query_one(f'SELECT {TERM_COLUMNS} FROM terms WHERE id = ?', (term_id,))
    if not term:
        raise NotFoundError('Term not found')
    return term


def current_term():
    return query_one(f"SELECT {TERM_COLUMNS} FROM terms WHERE status = 'active' ORDER BY id LIMIT 1")


def _ensure_unique(c, term_number, exam_year, exclude_id=None):
    db_execute(
        c,
        'SELECT id FROM terms WHERE term_number = ? AND exam_year = ? AND id <> ?',
        (term_number, exam_year, exclude_id or 0),
    )
    if c.fetchone():
        raise ConflictError(f'Term {term_number} already exists for {exam_year}')


def _insert_term(c, term_number, term_name, exam_month, exam_year):
    _ensure_unique(c, term_number, exam_year)
    db_execute(
        c,
        f'''INSERT INTO terms (term_number, term_name, exam_month, exam_year, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'inactive', NOW(), NOW())
            RETURNING {TERM_COLUMNS}''',
        (term_number, term_name, exam_month, exam_year),
    )
    return fetch_one(c)


def create_term(term_number, term_name, exam_month, exam_year):
    with transaction() as c:
        term = _insert_term(c, term_number, term_name, exam_month, exam_year)
    logger.info("Term created: %s %s", term_name, exam_year)
    return term


def create_year_terms(exam_year, terms=None):
    """
    Create several terms for one year in a single transaction.

    ``terms`` is a list of ``{term_number, term_name, exam_month}`` dicts;
    when omitted the three default terms are created.
    """
    if terms is None:
        terms = [{'term_number': n, 'term_name': name} for n, name in DEFAULT_TERM_NAMES.items()]
    if not isinstance(terms, list) or not terms:
        raise ValidationError('Terms must be a non-empty list')

    created = []
    with transaction() as c:
        for item in terms:
            if not isinstance(item, dict):
                raise ValidationError('Each term must be an object')
            number = item.get('term_number')
            if isinstance(number, bool) or number not in DEFAULT_TERM_NAMES:
                raise ValidationError('Term number must be 1, 2, or 3')
            name = (item.get('term_name') or DEFAULT_TERM_NAMES[number]).strip()
            created.append(_insert_term(c, number, name, item.get('exam_month'), exam_year))
    logger.info("Created %s terms for %s", len(created), exam_year)
    return created


def update_term(term_id, fields):
    clause, params = assignments(fields, UPDATABLE)
    if not clause:
        raise ValidationError('No fields to update')
    with transaction() as c:
        db_execute(c, 'SELECT term_number, exam_year FROM terms WHERE id = ?', (term_id,))
        existing = fetch_one(c)
        if not existing:
            raise NotFoundError('Term not found')
        if 'term_number' in fields or 'exam_year' in fields:
            _ensure_unique(
                c,
                fields.get('term_number', existing['term_number']),
                fields.get('exam_year', existing['exam_year']),
                exclude_id=term_id,
            )
        db_execute(
            c,
            f'UPDATE terms SET {clause}, updated_at = NOW() WHERE id = ? RETURNING {TERM_COLUMNS}',
            params + [term_id],
        )
        return fetch_one(c)


def delete_term(term_id):
    with transaction() as c:
        db_execute(c, 'SELECT COUNT(*) AS count FROM marks WHERE term_id = ?', (term_id,))
        if fetch_one(c)['count']:
            raise ConflictError('Cannot delete a term that has marks')
        db_execute(c, 'DELETE FROM terms WHERE id = ? RETURNING id', (term_id,))
        if not c.fetchone():
            raise NotFoundError('Term not found')
    logger.info("Term %s deleted", term_id)


def set_current_term(term_id):
    """Make ``term_id`` the only active term."""
    with transaction() as c:
        db_execute(c, 'SELECT id FROM terms WHERE id = ?', (term_id,))
        if not c.fetchone():
            raise NotFoundError('Term not found')
        db_execute(
            c,
            '''UPDATE terms
               SET status = CASE WHEN id = ? THEN 'active' ELSE 'inactive' END,
                   updated_at = NOW()
               WHERE id = ? OR status = 'active' ''',
            (term_id, term_id),
        )
        db_execute(c, f'SELECT {TERM_COLUMNS} FROM terms WHERE id = ?', (term_id,))
        term = fetch_one(c)
    logger.info("Active term set to %s", term_id)
    return term


def clone_term(term_id, exam_year):
    """Copy a term's number, name and month into another year as an inactive term."""
    with transaction() as c:
        db_execute(c, 'SELECT term_number, term_name, exam_month FROM terms WHERE id = ?', (term_id,))
        source = fetch_one(c)
        if not source:
            raise NotFoundError('Term not found')
        term = _insert_term(c, source['term_number'], source['term_name'], source['exam_month'], exam_year)
    logger.info("Term %s cloned into %s", term_id, exam_year)
    return term

