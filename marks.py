"""
Mark ingestion.

Every write goes through ``save_marks``: the batch is validated and
scope-checked in full before the first statement runs, then upserted in a
single transaction so it applies completely or not at all.
"""

import logging

from auth import Role, can_access_class
from db import Conditions, db_connection, db_execute, fetch_all, fetch_one, transaction
from errors import AuthorizationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ABSENT = 'AB'
MIN_MARK = 0
MAX_MARK = 100

MARK_COLUMNS = '''m.id, m.student_id, m.subject_id, m.term_id, m.marks, m.status,
       m.teacher_id, m.entry_date, m.updated_at'''

UPSERT_SQL = '''
    INSERT INTO marks (student_id, subject_id, term_id, marks, status, teacher_id, entry_date, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, NOW(), NOW())
    ON CONFLICT (student_id, subject_id, term_id) DO UPDATE SET
        marks = EXCLUDED.marks,
        status = EXCLUDED.status,
        teacher_id = EXCLUDED.teacher_id,
        updated_at = NOW()
    RETURNING id, (xmax = 0) AS inserted'''


def parse_mark(value):
    """
    Return ``(marks, status)`` for a submitted mark.

    "AB" in any case means the student sat out the exam and is stored as a
    null mark with status 'absent'. Whole numbers 0-100 (ints, integral
    floats or digit strings) are 'active'. Anything else is rejected.
    """
    if isinstance(value, bool):
        raise ValidationError('Marks must be a number between 0 and 100 or AB')
    if isinstance(value, str):
        text = value.strip()
        if text.upper() == ABSENT:
            return None, 'absent'
        if not text.isdigit():
            raise ValidationError('Marks must be a number between 0 and 100 or AB')
        value = int(text)
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError('Marks must be a whole number')
        value = int(value)
    elif not isinstance(value, int):
        raise ValidationError('Marks must be a number between 0 and 100 or AB')

    if value < MIN_MARK or value > MAX_MARK:
        raise ValidationError('Marks must be between 0 and 100')
    return value, 'active'


def _positive_id(value, label):
    if isinstance(value, bool):
        raise ValidationError(f'{label} must be an integer')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be an integer')
    if number <= 0 or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{label} must be a positive integer')
    return number


def parse_batch(entries):
    """Validate a raw batch into ``(student_id, subject_id, marks, status)`` tuples."""
    if not isinstance(entries, list) or not entries:
        raise ValidationError('Marks data must be a non-empty list')

    parsed = []
    seen = set()
    for position, entry in enumerate(entries, 1):
        if not isinstance(entry, dict):
            raise ValidationError(f'Entry {position}: must be an object')
        if 'marks' not in entry:
            raise ValidationError(f'Entry {position}: marks is required')
        student_id = _positive_id(entry.get('student_id'), f'Entry {position}: student_id')
        subject_id = _positive_id(entry.get('subject_id'), f'Entry {position}: subject_id')
        try:
            marks, status = parse_mark(entry.get('marks'))
        except ValidationError as exc:
            raise ValidationError(f'Entry {position}: {exc.message}') from exc
        key = (student_id, subject_id)
        if key in seen:
            raise ValidationError(f'Entry {position}: duplicate mark for student {student_id}, subject {subject_id}')
        seen.add(key)
        parsed.append((student_id, subject_id, marks, status))
    return parsed


def _require_term(cursor, term_id):
    db_execute(cursor, 'SELECT id FROM terms WHERE id = ?', (term_id,))
    if not cursor.fetchone():
        raise NotFoundError('Term not found')


def _student_classes(cursor, student_ids):
    db_execute(cursor, 'SELECT id, current_class FROM students WHERE id = ANY(?)', (list(student_ids),))
    return {row['id']: row['current_class'] for row in fetch_all(cursor)}


def check_scope(identity, classes):
    """Reject the batch if the caller may not write marks for any of ``classes``."""
    if identity.role is Role.ADMIN:
        return
    for class_name in sorted(set(classes), key=lambda v: v or ''):
        if not can_access_class(identity, class_name):
            raise AuthorizationError('You can only enter marks for students in your assigned class')


def save_marks(identity, term_id, entries):
    """
    Validate and upsert a batch of marks for one term.

    Returns ``{'inserted': n, 'updated': n}``. Nothing is written unless every
    entry is valid and within the caller's class scope.
    """
    term_id = _positive_id(term_id, 'term_id')
    batch = parse_batch(entries)

    with transaction() as c:
        _require_term(c, term_id)
        student_ids = {row[0] for row in batch}
        classes = _student_classes(c, student_ids)
        missing = sorted(student_ids - set(classes))
        if missing:
            raise ValidationError(f"Unknown student id(s): {', '.join(str(i) for i in missing)}")
        check_scope(identity, [classes[sid] for sid in student_ids])

        inserted = updated = 0
        for student_id, subject_id, marks, status in batch:
            db_execute(c, UPSERT_SQL, (student_id, subject_id, term_id, marks, status, identity.user_id))
            row = c.fetchone()
            if row and row['inserted']:
                inserted += 1
            else:
                updated += 1

    logger.info(
        "Marks saved by %s: term=%s inserted=%s updated=%s",
        identity.username, term_id, inserted, updated,
    )
    return {'inserted': inserted, 'updated': updated}


def present_mark(row):
    row = dict(row)
    row['is_absent'] = row.get('status') == 'absent'
    return row


def update_mark(identity, mark_id, value):
    """Change one stored mark by id, with the same rules as a batch entry."""
    marks, status = parse_mark(value)
    with transaction() as c:
        db_execute(
            c,
            '''SELECT m.id, st.current_class
               FROM marks m JOIN students st ON m.student_id = st.id
               WHERE m.id = ?''',
            (mark_id,),
        )
        existing = fetch_one(c)
        if not existing:
            raise NotFoundError('Mark not found')
        check_scope(identity, [existing['current_class']])
        db_execute(
            c,
            f'''UPDATE marks m SET marks = ?, status = ?, teacher_id = ?, updated_at = NOW()
                WHERE m.id = ?
                RETURNING {MARK_COLUMNS}''',
            (marks, status, identity.user_id, mark_id),
        )
        row = fetch_one(c)
    logger.info("Mark %s updated by %s", mark_id, identity.username)
    return present_mark(row)


def delete_mark(mark_id):
    with transaction() as c:
        db_execute(c, 'DELETE FROM marks WHERE id = ? RETURNING id', (mark_id,))
        if not c.fetchone():
            raise NotFoundError('Mark not found')
    logger.info("Mark %s deleted", mark_id)


def list_marks(class_name=None, student_id=None, subject_id=None, term_id=None):
    where = Conditions()
    where.add_if(student_id, 'm.student_id = ?')
    where.add_if(subject_id, 'm.subject_id = ?')
    where.add_if(term_id, 'm.term_id = ?')
    where.add_if(class_name, 'st.current_class = ?')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT {MARK_COLUMNS},
                       st.name AS student_name, st.index_number, st.current_class,
                       s.subject_name, s.subject_code, s.stream,
                       t.term_name, u.full_name AS teacher_name
                FROM marks m
                JOIN students st ON m.student_id = st.id
                JOIN subjects s ON m.subject_id = s.id
                JOIN terms t ON m.term_id = t.id
                LEFT JOIN users u ON m.teacher_id = u.id'''
            + where.sql()
            + ' ORDER BY st.current_class, st.index_number, s.subject_name',
            where.params,
        )
        rows = fetch_all(c)
    return [present_mark(row) for row in rows]


def student_term_marks(identity, student_id, term_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, current_class FROM students WHERE id = ?', (student_id,))
        student = fetch_one(c)
        if not student:
            raise NotFoundError('Student not found')
        if not can_access_class(identity, student['current_class']):
            raise AuthorizationError('You can only access your assigned class')
        db_execute(
            c,
            f'''SELECT {MARK_COLUMNS}, s.subject_name, s.subject_code, s.stream
                FROM marks m
                JOIN subjects s ON m.subject_id = s.id
                WHERE m.student_id = ? AND m.term_id = ?
                ORDER BY s.stream, s.subject_name''',
            (student_id, term_id),
        )
        rows = fetch_all(c)
    return [present_mark(row) for row in rows]
