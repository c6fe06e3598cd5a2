"""Students, subjects, classes and class-subject assignments."""

import logging

from db import Conditions, assignments, db_execute, fetch_all, fetch_one, query_all, query_one, transaction
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STUDENT_COLUMNS = 'id, index_number, name, current_class, admission_year, status, created_at, updated_at'
STUDENT_UPDATABLE = ('index_number', 'name', 'current_class', 'admission_year', 'status')

SUBJECT_COLUMNS = 'id, subject_code, subject_name, stream, status, created_at'
SUBJECT_UPDATABLE = ('subject_code', 'subject_name', 'stream', 'status')


# ==================== STUDENTS ====================

def list_students(class_name=None, status='active', search=None):
    where = Conditions()
    where.add_if(status, 'status = ?')
    where.add_if(class_name, 'current_class = ?')
    if search:
        pattern = f'%{search}%'
        where.add('(name ILIKE ? OR index_number ILIKE ?)', pattern, pattern)
    return query_all(
        f'SELECT {STUDENT_COLUMNS} FROM students' + where.sql() + ' ORDER BY current_class, index_number',
        where.params,
    )


def get_student(student_id):
    student = query_one(f'SELECT {STUDENT_COLUMNS} FROM students WHERE id = ?', (student_id,))
    if not student:
        raise NotFoundError('Student not found')
    return student


def create_student(index_number, name, current_class, admission_year=None):
    with transaction() as c:
        db_execute(
            c,
            f'''INSERT INTO students (index_number, name, current_class, admission_year, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'active', NOW(), NOW())
                RETURNING {STUDENT_COLUMNS}''',
            (index_number.strip(), name.strip(), current_class.strip(), admission_year),
        )
        student = fetch_one(c)
    logger.info("Student created: %s (%s)", student['index_number'], student['current_class'])
    return student


def update_student(student_id, fields):
    clause, params = assignments(fields, STUDENT_UPDATABLE)
    if not clause:
        raise ValidationError('No fields to update')
    with transaction() as c:
        db_execute(
            c,
            f'UPDATE students SET {clause}, updated_at = NOW() WHERE id = ? RETURNING {STUDENT_COLUMNS}',
            params + [student_id],
        )
        student = fetch_one(c)
    if not student:
        raise NotFoundError('Student not found')
    return student


def deactivate_student(student_id):
    """Soft delete: marks and history keep pointing at the row."""
    with transaction() as c:
        db_execute(
            c,
            "UPDATE students SET status = 'inactive', updated_at = NOW() WHERE id = ? RETURNING id",
            (student_id,),
        )
        if not c.fetchone():
            raise NotFoundError('Student not found')
    logger.info("Student %s deactivated", student_id)


# ==================== SUBJECTS ====================

def list_subjects(stream=None, status='active'):
    where = Conditions()
    where.add_if(status, 'status = ?')
    where.add_if(stream, 'stream = ?')
    return query_all(
        f'SELECT {SUBJECT_COLUMNS} FROM subjects' + where.sql() + ' ORDER BY stream, subject_name',
        where.params,
    )


def create_subject(subject_code, subject_name, stream):
    with transaction() as c:
        db_execute(
            c,
            f'''INSERT INTO subjects (subject_code, subject_name, stream, status, created_at)
                VALUES (?, ?, ?, 'active', NOW())
                RETURNING {SUBJECT_COLUMNS}''',
            (subject_code.strip().upper(), subject_name.strip(), stream.strip()),
        )
        return fetch_one(c)


def update_subject(subject_id, fields):
    if fields.get('subject_code'):
        fields = dict(fields, subject_code=fields['subject_code'].strip().upper())
    clause, params = assignments(fields, SUBJECT_UPDATABLE)
    if not clause:
        raise ValidationError('No fields to update')
    with transaction() as c:
        db_execute(
            c,
            f'UPDATE subjects SET {clause} WHERE id = ? RETURNING {SUBJECT_COLUMNS}',
            params + [subject_id],
        )
        subject = fetch_one(c)
    if not subject:
        raise NotFoundError('Subject not found')
    return subject


# ==================== CLASSES ====================

def list_classes():
    return query_all(
        '''SELECT current_class AS class_name, COUNT(*) AS student_count
           FROM students
           WHERE status = 'active'
           GROUP BY current_class
           ORDER BY current_class'''
    )


def class_subjects(class_name, academic_year=None):
    where = Conditions()
    where.add('cs.class_name = ?', class_name)
    where.add_if(academic_year, 'cs.academic_year = ?')
    return query_all(
        '''SELECT cs.id, cs.class_name, cs.academic_year,
                  s.id AS subject_id, s.subject_code, s.subject_name, s.stream
           FROM class_subjects cs
           JOIN subjects s ON cs.subject_id = s.id'''
        + where.sql()
        + ' ORDER BY s.stream, s.subject_name',
        where.params,
    )


def assign_class_subjects(class_name, academic_year, subject_ids):
    """Replace a class's subject list for one academic year."""
    if not isinstance(subject_ids, list):
        raise ValidationError('Subject IDs must be a list')
    try:
        subject_ids = list(dict.fromkeys(int(v) for v in subject_ids if not isinstance(v, bool)))
    except (TypeError, ValueError):
        raise ValidationError('Subject IDs must be integers')
    academic_year = str(academic_year or '').strip()
    if not academic_year:
        raise ValidationError('Academic year is required')

    with transaction() as c:
        if subject_ids:
            db_execute(c, 'SELECT id FROM subjects WHERE id = ANY(?)', (subject_ids,))
            known = {row['id'] for row in fetch_all(c)}
            missing = [sid for sid in subject_ids if sid not in known]
            if missing:
                raise ValidationError(f"Unknown subject id(s): {', '.join(str(i) for i in missing)}")
        db_execute(
            c,
            'DELETE FROM class_subjects WHERE class_name = ? AND academic_year = ?',
            (class_name, academic_year),
        )
        for subject_id in subject_ids:
            db_execute(
                c,
                '''INSERT INTO class_subjects (class_name, subject_id, academic_year, created_at)
                   VALUES (?, ?, ?, NOW())''',
                (class_name, subject_id, academic_year),
            )
    logger.info("Class %s assigned %s subjects for %s", class_name, len(subject_ids), academic_year)
    return class_subjects(class_name, academic_year)
