"""
Daily headcounts and per-student term attendance.

Term attendance values are always recomputed from total and attended days,
so the stored percentage cannot drift from the day counts.
"""

import logging

from auth import Role, can_access_class
from db import Conditions, db_connection, db_execute, fetch_all, fetch_one, transaction
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from reports import round_half_up

logger = logging.getLogger(__name__)

GOOD_ATTENDANCE = 75
AVERAGE_ATTENDANCE = 60

TERM_ATTENDANCE_COLUMNS = '''a.id, a.student_id, a.term_id, a.academic_year, a.total_school_days,
       a.attended_days, a.absent_days, a.attendance_percentage, a.created_at, a.updated_at'''

UPSERT_SQL = '''
    INSERT INTO student_term_attendance
        (student_id, term_id, academic_year, total_school_days, attended_days,
         absent_days, attendance_percentage, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, NOW(), NOW())
    ON CONFLICT (student_id, term_id, academic_year) DO UPDATE SET
        total_school_days = EXCLUDED.total_school_days,
        attended_days = EXCLUDED.attended_days,
        absent_days = EXCLUDED.absent_days,
        attendance_percentage = EXCLUDED.attendance_percentage,
        updated_at = NOW()'''


def _whole_number(value, label):
    if isinstance(value, bool):
        raise ValidationError(f'{label} must be a whole number')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} must be a whole number')
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f'{label} must be a whole number')
    return number


def calculate_attendance(total_days, attended_days):
    """Absent days and percentage for one student's term."""
    total_days = _whole_number(total_days, 'Total school days')
    attended_days = _whole_number(attended_days, 'Attended days')
    if total_days <= 0:
        raise ValidationError('Total school days must be greater than 0')
    if attended_days < 0:
        raise ValidationError('Attended days cannot be negative')
    if attended_days > total_days:
        raise ValidationError('Attended days cannot exceed total school days')
    return {
        'total_school_days': total_days,
        'attended_days': attended_days,
        'absent_days': total_days - attended_days,
        'attendance_percentage': round_half_up(attended_days * 100.0 / total_days),
    }


def attendance_bucket(percentage):
    if percentage >= GOOD_ATTENDANCE:
        return 'good'
    if percentage >= AVERAGE_ATTENDANCE:
        return 'average'
    return 'poor'


def attendance_statistics(rows):
    """Descriptive statistics over term attendance rows; all zeros when empty."""
    percentages = [float(r['attendance_percentage']) for r in rows if r.get('attendance_percentage') is not None]
    buckets = {'good': 0, 'average': 0, 'poor': 0}
    for value in percentages:
        buckets[attendance_bucket(value)] += 1

    def mean(key):
        values = [float(r[key]) for r in rows if r.get(key) is not None]
        return round_half_up(sum(values) / len(values)) if values else 0.0

    count = len(percentages)
    return {
        'total_students': count,
        'average_attendance': round_half_up(sum(percentages) / count) if count else 0.0,
        'min_attendance': min(percentages) if count else 0.0,
        'max_attendance': max(percentages) if count else 0.0,
        'good_attendance_count': buckets['good'],
        'average_attendance_count': buckets['average'],
        'poor_attendance_count': buckets['poor'],
        'avg_school_days': mean('total_school_days'),
        'avg_attended_days': mean('attended_days'),
        'avg_absent_days': mean('absent_days'),
    }


def parse_records(records):
    """Validate a bulk payload into rows ready for the upsert."""
    if not isinstance(records, list) or not records:
        raise ValidationError('Attendance records must be a non-empty list')
    parsed = []
    seen = set()
    for position, record in enumerate(records, 1):
        if not isinstance(record, dict):
            raise ValidationError(f'Record {position}: must be an object')
        academic_year = str(record.get('academic_year') or '').strip()
        if not academic_year:
            raise ValidationError(f'Record {position}: academic_year is required')
        try:
            student_id = _whole_number(record.get('student_id'), 'student_id')
            term_id = _whole_number(record.get('term_id'), 'term_id')
            values = calculate_attendance(record.get('total_school_days'), record.get('attended_days'))
        except ValidationError as exc:
            raise ValidationError(f'Record {position}: {exc.message}') from exc
        key = (student_id, term_id, academic_year)
        if key in seen:
            raise ValidationError(f'Record {position}: duplicate record for student {student_id}')
        seen.add(key)
        parsed.append((student_id, term_id, academic_year, values))
    return parsed


def _check_record_scope(cursor, identity, student_ids):
    db_execute(cursor, 'SELECT id, current_class FROM students WHERE id = ANY(?)', (student_ids,))
    classes = {row['id']: row['current_class'] for row in fetch_all(cursor)}
    missing = [sid for sid in student_ids if sid not in classes]
    if missing:
        raise ValidationError(f"Unknown student id(s): {', '.join(str(i) for i in missing)}")
    if identity.role is Role.ADMIN:
        return
    for student_id in student_ids:
        if not can_access_class(identity, classes[student_id]):
            raise AuthorizationError('You can only record attendance for your assigned class')


def save_term_attendance(identity, records):
    """Upsert a batch of term attendance records in one transaction."""
    batch = parse_records(records)
    student_ids = sorted({row[0] for row in batch})
    with transaction() as c:
        _check_record_scope(c, identity, student_ids)
        for student_id, term_id, academic_year, values in batch:
            db_execute(c, UPSERT_SQL, (
                student_id, term_id, academic_year,
                values['total_school_days'], values['attended_days'],
                values['absent_days'], values['attendance_percentage'],
            ))
    logger.info("Term attendance saved: %s records", len(batch))
    return len(batch)


def scope_conditions(class_name=None, term_id=None, academic_year=None):
    where = Conditions()
    where.add("st.status = 'active'")
    where.add_if(class_name, 'st.current_class = ?')
    where.add_if(term_id, 'a.term_id = ?')
    where.add_if(academic_year, 'a.academic_year = ?')
    return where


def list_term_attendance(class_name=None, term_id=None, academic_year=None):
    where = scope_conditions(class_name, term_id, academic_year)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT {TERM_ATTENDANCE_COLUMNS},
                       st.name AS student_name, st.index_number, st.current_class, t.term_name
                FROM student_term_attendance a
                JOIN students st ON a.student_id = st.id
                JOIN terms t ON a.term_id = t.id'''
            + where.sql()
            + ' ORDER BY st.current_class, st.index_number',
            where.params,
        )
        return fetch_all(c)


def term_attendance_stats(class_name=None, term_id=None, academic_year=None):
    return attendance_statistics(list_term_attendance(class_name, term_id, academic_year))


def term_attendance_summary(term_id=None, academic_year=None):
    """Attendance statistics per class."""
    rows = list_term_attendance(term_id=term_id, academic_year=academic_year)
    classes = {}
    for row in rows:
        classes.setdefault(row['current_class'], []).append(row)
    return [
        dict(attendance_statistics(class_rows), class_name=name)
        for name, class_rows in sorted(classes.items(), key=lambda item: item[0] or '')
    ]


def student_term_attendance(student_id, academic_year=None):
    where = Conditions()
    where.add('a.student_id = ?', student_id)
    where.add_if(academic_year, 'a.academic_year = ?')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, name, index_number, current_class FROM students WHERE id = ?', (student_id,))
        student = fetch_one(c)
        if not student:
            raise NotFoundError('Student not found')
        db_execute(
            c,
            f'''SELECT {TERM_ATTENDANCE_COLUMNS}, t.term_name, t.term_number, t.exam_year
                FROM student_term_attendance a
                JOIN terms t ON a.term_id = t.id'''
            + where.sql()
            + ' ORDER BY a.academic_year, t.term_number',
            where.params,
        )
        records = fetch_all(c)
    return {'student': student, 'records': records}


def _require_record_scope(cursor, identity, record_id):
    db_execute(
        cursor,
        '''SELECT a.id, st.current_class
           FROM student_term_attendance a JOIN students st ON a.student_id = st.id
           WHERE a.id = ?''',
        (record_id,),
    )
    record = fetch_one(cursor)
    if not record:
        raise NotFoundError('Attendance record not found')
    if not can_access_class(identity, record['current_class']):
        raise AuthorizationError('You can only record attendance for your assigned class')


def update_term_attendance(identity, record_id, total_days, attended_days):
    values = calculate_attendance(total_days, attended_days)
    with transaction() as c:
        _require_record_scope(c, identity, record_id)
        db_execute(
            c,
            '''UPDATE student_term_attendance
               SET total_school_days = ?, attended_days = ?, absent_days = ?,
                   attendance_percentage = ?, updated_at = NOW()
               WHERE id = ?
               RETURNING *''',
            (values['total_school_days'], values['attended_days'], values['absent_days'],
             values['attendance_percentage'], record_id),
        )
        return fetch_one(c)


def delete_term_attendance(identity, record_id):
    with transaction() as c:
        _require_record_scope(c, identity, record_id)
        db_execute(c, 'DELETE FROM student_term_attendance WHERE id = ?', (record_id,))


# ==================== DAILY ATTENDANCE ====================

def record_daily_attendance(identity, date, class_name, boys, girls):
    """Store one (date, class, teacher) headcount; duplicates are a conflict."""
    with transaction() as c:
        db_execute(
            c,
            'SELECT id FROM attendance WHERE date = ? AND class_name = ? AND teacher_id = ?',
            (date, class_name, identity.user_id),
        )
        if c.fetchone():
            raise ConflictError('Attendance already recorded for this class and date')
        db_execute(
            c,
            '''INSERT INTO attendance (date, class_name, boys, girls, teacher_id, created_at)
               VALUES (?, ?, ?, ?, ?, NOW())
               RETURNING id, date, class_name, boys, girls, teacher_id, created_at''',
            (date, class_name, boys, girls, identity.user_id),
        )
        row = fetch_one(c)
    logger.info("Daily attendance recorded by %s for %s on %s", identity.username, class_name, date)
    return row


def list_daily_attendance(identity, class_name=None, date_from=None, date_to=None):
    """Teachers see their own headcounts; coordinators and admins see all."""
    where = Conditions()
    if identity.role is Role.TEACHER:
        where.add('a.teacher_id = ?', identity.user_id)
    where.add_if(class_name, 'a.class_name = ?')
    where.add_if(date_from, 'a.date >= ?')
    where.add_if(date_to, 'a.date <= ?')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT a.id, a.date, a.class_name, a.boys, a.girls, a.boys + a.girls AS total,
                      a.teacher_id, u.full_name AS teacher_name, a.created_at
               FROM attendance a
               LEFT JOIN users u ON a.teacher_id = u.id'''
            + where.sql()
            + ' ORDER BY a.date DESC, a.class_name',
            where.params,
        )
        return fetch_all(c)
