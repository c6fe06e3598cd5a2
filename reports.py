"""
Term report aggregation.

Loaders pull flat (student, subject, mark) rows from PostgreSQL; the
``build_*`` functions turn those rows into ranked, averaged and
summarized reports. The builders never touch the database, so a report is
a pure function of the rows read during one request.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal

from db import Conditions, db_connection, db_execute, fetch_all, fetch_one
from errors import NotFoundError

logger = logging.getLogger(__name__)

COMMON_STREAM = 'Common'
PASS_MARK = 50

# Subject-analysis bands: lower bound inclusive, checked top-down.
SUBJECT_BANDS = (
    ('distinction', 75),
    ('credit', 65),
    ('pass', 50),
    ('fail', 0),
)

GRADE_DISTRIBUTION_BANDS = (
    ('A (75-100)', 75),
    ('B (65-74)', 65),
    ('C (50-64)', 50),
    ('S (35-49)', 35),
    ('F (0-34)', 0),
)


def round_half_up(value, places=2):
    """Round like a report card does: 2.345 -> 2.35, never banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def is_common_stream(stream):
    return (stream or '').strip().lower() == COMMON_STREAM.lower()


def _mark(value):
    return None if value is None else float(value)


def _same_score(a, b):
    return abs(float(a or 0) - float(b or 0)) <= 1e-9


def band_for(mark, bands=SUBJECT_BANDS):
    for name, lower in bands:
        if mark >= lower:
            return name
    return bands[-1][0]


def student_totals(marks):
    """
    Total and average for one student's subject marks.

    The total sums every entered mark (absent or missing counts as 0). The
    average only looks at entered marks outside the common stream and is 0
    when there are none.
    """
    entered = [m['marks'] for m in marks if m['marks'] is not None]
    counted = [m['marks'] for m in marks if m['marks'] is not None and not is_common_stream(m.get('stream'))]
    total = round_half_up(sum(entered)) if entered else 0.0
    average = round_half_up(sum(counted) / len(counted)) if counted else 0.0
    return total, average


def assign_ranks(students, key='total'):
    """
    Sort students by ``key`` descending and give them competition ranks.

    Equal scores share a rank and the next distinct score takes its 1-based
    position, so totals 180, 180, 150 rank 1, 1, 3. Returns the sorted list.
    """
    ordered = sorted(students, key=lambda s: s.get(key) or 0, reverse=True)
    current_rank = 0
    previous = None
    for position, student in enumerate(ordered, 1):
        score = student.get(key) or 0
        if previous is None or not _same_score(score, previous):
            current_rank = position
            previous = score
        student['rank'] = current_rank
    return ordered


def build_student_records(rows):
    """Group report rows by student, keeping the order students first appear in."""
    students = {}
    for row in rows:
        student_id = row['student_id']
        student = students.get(student_id)
        if student is None:
            student = students[student_id] = {
                'id': student_id,
                'name': row.get('student_name'),
                'index_number': row.get('index_number'),
                'current_class': row.get('current_class'),
                'marks': [],
                'total': 0.0,
                'average': 0.0,
                'rank': 0,
            }
        if row.get('subject_id') is None:
            continue
        student['marks'].append({
            'subject_id': row['subject_id'],
            'subject_code': row.get('subject_code'),
            'subject_name': row.get('subject_name'),
            'stream': row.get('stream'),
            'marks': _mark(row.get('marks')),
            'is_absent': row.get('mark_status') == 'absent',
            'teacher': row.get('teacher_name') or row.get('teacher_username'),
            'entry_date': row.get('entry_date'),
        })

    for student in students.values():
        student['total'], student['average'] = student_totals(student['marks'])
    return list(students.values())


def build_subject_statistics(entries):
    """
    Per-subject average, count, high/low and band counts over entered marks.

    ``entries`` are mark dicts carrying subject fields; null marks still
    register the subject but do not count towards any statistic.
    """
    subjects = {}
    sums = {}
    for entry in entries:
        subject_id = entry['subject_id']
        stats = subjects.get(subject_id)
        if stats is None:
            stats = subjects[subject_id] = {
                'id': subject_id,
                'code': entry.get('subject_code'),
                'name': entry.get('subject_name'),
                'stream': entry.get('stream'),
                'count': 0,
                'average': 0.0,
                'highest': None,
                'lowest': None,
                'distinction_count': 0,
                'credit_count': 0,
                'pass_count': 0,
                'fail_count': 0,
            }
            sums[subject_id] = 0.0
        value = _mark(entry.get('marks'))
        if value is None:
            continue
        stats['count'] += 1
        sums[subject_id] += value
        stats['highest'] = value if stats['highest'] is None else max(stats['highest'], value)
        stats['lowest'] = value if stats['lowest'] is None else min(stats['lowest'], value)
        stats[f"{band_for(value)}_count"] += 1

    for subject_id, stats in subjects.items():
        if stats['count']:
            stats['average'] = round_half_up(sums[subject_id] / stats['count'])
    return list(subjects.values())


def build_class_summary(students, subjects):
    highest = 0.0
    lowest = 100.0
    has_data = False
    for student in students:
        for entry in student['marks']:
            if entry['marks'] is None:
                continue
            has_data = True
            highest = max(highest, entry['marks'])
            lowest = min(lowest, entry['marks'])

    total_students = len(students)
    class_average = 0.0
    if total_students:
        class_average = round_half_up(sum(s['total'] for s in students) / total_students)
    return {
        'totalStudents': total_students,
        'totalSubjects': len(subjects),
        'classAverage': class_average,
        'highestScore': highest,
        'lowestScore': lowest,
        'hasData': has_data,
    }


def build_term_report(term, rows):
    """Turn term report rows into ranked students, subject stats and a summary."""
    students = assign_ranks(build_student_records(rows))
    entries = [entry for student in students for entry in student['marks']]
    subjects = build_subject_statistics(entries)
    return {
        'term': term,
        'students': students,
        'subjects': subjects,
        'summary': build_class_summary(students, subjects),
    }


def build_grade_distribution(values):
    """Count marks per A/B/C/S/F band; every band is listed, even when empty."""
    values = [float(v) for v in values if v is not None]
    counts = {name: 0 for name, _ in GRADE_DISTRIBUTION_BANDS}
    for value in values:
        counts[band_for(value, GRADE_DISTRIBUTION_BANDS)] += 1
    total = len(values)
    return [
        {
            'grade_band': name,
            'student_count': counts[name],
            'percentage': round_half_up(counts[name] * 100.0 / total) if total else 0.0,
        }
        for name, _ in GRADE_DISTRIBUTION_BANDS
    ]


def build_class_comparison(rows):
    """Per-class mark statistics; rows carry current_class, student_id and marks."""
    classes = {}
    for row in rows:
        name = row.get('current_class')
        item = classes.setdefault(name, {'students': set(), 'values': []})
        item['students'].add(row['student_id'])
        value = _mark(row.get('marks'))
        if value is not None:
            item['values'].append(value)

    comparison = []
    for name in sorted(classes, key=lambda n: n or ''):
        values = classes[name]['values']
        passed = sum(1 for v in values if v >= PASS_MARK)
        comparison.append({
            'current_class': name,
            'student_count': len(classes[name]['students']),
            'class_average': round_half_up(sum(values) / len(values)) if values else 0.0,
            'highest_score': max(values) if values else None,
            'lowest_score': min(values) if values else None,
            'pass_count': passed,
            'fail_count': len(values) - passed,
            'pass_percentage': round_half_up(passed * 100.0 / len(values)) if values else 0.0,
        })
    return comparison


def build_student_progress(rows):
    """Group one student's marks by term, in the order the rows arrive."""
    terms = {}
    for row in rows:
        key = (row.get('exam_year'), row.get('term_number'))
        term = terms.get(key)
        if term is None:
            term = terms[key] = {
                'term_id': row.get('term_id'),
                'term_name': row.get('term_name'),
                'term_number': row.get('term_number'),
                'exam_year': row.get('exam_year'),
                'subjects': [],
                'total_marks': 0.0,
                'average': 0.0,
                'subject_count': 0,
            }
        value = _mark(row.get('marks'))
        term['subjects'].append({
            'subject_name': row.get('subject_name'),
            'subject_code': row.get('subject_code'),
            'stream': row.get('stream'),
            'marks': value,
            'is_absent': row.get('mark_status') == 'absent',
            'teacher_name': row.get('teacher_name'),
            'entry_date': row.get('entry_date'),
        })
        if value is not None:
            term['total_marks'] += value
            term['subject_count'] += 1

    for term in terms.values():
        term['total_marks'] = round_half_up(term['total_marks'])
        if term['subject_count']:
            term['average'] = round_half_up(term['total_marks'] / term['subject_count'])
    return list(terms.values())


def build_class_standing(rows, student_id):
    """
    Where one student stands in their class for a term.

    ``rows`` hold (student_id, marks, stream) for every mark in the class.
    Returns the student's competition rank, the class size and the
    first-place average: the top student's average over non-common marks.
    """
    by_student = {}
    for row in rows:
        marks = by_student.setdefault(row['student_id'], [])
        marks.append({'marks': _mark(row.get('marks')), 'stream': row.get('stream')})

    students = []
    for sid, marks in by_student.items():
        total, average = student_totals(marks)
        students.append({'student_id': sid, 'total': total, 'average': average})
    ranked = assign_ranks(students)

    student_rank = next((s['rank'] for s in ranked if str(s['student_id']) == str(student_id)), None)
    first_average = ranked[0]['average'] if ranked else 0.0
    return {
        'studentRank': student_rank,
        'classSize': len(ranked),
        'firstAverage': first_average,
    }


# ==================== LOADERS ====================

TERM_COLUMNS = 'id, term_number, term_name, exam_month, exam_year, status'

TERM_REPORT_SQL = '''
    SELECT st.id AS student_id, st.index_number, st.name AS student_name, st.current_class,
           s.id AS subject_id, s.subject_code, s.subject_name, s.stream,
           m.marks, m.status AS mark_status, m.entry_date,
           u.username AS teacher_username, u.full_name AS teacher_name
    FROM students st
    CROSS JOIN subjects s
    LEFT JOIN marks m ON m.student_id = st.id AND m.subject_id = s.id AND m.term_id = ?
    LEFT JOIN users u ON m.teacher_id = u.id'''

ENTERED_MARKS_SQL = '''
    SELECT st.id AS student_id, st.current_class,
           s.id AS subject_id, s.subject_code, s.subject_name, s.stream,
           m.marks, m.status AS mark_status
    FROM marks m
    JOIN students st ON m.student_id = st.id
    JOIN subjects s ON m.subject_id = s.id'''


def load_term(cursor, term_id):
    db_execute(cursor, f'SELECT {TERM_COLUMNS} FROM terms WHERE id = ?', (term_id,))
    term = fetch_one(cursor)
    if not term:
        raise NotFoundError('Term not found')
    return term


def report_conditions(class_name=None, grade_level=None, stream_filter=None,
                      include_common=True, academic_year=None):
    """Scope predicates shared by every term-level report query."""
    where = Conditions()
    where.add("st.status = 'active'")
    where.add("s.status = 'active'")
    where.add_if(class_name, 'st.current_class = ?')
    where.add_if(grade_level, 'st.current_class LIKE ?', lambda v: f'{v}%')
    where.add_if(stream_filter, 's.stream = ?')
    if not include_common:
        where.add('LOWER(s.stream) <> LOWER(?)', COMMON_STREAM)
    where.add_if(academic_year, 'st.admission_year = ?')
    return where


def load_term_report(term_id, include_common=True, **filters):
    """Read the term's student x subject grid and aggregate it."""
    where = report_conditions(include_common=include_common, **filters)
    with db_connection() as conn:
        c = conn.cursor()
        term = load_term(c, term_id)
        db_execute(
            c,
            TERM_REPORT_SQL + where.sql()
            + ' ORDER BY st.current_class, st.index_number, s.stream, s.subject_name',
            [term_id] + where.params,
        )
        rows = fetch_all(c)
    report = build_term_report(term, rows)
    logger.info(
        "Term report built: term=%s students=%s subjects=%s",
        term_id, report['summary']['totalStudents'], report['summary']['totalSubjects'],
    )
    return report


def _entered_marks(term_id, where, order_by):
    where.add('m.term_id = ?', term_id)
    where.add('m.marks IS NOT NULL')
    with db_connection() as conn:
        c = conn.cursor()
        load_term(c, term_id)
        db_execute(c, ENTERED_MARKS_SQL + where.sql() + order_by, where.params)
        return fetch_all(c)


def load_subject_analysis(term_id, include_common=True, **filters):
    where = report_conditions(include_common=include_common, **filters)
    rows = _entered_marks(term_id, where, ' ORDER BY s.stream, s.subject_name')
    return build_subject_statistics(rows)


def load_grade_distribution(term_id, subject_id=None, **filters):
    where = report_conditions(**filters)
    where.add_if(subject_id, 's.id = ?')
    rows = _entered_marks(term_id, where, '')
    return build_grade_distribution(row['marks'] for row in rows)


def load_class_comparison(term_id, grade_level=None, include_common=True):
    where = report_conditions(grade_level=grade_level, include_common=include_common)
    rows = _entered_marks(term_id, where, ' ORDER BY st.current_class')
    return build_class_comparison(rows)


def load_student_progress(student_id, exam_year=None):
    where = Conditions()
    where.add('m.student_id = ?', student_id)
    where.add("sub.status = 'active'")
    where.add_if(exam_year, 't.exam_year = ?')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT id, name, index_number, current_class, admission_year FROM students WHERE id = ?',
            (student_id,),
        )
        student = fetch_one(c)
        if not student:
            raise NotFoundError('Student not found')
        db_execute(
            c,
            '''SELECT t.id AS term_id, t.term_name, t.term_number, t.exam_year,
                      sub.subject_name, sub.subject_code, sub.stream,
                      m.marks, m.status AS mark_status, m.entry_date, u.full_name AS teacher_name
               FROM marks m
               JOIN terms t ON m.term_id = t.id
               JOIN subjects sub ON m.subject_id = sub.id
               LEFT JOIN users u ON m.teacher_id = u.id'''
            + where.sql()
            + ' ORDER BY t.exam_year, t.term_number, sub.stream, sub.subject_name',
            where.params,
        )
        rows = fetch_all(c)
    return {'student': student, 'progress': build_student_progress(rows)}


def load_academic_record(student_id, term_id, academic_year=None, class_name=None):
    """One student's term marks with class standing and attendance."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT id, name, index_number, current_class, admission_year FROM students WHERE id = ?',
            (student_id,),
        )
        student = fetch_one(c)
        if not student:
            raise NotFoundError('Student not found')
        term = load_term(c, term_id)
        class_name = class_name or student['current_class']

        db_execute(
            c,
            '''SELECT m.subject_id, s.subject_code, s.subject_name, s.stream,
                      m.marks, m.status AS mark_status
               FROM marks m
               JOIN subjects s ON m.subject_id = s.id
               WHERE m.student_id = ? AND m.term_id = ?
               ORDER BY s.stream, s.subject_name''',
            (student_id, term_id),
        )
        marks = fetch_all(c)

        highest = {}
        subject_ids = [row['subject_id'] for row in marks]
        if subject_ids:
            db_execute(
                c,
                '''SELECT subject_id, MAX(marks) AS highest
                   FROM marks
                   WHERE term_id = ? AND subject_id = ANY(?)
                   GROUP BY subject_id''',
                (term_id, subject_ids),
            )
            highest = {row['subject_id']: row['highest'] or 0 for row in fetch_all(c)}

        attendance_where = Conditions()
        attendance_where.add('student_id = ?', student_id)
        attendance_where.add('term_id = ?', term_id)
        attendance_where.add_if(academic_year, 'academic_year = ?')
        db_execute(
            c,
            'SELECT * FROM student_term_attendance' + attendance_where.sql()
            + ' ORDER BY academic_year DESC LIMIT 1',
            attendance_where.params,
        )
        attendance = fetch_one(c)

        db_execute(
            c,
            '''SELECT st.id AS student_id, m.marks, s.stream
               FROM students st
               JOIN marks m ON m.student_id = st.id
               JOIN subjects s ON m.subject_id = s.id
               WHERE st.current_class = ? AND st.status = 'active' AND m.term_id = ?''',
            (class_name, term_id),
        )
        class_rows = fetch_all(c)

    for row in marks:
        row['is_absent'] = row.pop('mark_status', None) == 'absent'
    return {
        'student': student,
        'term': term,
        'marks': marks,
        'highestMarks': highest,
        'attendance': attendance,
        'classStats': build_class_standing(class_rows, student_id),
    }
