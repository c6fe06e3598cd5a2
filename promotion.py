"""Move students between classes and keep a promotion history."""

import logging

import psycopg2

import config
from db import db_execute, fetch_all, query_all, query_one, savepoint, transaction
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def parse_student_ids(student_ids):
    if not isinstance(student_ids, list) or not student_ids:
        raise ValidationError('Student IDs must be a non-empty list')
    parsed = []
    for value in student_ids:
        if isinstance(value, bool):
            raise ValidationError('Student IDs must be integers')
        try:
            parsed.append(int(value))
        except (TypeError, ValueError):
            raise ValidationError('Student IDs must be integers')
    # Keep first-seen order, drop repeats.
    return list(dict.fromkeys(parsed))


def _record_history(c, promoted, from_class, to_class, academic_year, promoted_by):
    for student in promoted:
        db_execute(
            c,
            '''INSERT INTO class_promotions
                   (student_id, from_class, to_class, academic_year, promoted_by, promotion_date)
               VALUES (?, ?, ?, ?, ?, NOW())''',
            (student['id'], from_class, to_class, academic_year, promoted_by),
        )


def promote_students(identity, student_ids, from_class, to_class, academic_year, strict=None):
    """
    Move the listed students from ``from_class`` to ``to_class``.

    Only students still in ``from_class`` are moved, so a stale client list
    cannot drag students out of a class they already left. History rows are
    written in the same transaction inside a savepoint: when ``strict`` is
    off (the default, see PROMOTION_AUDIT_STRICT) a failed history insert is
    logged and reported as ``historyRecorded: False`` while the class change
    still commits; when on, the whole promotion is rolled back.
    """
    student_ids = parse_student_ids(student_ids)
    from_class = (from_class or '').strip()
    to_class = (to_class or '').strip()
    if not from_class or not to_class:
        raise ValidationError('Both source and destination classes are required')
    if from_class == to_class:
        raise ValidationError('Source and destination classes must differ')
    if strict is None:
        strict = config.PROMOTION_AUDIT_STRICT

    history_recorded = True
    with transaction() as c:
        db_execute(
            c,
            '''UPDATE students SET current_class = ?, updated_at = NOW()
               WHERE id = ANY(?) AND current_class = ?
               RETURNING id, name, index_number, current_class''',
            (to_class, student_ids, from_class),
        )
        promoted = fetch_all(c)
        if promoted:
            try:
                with savepoint(c, 'promotion_history'):
                    _record_history(c, promoted, from_class, to_class, academic_year, identity.user_id)
            except psycopg2.Error as exc:
                if strict:
                    raise
                history_recorded = False
                logger.error(
                    "Promotion history not recorded for %s students (%s -> %s): %s",
                    len(promoted), from_class, to_class, exc,
                )

    promoted_ids = {row['id'] for row in promoted}
    skipped = [sid for sid in student_ids if sid not in promoted_ids]
    logger.info(
        "%s promoted %s students from %s to %s (%s skipped)",
        identity.username, len(promoted), from_class, to_class, len(skipped),
    )
    return {
        'promoted': promoted,
        'promotedCount': len(promoted),
        'skipped': skipped,
        'historyRecorded': history_recorded,
    }


def promotion_history(student_id):
    if not query_one('SELECT id FROM students WHERE id = ?', (student_id,)):
        raise NotFoundError('Student not found')
    return query_all(
        '''SELECT p.id, p.student_id, p.from_class, p.to_class, p.academic_year,
                  p.promotion_date, u.full_name AS promoted_by
           FROM class_promotions p
           LEFT JOIN users u ON p.promoted_by = u.id
           WHERE p.student_id = ?
           ORDER BY p.promotion_date DESC, p.id DESC''',
        (student_id,),
    )
