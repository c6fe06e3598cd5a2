"""Immutable report snapshots. Once saved a report can only be read or deleted."""

import logging

from psycopg2.extras import Json

from db import db_execute, fetch_one, query_all, query_one, transaction
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

COLUMNS = ('id', 'term_id', 'class_name', 'academic_year', 'ranking_method', 'generated_by', 'generated_at')
SUMMARY_COLUMNS = ', '.join(f'r.{name}' for name in COLUMNS)


def save_report(identity, term_id, academic_year, ranking_method, report_data, class_name=None):
    if not isinstance(report_data, (dict, list)) or not report_data:
        raise ValidationError('Report data is required')
    with transaction() as c:
        db_execute(c, 'SELECT id FROM terms WHERE id = ?', (term_id,))
        if not c.fetchone():
            raise NotFoundError('Term not found')
        db_execute(
            c,
            f'''INSERT INTO saved_reports
                    (term_id, class_name, academic_year, ranking_method, report_data, generated_by, generated_at)
                VALUES (?, ?, ?, ?, ?, ?, NOW())
                RETURNING {', '.join(COLUMNS)}''',
            (term_id, class_name or None, academic_year, ranking_method, Json(report_data), identity.user_id),
        )
        report = fetch_one(c)
    logger.info("Report %s saved by %s", report['id'], identity.username)
    return report


def list_reports(identity):
    return query_all(
        f'''SELECT {SUMMARY_COLUMNS}, t.term_name
            FROM saved_reports r
            LEFT JOIN terms t ON r.term_id = t.id
            WHERE r.generated_by = ?
            ORDER BY r.generated_at DESC''',
        (identity.user_id,),
    )


def get_report(identity, report_id):
    report = query_one(
        f'''SELECT {SUMMARY_COLUMNS}, r.report_data, t.term_name
            FROM saved_reports r
            LEFT JOIN terms t ON r.term_id = t.id
            WHERE r.id = ? AND r.generated_by = ?''',
        (report_id, identity.user_id),
    )
    if not report:
        raise NotFoundError('Report not found')
    return report


def delete_report(identity, report_id):
    with transaction() as c:
        db_execute(
            c,
            'DELETE FROM saved_reports WHERE id = ? AND generated_by = ? RETURNING id',
            (report_id, identity.user_id),
        )
        if not c.fetchone():
            raise NotFoundError('Report not found')
    logger.info("Report %s deleted by %s", report_id, identity.username)
