"""
School report API.

One Flask app exposes every route. Handlers validate input, call into the
domain modules and wrap the result in a ``{"success": true, ...}``
envelope; every ApiError becomes ``{"success": false, "error": ...}``.
"""

import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

import attendance
import config
import db
import marks
import promotion
import reports
import roster
import saved_reports
import terms
import users
from auth import Role, can_access_class, current_identity, login_required, public_user, roles_required, scoped_class
from errors import ApiError, AuthorizationError, InternalError, ValidationError
from forms import (
    AttendanceDaysForm,
    ChangePasswordForm,
    CloneTermForm,
    DailyAttendanceForm,
    LoginForm,
    PromotionForm,
    SavedReportForm,
    StudentForm,
    StudentUpdateForm,
    SubjectForm,
    SubjectUpdateForm,
    TermForm,
    TermUpdateForm,
    UserForm,
    UserUpdateForm,
    submitted,
    validate_form,
)

app = Flask(__name__)
app.secret_key = config.SECRET_KEY
app.json.sort_keys = False

# Set up logging
logging.basicConfig(filename=config.LOG_FILE, level=config.LOG_LEVEL,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if config.ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")


def ok(status_code=200, **payload):
    return jsonify(success=True, **payload), status_code


def json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload


def int_arg(name, required=False):
    raw = (request.args.get(name) or '').strip()
    if not raw:
        if required:
            raise ValidationError(f'{name} is required')
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')


def bool_arg(name, default=True):
    raw = (request.args.get(name) or '').strip().lower()
    if not raw:
        return default
    return raw not in ('0', 'false', 'no')


def text_arg(name):
    return (request.args.get(name) or '').strip() or None


# ==================== ERRORS ====================

@app.errorhandler(ApiError)
def handle_api_error(error):
    if error.status_code >= 500:
        logging.error("%s %s failed: %s", request.method, request.path, error.message)
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error):
    messages = {404: 'Route not found', 405: 'Method not allowed'}
    message = messages.get(error.code, error.description)
    return jsonify(success=False, error=message), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logging.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify(InternalError().to_dict()), 500


# ==================== HEALTH & AUTH ====================

@app.route('/api/health')
def health():
    try:
        info = db.ping()
    except InternalError:
        return jsonify(success=False, status='unhealthy', error='Database unavailable'), 503
    return ok(status='healthy', database='connected', timestamp=info['now'])


@app.route('/api/auth/login', methods=['POST'])
def login():
    form = validate_form(LoginForm)
    return ok(**users.login(form.username.data, form.password.data))


@app.route('/api/auth/change-password', methods=['POST'])
def change_password():
    form = validate_form(ChangePasswordForm)
    result = users.change_password(form.username.data, form.currentPassword.data, form.newPassword.data)
    return ok(message='Password changed successfully', **result)


@app.route('/api/auth/verify', methods=['POST'])
@login_required
def verify_token():
    identity = current_identity()
    return ok(user={
        'id': identity.user_id,
        'username': identity.username,
        'role': identity.role.value,
        'assignedClass': identity.assigned_class,
    })


# ==================== USERS ====================

@app.route('/api/users', methods=['GET'])
@login_required
@roles_required(Role.ADMIN)
def list_users():
    return ok(users=users.list_users())


@app.route('/api/users', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def create_user():
    form = validate_form(UserForm)
    user = users.create_user(
        form.username.data, form.password.data, form.role.data,
        full_name=form.full_name.data or None,
        assigned_class=form.assigned_class.data or None,
    )
    return ok(201, user=public_user(user))


@app.route('/api/users/<int:user_id>', methods=['GET'])
@login_required
@roles_required(Role.ADMIN)
def get_user(user_id):
    return ok(user=users.get_user_by_id(user_id))


@app.route('/api/users/<int:user_id>', methods=['PUT'])
@login_required
@roles_required(Role.ADMIN)
def update_user(user_id):
    form = validate_form(UserUpdateForm)
    fields = submitted(form, 'full_name', 'role', 'assigned_class')
    return ok(user=users.update_user(user_id, fields))


@app.route('/api/users/<int:user_id>', methods=['DELETE'])
@login_required
@roles_required(Role.ADMIN)
def delete_user(user_id):
    users.delete_user(current_identity(), user_id)
    return ok(message='User deleted successfully')


# ==================== STUDENTS ====================

@app.route('/api/students', methods=['GET'])
@login_required
def list_students():
    class_name = scoped_class(current_identity(), text_arg('class'))
    students = roster.list_students(
        class_name=class_name,
        status=text_arg('status') or 'active',
        search=text_arg('search'),
    )
    return ok(students=students)


@app.route('/api/students/<int:student_id>', methods=['GET'])
@login_required
def get_student(student_id):
    student = roster.get_student(student_id)
    if not can_access_class(current_identity(), student['current_class']):
        raise AuthorizationError('You can only access your assigned class')
    return ok(student=student)


@app.route('/api/students', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def create_student():
    form = validate_form(StudentForm)
    student = roster.create_student(
        form.index_number.data, form.name.data, form.current_class.data, form.admission_year.data,
    )
    return ok(201, student=student)


@app.route('/api/students/<int:student_id>', methods=['PUT'])
@login_required
@roles_required(Role.ADMIN)
def update_student(student_id):
    form = validate_form(StudentUpdateForm)
    fields = submitted(form, 'index_number', 'name', 'current_class', 'admission_year', 'status')
    return ok(student=roster.update_student(student_id, fields))


@app.route('/api/students/<int:student_id>', methods=['DELETE'])
@login_required
@roles_required(Role.ADMIN)
def delete_student(student_id):
    roster.deactivate_student(student_id)
    return ok(message='Student deactivated successfully')


@app.route('/api/students/promote-class', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def promote_class():
    form = validate_form(PromotionForm)
    result = promotion.promote_students(
        current_identity(),
        json_body().get('studentIds'),
        form.fromClass.data,
        form.toClass.data,
        form.academicYear.data,
    )
    message = f"{result['promotedCount']} students promoted to {form.toClass.data}"
    return ok(message=message, **result)


@app.route('/api/students/<int:student_id>/promotions', methods=['GET'])
@login_required
def student_promotions(student_id):
    return ok(promotions=promotion.promotion_history(student_id))


# ==================== SUBJECTS & CLASSES ====================

@app.route('/api/subjects', methods=['GET'])
@login_required
def list_subjects():
    return ok(subjects=roster.list_subjects(stream=text_arg('stream'), status=text_arg('status') or 'active'))


@app.route('/api/subjects', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def create_subject():
    form = validate_form(SubjectForm)
    subject = roster.create_subject(form.subject_code.data, form.subject_name.data, form.stream.data)
    return ok(201, subject=subject)


@app.route('/api/subjects/<int:subject_id>', methods=['PUT'])
@login_required
@roles_required(Role.ADMIN)
def update_subject(subject_id):
    form = validate_form(SubjectUpdateForm)
    fields = submitted(form, 'subject_code', 'subject_name', 'stream', 'status')
    return ok(subject=roster.update_subject(subject_id, fields))


@app.route('/api/classes', methods=['GET'])
@login_required
def list_classes():
    return ok(classes=roster.list_classes())


@app.route('/api/classes/<class_name>/subjects', methods=['GET'])
@login_required
def class_subjects(class_name):
    return ok(subjects=roster.class_subjects(class_name, text_arg('academic_year')))


@app.route('/api/classes/<class_name>/subjects', methods=['POST'])
@login_required
@roles_required(Role.ADMIN, Role.COORDINATOR)
def assign_class_subjects(class_name):
    identity = current_identity()
    if not can_access_class(identity, class_name):
        raise AuthorizationError('You can only manage your assigned class')
    payload = json_body()
    subjects = roster.assign_class_subjects(class_name, payload.get('academic_year'), payload.get('subject_ids'))
    return ok(subjects=subjects)


# ==================== MARKS ====================

@app.route('/api/marks', methods=['GET'])
@login_required
def list_marks():
    class_name = scoped_class(current_identity(), text_arg('class'))
    rows = marks.list_marks(
        class_name=class_name,
        student_id=int_arg('student_id'),
        subject_id=int_arg('subject_id'),
        term_id=int_arg('term_id'),
    )
    return ok(marks=rows)


@app.route('/api/marks', methods=['POST'])
@login_required
def enter_mark():
    payload = json_body()
    entry = {key: payload.get(key) for key in ('student_id', 'subject_id', 'marks') if key in payload}
    result = marks.save_marks(current_identity(), payload.get('term_id'), [entry])
    return ok(201 if result['inserted'] else 200, message='Marks saved successfully', **result)


@app.route('/api/marks/bulk', methods=['POST'])
@app.route('/api/marks/bulk-entry', methods=['POST'])
@login_required
def bulk_marks():
    payload = json_body()
    result = marks.save_marks(current_identity(), payload.get('term_id'), payload.get('marksData'))
    total = result['inserted'] + result['updated']
    return ok(message=f'{total} marks saved successfully', **result)


@app.route('/api/marks/<int:mark_id>', methods=['PUT'])
@login_required
def update_mark(mark_id):
    payload = json_body()
    if 'marks' not in payload:
        raise ValidationError('marks is required')
    return ok(mark=marks.update_mark(current_identity(), mark_id, payload['marks']))


@app.route('/api/marks/<int:mark_id>', methods=['DELETE'])
@login_required
@roles_required(Role.ADMIN)
def delete_mark(mark_id):
    marks.delete_mark(mark_id)
    return ok(message='Mark deleted successfully')


@app.route('/api/marks/student/<int:student_id>/term/<int:term_id>', methods=['GET'])
@login_required
def student_term_marks(student_id, term_id):
    return ok(marks=marks.student_term_marks(current_identity(), student_id, term_id))


# ==================== REPORTS ====================

def report_filters():
    return {
        'class_name': text_arg('class_name'),
        'grade_level': text_arg('grade_level'),
        'stream_filter': text_arg('stream_filter'),
        'academic_year': int_arg('academic_year'),
        'include_common': bool_arg('include_common'),
    }


@app.route('/api/reports/term-report', methods=['GET'])
@login_required
def term_report():
    report = reports.load_term_report(int_arg('term_id', required=True), **report_filters())
    return ok(**report)


@app.route('/api/reports/subject-analysis', methods=['GET'])
@login_required
def subject_analysis():
    subjects = reports.load_subject_analysis(int_arg('term_id', required=True), **report_filters())
    return ok(subjects=subjects)


@app.route('/api/reports/grade-distribution', methods=['GET'])
@login_required
def grade_distribution():
    distribution = reports.load_grade_distribution(
        int_arg('term_id', required=True),
        subject_id=int_arg('subject_id'),
        class_name=text_arg('class_name'),
        grade_level=text_arg('grade_level'),
        stream_filter=text_arg('stream_filter'),
    )
    return ok(distribution=distribution)


@app.route('/api/reports/class-comparison', methods=['GET'])
@login_required
def class_comparison():
    classes = reports.load_class_comparison(
        int_arg('term_id', required=True),
        grade_level=text_arg('grade_level'),
        include_common=bool_arg('include_common'),
    )
    return ok(classes=classes)


@app.route('/api/reports/student-progress', methods=['GET'])
@login_required
def student_progress():
    result = reports.load_student_progress(
        int_arg('student_id', required=True),
        exam_year=int_arg('academic_year'),
    )
    return ok(**result)


@app.route('/api/reports/academic-record/<int:student_id>', methods=['GET'])
@login_required
def academic_record(student_id):
    record = reports.load_academic_record(
        student_id,
        int_arg('term_id', required=True),
        academic_year=text_arg('academic_year'),
        class_name=text_arg('class_name'),
    )
    return ok(**record)


# ==================== SAVED REPORTS ====================

@app.route('/api/saved-reports', methods=['GET'])
@login_required
def list_saved_reports():
    return ok(reports=saved_reports.list_reports(current_identity()))


@app.route('/api/saved-reports', methods=['POST'])
@login_required
def save_report():
    form = validate_form(SavedReportForm)
    report = saved_reports.save_report(
        current_identity(),
        form.termId.data,
        form.academicYear.data,
        form.rankingMethod.data,
        json_body().get('reportData'),
        class_name=form.className.data,
    )
    return ok(201, report=report)


@app.route('/api/saved-reports/<int:report_id>', methods=['GET'])
@login_required
def get_saved_report(report_id):
    return ok(report=saved_reports.get_report(current_identity(), report_id))


@app.route('/api/saved-reports/<int:report_id>', methods=['DELETE'])
@login_required
def delete_saved_report(report_id):
    saved_reports.delete_report(current_identity(), report_id)
    return ok(message='Report deleted successfully')


# ==================== ATTENDANCE ====================

@app.route('/api/attendance', methods=['GET'])
@login_required
def list_daily_attendance():
    rows = attendance.list_daily_attendance(
        current_identity(),
        class_name=text_arg('class'),
        date_from=text_arg('from'),
        date_to=text_arg('to'),
    )
    return ok(attendance=rows)


@app.route('/api/attendance', methods=['POST'])
@login_required
@roles_required(Role.TEACHER, Role.ADMIN)
def record_daily_attendance():
    form = validate_form(DailyAttendanceForm)
    identity = current_identity()
    if not can_access_class(identity, form.class_name.data):
        raise AuthorizationError('You can only record attendance for your assigned class')
    row = attendance.record_daily_attendance(
        identity, form.date.data, form.class_name.data, form.boys.data, form.girls.data,
    )
    return ok(201, attendance=row)


@app.route('/api/term-attendance', methods=['GET'])
@login_required
def list_term_attendance():
    class_name = scoped_class(current_identity(), text_arg('class'))
    rows = attendance.list_term_attendance(class_name, int_arg('term_id'), text_arg('academic_year'))
    return ok(records=rows)


@app.route('/api/term-attendance', methods=['POST'])
@login_required
@roles_required(Role.ADMIN, Role.COORDINATOR)
def save_term_attendance():
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        payload = payload.get('records')
    saved = attendance.save_term_attendance(current_identity(), payload)
    return ok(message=f'{saved} attendance records saved', saved=saved)


@app.route('/api/term-attendance/stats', methods=['GET'])
@login_required
def term_attendance_stats():
    class_name = scoped_class(current_identity(), text_arg('class'))
    stats = attendance.term_attendance_stats(class_name, int_arg('term_id'), text_arg('academic_year'))
    return ok(stats=stats)


@app.route('/api/term-attendance/summary', methods=['GET'])
@login_required
def term_attendance_summary():
    summary = attendance.term_attendance_summary(int_arg('term_id'), text_arg('academic_year'))
    return ok(summary=summary)


@app.route('/api/term-attendance/student/<int:student_id>', methods=['GET'])
@login_required
def student_term_attendance(student_id):
    result = attendance.student_term_attendance(student_id, text_arg('academic_year'))
    if not can_access_class(current_identity(), result['student']['current_class']):
        raise AuthorizationError('You can only access your assigned class')
    return ok(**result)


@app.route('/api/term-attendance/calculate', methods=['POST'])
@login_required
def calculate_term_attendance():
    form = validate_form(AttendanceDaysForm)
    values = attendance.calculate_attendance(form.total_school_days.data, form.attended_days.data)
    values['category'] = attendance.attendance_bucket(values['attendance_percentage'])
    return ok(calculation=values)


@app.route('/api/term-attendance/<int:record_id>', methods=['PUT'])
@login_required
@roles_required(Role.ADMIN, Role.COORDINATOR)
def update_term_attendance(record_id):
    form = validate_form(AttendanceDaysForm)
    record = attendance.update_term_attendance(
        current_identity(), record_id, form.total_school_days.data, form.attended_days.data,
    )
    return ok(record=record)


@app.route('/api/term-attendance/<int:record_id>', methods=['DELETE'])
@login_required
@roles_required(Role.ADMIN, Role.COORDINATOR)
def delete_term_attendance(record_id):
    attendance.delete_term_attendance(current_identity(), record_id)
    return ok(message='Attendance record deleted successfully')


# ==================== TERMS ====================

@app.route('/api/terms', methods=['GET'])
@login_required
def list_terms():
    return ok(terms=terms.list_terms(int_arg('exam_year')))


@app.route('/api/terms/current', methods=['GET'])
@login_required
def current_term():
    return ok(term=terms.current_term())


@app.route('/api/terms/<int:term_id>', methods=['GET'])
@login_required
def get_term(term_id):
    return ok(term=terms.get_term(term_id))


@app.route('/api/terms', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def create_term():
    form = validate_form(TermForm)
    term = terms.create_term(
        form.term_number.data, form.term_name.data.strip(), form.exam_month.data, form.exam_year.data,
    )
    return ok(201, term=term)


@app.route('/api/terms/bulk', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def create_year_terms():
    form = validate_form(CloneTermForm)
    created = terms.create_year_terms(form.exam_year.data, json_body().get('terms'))
    return ok(201, terms=created)


@app.route('/api/terms/<int:term_id>', methods=['PUT'])
@login_required
@roles_required(Role.ADMIN)
def update_term(term_id):
    form = validate_form(TermUpdateForm)
    fields = submitted(form, 'term_number', 'term_name', 'exam_month', 'exam_year')
    return ok(term=terms.update_term(term_id, fields))


@app.route('/api/terms/<int:term_id>', methods=['DELETE'])
@login_required
@roles_required(Role.ADMIN)
def delete_term(term_id):
    terms.delete_term(term_id)
    return ok(message='Term deleted successfully')


@app.route('/api/terms/<int:term_id>/set-current', methods=['PUT', 'POST'])
@login_required
@roles_required(Role.ADMIN)
def set_current_term(term_id):
    return ok(term=terms.set_current_term(term_id))


@app.route('/api/terms/<int:term_id>/clone', methods=['POST'])
@login_required
@roles_required(Role.ADMIN)
def clone_term(term_id):
    form = validate_form(CloneTermForm)
    return ok(201, term=terms.clone_term(term_id, form.exam_year.data))


if __name__ == '__main__':
    app.run(debug=False)
