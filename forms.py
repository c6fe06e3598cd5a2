"""Request payload forms. FlaskForm reads JSON bodies as well as form posts."""

from flask import request
from flask_wtf import FlaskForm
from wtforms import IntegerField, StringField, validators
from wtforms.validators import StopValidation

import config
from errors import ValidationError


class TextField(StringField):
    """StringField that also accepts JSON numbers."""

    def process_formdata(self, valuelist):
        if valuelist:
            value = valuelist[0]
            self.data = value if value is None else str(value)


class WholeNumberField(IntegerField):
    """
    IntegerField for JSON bodies. A null is no value; booleans, fractions
    and non-numeric types are rejected instead of being coerced by ``int()``.
    """

    def process_formdata(self, valuelist):
        if not valuelist:
            return
        value = valuelist[0]
        if value is None or value == '':
            self.data = None
            return
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            self.data = None
            raise ValueError(self.gettext('Not a valid integer value.'))
        try:
            self.data = int(value)
        except (TypeError, ValueError):
            self.data = None
            raise ValueError(self.gettext('Not a valid integer value.'))


class ApiForm(FlaskForm):
    class Meta:
        # Bearer tokens, not cookies, authenticate the API.
        csrf = False


class Present:
    """Like InputRequired, but a submitted 0 counts as present."""

    field_flags = {'required': True}

    def __init__(self, message=None):
        self.message = message

    def __call__(self, form, field):
        if not field.raw_data or field.raw_data[0] is None or field.raw_data[0] == '':
            raise StopValidation(self.message or field.gettext('This field is required.'))


class Nullable(validators.Optional):
    """Optional that also takes a JSON null as no value."""

    def __call__(self, form, field):
        if field.raw_data and field.raw_data[0] is None:
            field.errors[:] = []
            raise StopValidation()
        super().__call__(form, field)


def validate_form(form_class, **kwargs):
    """Instantiate and validate a form, raising ValidationError on failure."""
    if request.is_json and not isinstance(request.get_json(silent=True), dict):
        raise ValidationError('Request body must be a JSON object')
    form = form_class(**kwargs)
    if not form.validate():
        for field_name, messages in form.errors.items():
            if messages:
                label = getattr(form, field_name).label.text
                raise ValidationError(f'{label}: {messages[0]}')
        raise ValidationError()
    return form


def submitted(form, *names):
    """Values of the listed fields that were present in the request body."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    return {name: getattr(form, name).data for name in names if name in payload}


class LoginForm(ApiForm):
    username = TextField('Username', [validators.InputRequired()])
    password = TextField('Password', [validators.InputRequired()])


class ChangePasswordForm(ApiForm):
    username = TextField('Username', [validators.InputRequired()])
    currentPassword = TextField('Current password', [validators.InputRequired()])
    newPassword = TextField('New password', [
        validators.InputRequired(),
        validators.Length(min=config.MIN_PASSWORD_LENGTH,
                          message=f'Must be at least {config.MIN_PASSWORD_LENGTH} characters long'),
    ])


class TermForm(ApiForm):
    term_number = WholeNumberField('Term number', [
        Present(),
        validators.NumberRange(min=1, max=3, message='Term number must be 1, 2, or 3'),
    ])
    term_name = TextField('Term name', [validators.InputRequired(), validators.Length(max=100)])
    exam_month = WholeNumberField('Exam month', [Nullable(), validators.NumberRange(min=1, max=12)])
    exam_year = WholeNumberField('Exam year', [Present(), validators.NumberRange(min=1900, max=2999)])


class TermUpdateForm(ApiForm):
    term_number = WholeNumberField('Term number', [
        validators.Optional(),
        validators.NumberRange(min=1, max=3, message='Term number must be 1, 2, or 3'),
    ])
    term_name = TextField('Term name', [validators.Optional(), validators.Length(max=100)])
    exam_month = WholeNumberField('Exam month', [Nullable(), validators.NumberRange(min=1, max=12)])
    exam_year = WholeNumberField('Exam year', [validators.Optional(), validators.NumberRange(min=1900, max=2999)])


class CloneTermForm(ApiForm):
    exam_year = WholeNumberField('Exam year', [Present(), validators.NumberRange(min=1900, max=2999)])


class StudentForm(ApiForm):
    index_number = TextField('Index number', [validators.InputRequired(), validators.Length(max=50)])
    name = TextField('Name', [validators.InputRequired(), validators.Length(max=200)])
    current_class = TextField('Class', [validators.InputRequired(), validators.Length(max=50)])
    admission_year = WholeNumberField('Admission year', [Nullable(), validators.NumberRange(min=1900, max=2999)])


class StudentUpdateForm(ApiForm):
    index_number = TextField('Index number', [validators.Optional(), validators.Length(max=50)])
    name = TextField('Name', [validators.Optional(), validators.Length(max=200)])
    current_class = TextField('Class', [validators.Optional(), validators.Length(max=50)])
    admission_year = WholeNumberField('Admission year', [Nullable(), validators.NumberRange(min=1900, max=2999)])
    status = TextField('Status', [validators.Optional(), validators.AnyOf(['active', 'inactive'])])


class SubjectForm(ApiForm):
    subject_code = TextField('Subject code', [validators.InputRequired(), validators.Length(max=20)])
    subject_name = TextField('Subject name', [validators.InputRequired(), validators.Length(max=100)])
    stream = TextField('Stream', [validators.InputRequired(), validators.Length(max=50)])


class SubjectUpdateForm(ApiForm):
    subject_code = TextField('Subject code', [validators.Optional(), validators.Length(max=20)])
    subject_name = TextField('Subject name', [validators.Optional(), validators.Length(max=100)])
    stream = TextField('Stream', [validators.Optional(), validators.Length(max=50)])
    status = TextField('Status', [validators.Optional(), validators.AnyOf(['active', 'inactive'])])


ROLE_CHOICES = ['admin', 'teacher', 'coordinator']


class UserForm(ApiForm):
    username = TextField('Username', [validators.InputRequired(), validators.Length(min=3, max=50)])
    password = TextField('Password', [
        validators.InputRequired(),
        validators.Length(min=config.MIN_PASSWORD_LENGTH),
    ])
    full_name = TextField('Full name', [validators.Optional(), validators.Length(max=200)])
    role = TextField('Role', [validators.InputRequired(), validators.AnyOf(ROLE_CHOICES)])
    assigned_class = TextField('Assigned class', [validators.Optional(), validators.Length(max=50)])


class UserUpdateForm(ApiForm):
    full_name = TextField('Full name', [validators.Optional(), validators.Length(max=200)])
    role = TextField('Role', [validators.Optional(), validators.AnyOf(ROLE_CHOICES)])
    assigned_class = TextField('Assigned class', [validators.Optional(), validators.Length(max=50)])


class DailyAttendanceForm(ApiForm):
    date = TextField('Date', [
        validators.InputRequired(),
        validators.Regexp(r'^\d{4}-\d{2}-\d{2}$', message='Use YYYY-MM-DD'),
    ])
    class_name = TextField('Class', [validators.InputRequired(), validators.Length(max=50)])
    boys = WholeNumberField('Boys', [Present(), validators.NumberRange(min=0)])
    girls = WholeNumberField('Girls', [Present(), validators.NumberRange(min=0)])


class AttendanceDaysForm(ApiForm):
    total_school_days = WholeNumberField('Total school days', [Present()])
    attended_days = WholeNumberField('Attended days', [Present()])


class SavedReportForm(ApiForm):
    termId = WholeNumberField('Term', [Present()])
    className = TextField('Class', [validators.Optional(), validators.Length(max=50)])
    academicYear = TextField('Academic year', [validators.InputRequired(), validators.Length(max=20)])
    rankingMethod = TextField('Ranking method', [validators.InputRequired(), validators.Length(max=50)])


class PromotionForm(ApiForm):
    fromClass = TextField('From class', [validators.InputRequired(), validators.Length(max=50)])
    toClass = TextField('To class', [validators.InputRequired(), validators.Length(max=50)])
    academicYear = TextField('Academic year', [validators.InputRequired(), validators.Length(max=20)])
