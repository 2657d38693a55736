"""Flask-WTF forms for the dashboard and the public ticket page."""
from flask_wtf import FlaskForm
from wtforms import PasswordField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Regexp

try:
    from .masks import CNPJ_PATTERN, PHONE_PATTERN, normalize_cnpj, normalize_phone_number
    from .utils import EMAIL_RE
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from masks import CNPJ_PATTERN, PHONE_PATTERN, normalize_cnpj, normalize_phone_number
    from utils import EMAIL_RE


def strip_filter(value):
    return value.strip() if isinstance(value, str) else value


class _BaseForm(FlaskForm):
    class Meta:
        # The project already enforces CSRF globally in app.before_request.
        csrf = False


_email_validators = [
    DataRequired(message='The email field is required.'),
    Regexp(EMAIL_RE, message='Enter an email in a valid format.'),
    Length(max=200),
]


class CustomerForm(_BaseForm):
    email = StringField('Email', filters=[strip_filter], validators=_email_validators)
    name = StringField(
        'Name',
        filters=[strip_filter],
        validators=[DataRequired(message='The name field is required.'), Length(max=200)],
    )
    phone = StringField(
        'Phone',
        filters=[normalize_phone_number],
        validators=[
            DataRequired(message='The phone field is required.'),
            Regexp(PHONE_PATTERN, message='The phone field must be in the format (xx) xxxxx-xxxx.'),
        ],
    )
    cnpj = StringField(
        'CNPJ',
        filters=[normalize_cnpj],
        validators=[
            DataRequired(message='The CNPJ field is required.'),
            Regexp(CNPJ_PATTERN, message='The CNPJ field must be in the format xx.xxx.xxx/xxxx-xx.'),
        ],
    )

    def customer_fields(self):
        return {
            'email': self.email.data,
            'name': self.name.data,
            'phone': self.phone.data,
            'cnpj': self.cnpj.data,
        }


class LoginForm(_BaseForm):
    username = StringField('Username', filters=[strip_filter], validators=[DataRequired(), Length(max=80)])
    password = PasswordField('Password', validators=[DataRequired()])


class TicketForm(_BaseForm):
    customer_id = SelectField(
        'Customer',
        coerce=int,
        validate_choice=True,
        validators=[DataRequired(message='Select a customer.')],
    )
    name = StringField(
        'Title',
        filters=[strip_filter],
        validators=[DataRequired(message='The title field is required.'), Length(max=200)],
    )
    description = TextAreaField(
        'Description',
        filters=[strip_filter],
        validators=[DataRequired(message='The description field is required.'), Length(max=10000)],
    )


class CustomerLookupForm(_BaseForm):
    email = StringField('Customer email', filters=[strip_filter], validators=_email_validators)


class OpenTicketForm(_BaseForm):
    name = StringField(
        'Title',
        filters=[strip_filter],
        validators=[DataRequired(message='The title field is required.'), Length(max=200)],
    )
    description = TextAreaField(
        'Describe the problem',
        filters=[strip_filter],
        validators=[DataRequired(message='The description field is required.'), Length(max=10000)],
    )
