"""Request payload checks.

Every JSON payload uses one canonical naming convention: snake_case. A payload
that spells a known field in camelCase (or any other unknown field) is
rejected instead of being guessed at.
"""
import re

from flask import request

from .errors import ValidationError

EMAIL_PATTERN = r"[^@]+@[^@]+\.[^@]+"
PASSWORD_PATTERN = r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{12,}$'


def folded_name(name):
    return name.replace('_', '').lower()


def parse_payload(data, required=(), optional=()):
    """Check a decoded JSON object against its canonical field names and return it."""
    if not isinstance(data, dict):
        raise ValidationError('No JSON data provided')

    allowed = set(required) | set(optional)
    unknown = [key for key in data if key not in allowed]
    folded = {folded_name(field) for field in allowed}
    aliased = sorted(key for key in unknown if folded_name(key) in folded)
    if aliased:
        raise ValidationError(
            f'Non-canonical field names: {", ".join(aliased)} (fields are snake_case)'
        )
    if unknown:
        raise ValidationError(f'Unexpected fields: {", ".join(sorted(unknown))}')

    missing = [field for field in required if data.get(field) in (None, '')]
    if missing:
        raise ValidationError(f'Missing required fields: {", ".join(missing)}')
    return data


def json_payload(required=(), optional=()):
    return parse_payload(request.get_json(silent=True), required, optional)


def require_string(value, field, min_length=1, max_length=None):
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a string')
    if len(value) < min_length:
        raise ValidationError(f'{field} must be at least {min_length} characters')
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters')
    return value


def validate_email(email):
    if not isinstance(email, str) or not re.match(EMAIL_PATTERN, email):
        raise ValidationError('Invalid email format')
    return email


def validate_password(password):
    if not isinstance(password, str) or not re.match(PASSWORD_PATTERN, password):
        raise ValidationError('Password must be 12+ chars, with uppercase, lowercase, digit, and special char')
    return password
