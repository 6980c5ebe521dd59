from flask import Blueprint, jsonify

from . import limiter
from .services import recovery
from .validation import json_payload

recovery_bp = Blueprint('recovery', __name__)


@recovery_bp.route('/questions', methods=['POST'])
@limiter.limit("10 per minute")
def recovery_questions():
    """Start a recovery: list the account's security questions.

    Expected JSON payload:
    {
        "email": str
    }

    The response has the same shape whether or not the email is registered.
    """
    data = json_payload(required=('email',))
    return jsonify(recovery.list_questions_for_recovery(data['email'])), 200


@recovery_bp.route('/verify', methods=['POST'])
@limiter.limit("5 per minute")
def recovery_verify():
    """Answer every security question and receive a short-lived recovery token.

    Expected JSON payload:
    {
        "email": str,
        "answers": [{"question_uuid": str, "answer": str}, ...]
    }

    Returns:
        {
            "recovery_token": str,
            "expires_at": str (ISO 8601)
        }
    """
    data = json_payload(required=('email', 'answers'))
    result = recovery.verify_all_and_issue_token(data['email'], data['answers'])
    return jsonify(dict(result, message='Answers verified')), 200


@recovery_bp.route('/reset-password', methods=['POST'])
@limiter.limit("5 per minute")
def recovery_reset_password():
    """Redeem a recovery token for a new password. Every session of the account ends."""
    data = json_payload(required=('email', 'recovery_token', 'new_password'))
    recovery.reset_password(data['email'], data['recovery_token'], data['new_password'])
    return jsonify({'message': 'Password reset successfully'}), 200
