from flask import Blueprint, jsonify, g

from .auth import login_required
from .services import lifecycle, recovery
from .services.erasure import erase_account
from .validation import json_payload

settings_bp = Blueprint('settings', __name__)


@settings_bp.route('/', methods=['GET'])
@login_required
def get_settings():
    settings = lifecycle.get_settings(g.user)
    return jsonify(settings.to_dict()), 200


@settings_bp.route('/', methods=['PATCH'])
@login_required
def update_settings():
    """Update user settings.

    Expected JSON payload:
    {
        "trash_retention_days": int (0-365)
    }

    Files already in the trash keep the purge date they were given.
    """
    data = json_payload(required=('trash_retention_days',))
    settings = lifecycle.update_retention(g.user, data['trash_retention_days'])
    return jsonify(dict(settings.to_dict(), message='Settings updated')), 200


@settings_bp.route('/security-questions', methods=['GET'])
@login_required
def list_security_questions():
    return jsonify({'questions': recovery.list_questions(g.user)}), 200


@settings_bp.route('/security-questions', methods=['POST'])
@login_required
def add_security_question():
    """Add a security question for account recovery.

    Expected JSON payload:
    {
        "question": str (10-500 chars),
        "answer": str (2-200 chars, compared case-insensitively)
    }
    """
    data = json_payload(required=('question', 'answer'))
    question = recovery.add_question(g.user, data['question'], data['answer'])
    return jsonify({
        'message': 'Security question added',
        'question': question.to_dict()
    }), 201


@settings_bp.route('/security-questions/<question_uuid>', methods=['DELETE'])
@login_required
def delete_security_question(question_uuid):
    recovery.delete_question(g.user, question_uuid)
    return jsonify({'message': 'Security question deleted'}), 200


@settings_bp.route('/security-questions/verify', methods=['POST'])
@login_required
def verify_security_question():
    data = json_payload(required=('question_uuid', 'answer'))
    valid = recovery.verify_question(g.user, data['question_uuid'], data['answer'])
    return jsonify({'valid': valid}), 200


@settings_bp.route('/account', methods=['DELETE'])
@login_required
def delete_account():
    """Erase the current account and everything it owns. Irreversible.

    Returns the erasure report. A report with "completed": false means the
    metadata transaction was rolled back; the account stays locked and the
    erasure can be run again.
    """
    report = erase_account(g.user)
    status = 200 if report.completed else 500
    return jsonify(report.to_dict()), status
