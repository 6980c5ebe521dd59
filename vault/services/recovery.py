"""Knowledge-based account recovery.

Per attempt: NO_TOKEN -> CHALLENGED (questions shown) -> VERIFIED (token
issued) -> REDEEMED | EXPIRED.

Answers are normalized (trimmed, lower-cased) and stored only as salted slow
hashes. Every failure on the unauthenticated path answers with the same
generic message, so responses never reveal whether an email is registered or
which answer was wrong.
"""
import hmac
import secrets
from datetime import timedelta

from flask import current_app
from werkzeug.security import generate_password_hash, check_password_hash

from .. import db
from ..auth import hash_password
from ..errors import AuthError, ConflictError, ExpiredError, NotFoundError, ValidationError
from ..models import (
    RecoveryToken, SecurityQuestion, Session, User, utcnow,
    MAX_SECURITY_QUESTIONS, USER_ACTIVE,
)
from ..validation import parse_payload, require_string, validate_password
from . import ensure_active

GENERIC_RECOVERY_MESSAGE = 'If this email exists, security questions will be shown'
NO_QUESTIONS_MESSAGE = 'No security questions configured for this account'
INVALID_ANSWERS_MESSAGE = 'Invalid answers'
INVALID_TOKEN_MESSAGE = 'Invalid or expired recovery token'


def normalize_answer(answer):
    return answer.strip().lower()


def hash_answer(answer):
    return generate_password_hash(
        normalize_answer(answer),
        method=current_app.config['ANSWER_HASH_METHOD'],
        salt_length=16
    )


def check_answer(answer_hash, candidate):
    """Constant-time check of a candidate answer against a stored hash."""
    if not isinstance(candidate, str):
        return False
    return check_password_hash(answer_hash, normalize_answer(candidate))


def _burn_hash_time(candidate):
    # Unknown accounts cost the same hashing work as known ones.
    check_answer(hash_answer('placeholder answer'), candidate or '')


def add_question(caller, question_text, answer):
    ensure_active(caller)
    require_string(question_text, 'question', min_length=10, max_length=500)
    require_string(answer, 'answer', min_length=2, max_length=200)
    if len(normalize_answer(answer)) < 2:
        raise ValidationError('answer must be at least 2 characters')

    existing = SecurityQuestion.query.filter_by(user_id=caller.id).count()
    if existing >= MAX_SECURITY_QUESTIONS:
        raise ConflictError(f'Maximum of {MAX_SECURITY_QUESTIONS} security questions allowed')

    question = SecurityQuestion(
        user_id=caller.id,
        question_text=question_text,
        answer_hash=hash_answer(answer)
    )
    db.session.add(question)
    db.session.commit()
    current_app.logger.info(f"Security question added for user {caller.uuid}")
    return question


def list_questions(caller):
    ensure_active(caller)
    questions = (SecurityQuestion.query
                 .filter_by(user_id=caller.id)
                 .order_by(SecurityQuestion.created_at)
                 .all())
    return [question.to_dict() for question in questions]


def delete_question(caller, question_uuid):
    ensure_active(caller)
    removed = SecurityQuestion.query.filter_by(uuid=question_uuid, user_id=caller.id).delete()
    db.session.commit()
    if not removed:
        raise NotFoundError('Security question not found')


def verify_question(caller, question_uuid, candidate_answer):
    """Check one answer. Returns a bool and never exposes the stored hash."""
    ensure_active(caller)
    question = SecurityQuestion.query.filter_by(uuid=question_uuid, user_id=caller.id).first()
    if not question:
        raise NotFoundError('Security question not found')
    return check_answer(question.answer_hash, candidate_answer)


def _recoverable_user(email):
    if not isinstance(email, str):
        return None
    user = User.query.filter_by(email=email).first()
    if not user or user.status != USER_ACTIVE:
        return None
    return user


def list_questions_for_recovery(email):
    user = _recoverable_user(email)
    if user is None:
        return {'questions': [], 'message': GENERIC_RECOVERY_MESSAGE}

    questions = (SecurityQuestion.query
                 .filter_by(user_id=user.id)
                 .order_by(SecurityQuestion.created_at)
                 .all())
    if not questions:
        return {'questions': [], 'message': NO_QUESTIONS_MESSAGE}
    return {
        'questions': [{'question_uuid': q.uuid, 'question': q.question_text} for q in questions],
    }


def verify_all_and_issue_token(email, answers, now=None):
    """Check an answer for every registered question, then mint a recovery token.

    Any missing, extra or wrong answer fails the whole attempt with the same
    AuthError. A new token replaces any token still outstanding for the email.
    """
    if not isinstance(answers, list) or not answers:
        raise ValidationError('answers must be a non-empty list')
    supplied = {}
    for entry in answers:
        parse_payload(entry, required=('question_uuid',), optional=('answer',))
        supplied[entry['question_uuid']] = entry.get('answer')

    user = _recoverable_user(email)
    if user is None:
        _burn_hash_time(next(iter(supplied.values())))
        raise AuthError(INVALID_ANSWERS_MESSAGE)

    questions = SecurityQuestion.query.filter_by(user_id=user.id).all()
    if not questions:
        _burn_hash_time(next(iter(supplied.values())))
        raise AuthError(INVALID_ANSWERS_MESSAGE)

    # Check every question, so timing does not depend on which answer failed.
    all_correct = set(supplied) == {q.uuid for q in questions}
    for question in questions:
        if not check_answer(question.answer_hash, supplied.get(question.uuid)):
            all_correct = False

    if not all_correct:
        current_app.logger.info("Security answers verification failed")
        raise AuthError(INVALID_ANSWERS_MESSAGE)

    now = now or utcnow()
    ttl = timedelta(minutes=current_app.config['RECOVERY_TOKEN_TTL_MINUTES'])
    RecoveryToken.query.filter_by(identifier=user.email).delete()
    token = RecoveryToken(
        identifier=user.email,
        token_value=secrets.token_hex(32),
        expires_at=now + ttl
    )
    db.session.add(token)
    db.session.commit()
    current_app.logger.info(f"Recovery token issued for user {user.uuid}")
    return {'recovery_token': token.token_value, 'expires_at': token.expires_at.isoformat()}


def _find_token(email, token_value):
    if not isinstance(email, str) or not isinstance(token_value, str):
        return None
    candidates = RecoveryToken.query.filter_by(identifier=email).all()
    match = None
    for candidate in candidates:
        if hmac.compare_digest(candidate.token_value.encode(), token_value.encode()):
            match = candidate
    return match


def reset_password(email, token_value, new_password, now=None):
    """Redeem a recovery token: set the new password, then burn the token and every session."""
    validate_password(new_password)
    now = now or utcnow()

    token = _find_token(email, token_value)
    if token is None:
        raise AuthError(INVALID_TOKEN_MESSAGE)
    if now > token.expires_at:
        db.session.delete(token)
        db.session.commit()
        raise ExpiredError(INVALID_TOKEN_MESSAGE)

    user = _recoverable_user(email)
    if user is None or user.account is None:
        raise AuthError(INVALID_TOKEN_MESSAGE)

    user.account.password_hash = hash_password(new_password)
    db.session.delete(token)
    Session.query.filter_by(user_id=user.id).delete()
    db.session.commit()
    current_app.logger.info(f"Password reset via recovery for user {user.uuid}")


def purge_expired_tokens(now=None):
    now = now or utcnow()
    removed = RecoveryToken.query.filter(RecoveryToken.expires_at < now).delete(synchronize_session=False)
    db.session.commit()
    return removed
