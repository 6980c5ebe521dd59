"""Core vault operations.

Every operation takes the verified caller (a User resolved by the session
layer) as its first argument; nothing here reads request state.
"""
from .. import db
from ..errors import AuthError, NotFoundError, ValidationError
from ..models import User, USER_ACTIVE


def ensure_active(caller):
    """Reject callers whose account is gone or is being erased.

    The status is read fresh from the database, so an erasure that started
    after the caller's session was resolved still wins.
    """
    if caller is None:
        raise AuthError()
    status = db.session.query(User.status).filter(User.id == caller.id).scalar()
    if status != USER_ACTIVE:
        raise AuthError('Account is not active')


def require_identity(user):
    if user.identity is None:
        raise ValidationError('Register your public keys before sharing or uploading')


def find_recipient(recipient_uuid):
    """A user that can receive sealed keys: exists, active, with a registered identity."""
    recipient = User.query.filter_by(uuid=recipient_uuid).first() if recipient_uuid else None
    if not recipient or recipient.identity is None or recipient.status != USER_ACTIVE:
        raise NotFoundError("Recipient not found or hasn't set up encryption")
    return recipient
