from flask import current_app
from sqlalchemy.exc import IntegrityError

from .. import db
from ..envelope import decode_public_key
from ..errors import ConflictError, NotFoundError
from ..models import Identity, User
from . import ensure_active


def register_identity(caller, x25519_public_key, ed25519_public_key):
    """Register the caller's public key pair. A user registers exactly once."""
    ensure_active(caller)
    x25519_raw = decode_public_key(x25519_public_key, 'x25519', 'x25519_public_key')
    ed25519_raw = decode_public_key(ed25519_public_key, 'ed25519', 'ed25519_public_key')

    if db.session.get(Identity, caller.id) is not None:
        raise ConflictError('Keypair already registered')

    identity = Identity(
        user_id=caller.id,
        x25519_public_key=x25519_raw,
        ed25519_public_key=ed25519_raw
    )
    db.session.add(identity)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Keypair already registered')
    current_app.logger.info(f"Registered identity keys for user {caller.uuid}")
    return identity


def get_identity(user_uuid):
    user = User.query.filter_by(uuid=user_uuid).first()
    if not user or not user.identity:
        raise NotFoundError('User keypair not found')
    return user, user.identity


def search_users(email):
    users = User.query.filter_by(email=email).limit(10).all()
    return [
        dict(user.to_dict(), has_identity=user.identity is not None)
        for user in users
    ]
