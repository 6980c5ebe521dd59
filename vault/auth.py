from flask import Blueprint, request, jsonify, g, current_app
from werkzeug.security import generate_password_hash, check_password_hash
from sqlalchemy.exc import IntegrityError
from datetime import timedelta
import secrets

from . import db, limiter
from .errors import AuthError, ConflictError
from .models import User, Account, Session, utcnow
from .validation import json_payload, require_string, validate_email, validate_password

auth_bp = Blueprint('auth', __name__)


def hash_password(password):
    return generate_password_hash(password, method=current_app.config['PASSWORD_HASH_METHOD'], salt_length=16)


def create_session(user):
    lifetime = timedelta(hours=current_app.config['SESSION_LIFETIME_HOURS'])
    session = Session(user_id=user.id, token=secrets.token_hex(32), expires_at=utcnow() + lifetime)
    db.session.add(session)
    db.session.commit()
    return session


def cleanup_expired_sessions(now=None):
    """Remove sessions past their expiry."""
    now = now or utcnow()
    removed = Session.query.filter(Session.expires_at < now).delete(synchronize_session=False)
    db.session.commit()
    return removed


def verify_request_auth():
    """Resolve the bearer token of the current request to a verified (user, session) pair.

    Identity is only ever taken from a stored session; there is no header that
    names a user directly.
    """
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        raise AuthError('Authentication required: missing bearer token')

    session = Session.query.filter_by(token=token.strip()).first()
    if not session or session.expires_at < utcnow():
        raise AuthError('Authentication failed: invalid or expired session')

    user = session.user
    if user.is_erasing:
        raise AuthError('Authentication failed: account is being deleted')
    return user, session


def login_required(f):
    def decorated_function(*args, **kwargs):
        user, session = verify_request_auth()
        g.user = user
        g.session = session
        return f(*args, **kwargs)
    decorated_function.__name__ = f.__name__
    return decorated_function


@auth_bp.route('/register', methods=['POST'])
@limiter.limit("5 per minute")
def register():
    """Create an account.

    Expected JSON input body structure:
    {
        "username": str,
        "email": str,
        "password": str
    }
    Returns:
    {
        "message": "User registered successfully",
        "user": {"uuid": str, "username": str, "email": str}
    }
    """
    data = json_payload(required=('username', 'email', 'password'))
    username = require_string(data['username'], 'username', min_length=3, max_length=80)
    email = validate_email(data['email'])
    password = validate_password(data['password'])

    existing_user = User.query.filter((User.username == username) | (User.email == email)).first()
    if existing_user:
        if existing_user.username == username:
            raise ConflictError('Username already exists')
        raise ConflictError('Email already exists')

    new_user = User(username=username, email=email)
    db.session.add(new_user)
    try:
        db.session.flush()
        db.session.add(Account(user_id=new_user.id, password_hash=hash_password(password)))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Username or email already exists')

    current_app.logger.info(f"Registered user {new_user.uuid}")
    return jsonify({
        'message': 'User registered successfully',
        'user': new_user.to_dict()
    }), 201


@auth_bp.route('/login', methods=['POST'])
@limiter.limit("5 per minute")
def login():
    """Exchange email and password for a bearer session token.

    Returns:
    {
        "token": str,
        "expires_at": str (ISO 8601),
        "user_uuid": str
    }
    """
    data = json_payload(required=('email', 'password'))
    user = User.query.filter_by(email=data['email']).first()

    if not user or not user.account:
        # Spend the same hashing work as a real check.
        check_password_hash(hash_password('placeholder'), data['password'])
        raise AuthError('Invalid email or password')
    if not check_password_hash(user.account.password_hash, data['password']):
        raise AuthError('Invalid email or password')
    if user.is_erasing:
        raise AuthError('Invalid email or password')

    session = create_session(user)
    return jsonify({
        'token': session.token,
        'expires_at': session.expires_at.isoformat(),
        'user_uuid': user.uuid
    }), 200


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    db.session.delete(g.session)
    db.session.commit()
    return jsonify({'message': 'Logged out'}), 200
