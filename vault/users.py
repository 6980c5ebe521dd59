from flask import Blueprint, request, jsonify, g

from .auth import login_required
from .errors import NotFoundError, ValidationError
from .services import ensure_active
from .services.identity import get_identity, register_identity, search_users
from .validation import json_payload, validate_email

users_bp = Blueprint('users', __name__)


@users_bp.route('/identity', methods=['POST'])
@login_required
def register_keys():
    """Register the current user's public keys.

    Expected JSON payload:
    {
        "x25519_public_key": str (base64, raw 32 bytes),
        "ed25519_public_key": str (base64, raw 32 bytes)
    }

    Error Responses:
        400: Keys missing or not valid raw public keys
        409: Keys already registered
    """
    data = json_payload(required=('x25519_public_key', 'ed25519_public_key'))
    identity = register_identity(g.user, data['x25519_public_key'], data['ed25519_public_key'])
    return jsonify(dict(identity.to_dict(), message='Keypair registered successfully')), 201


@users_bp.route('/identity', methods=['GET'])
@login_required
def get_own_keys():
    ensure_active(g.user)
    if g.user.identity is None:
        raise NotFoundError('User keypair not found')
    return jsonify(dict(g.user.identity.to_dict(), user_uuid=g.user.uuid)), 200


@users_bp.route('/<user_uuid>/public-key', methods=['GET'])
@login_required
def get_public_key(user_uuid):
    """Get a user's public keys by UUID.

    Returns:
        {
            "user_uuid": str,
            "username": str,
            "x25519_public_key": str (base64 encoded),
            "ed25519_public_key": str (base64 encoded)
        }
    """
    user, identity = get_identity(user_uuid)
    return jsonify(dict(identity.to_dict(), user_uuid=user.uuid, username=user.username)), 200


@users_bp.route('/search', methods=['GET'])
@login_required
def search():
    email = request.args.get('email', '').strip()
    if not email:
        raise ValidationError('email query parameter is required')
    validate_email(email)
    return jsonify({'users': search_users(email)}), 200
