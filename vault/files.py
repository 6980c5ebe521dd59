from flask import Blueprint, jsonify, g, current_app

from .auth import login_required
from .envelope import encode_sealed
from .errors import ValidationError
from .services import lifecycle, sharing
from .validation import json_payload

files_bp = Blueprint('files', __name__)


@files_bp.route('/upload', methods=['POST'])
@login_required
def upload_file():
    """Upload an encrypted file to the server.

    Expected JSON payload:
    {
        "file_name": str,
        "enc_file_ciphertext": str (base64 encoded),
        "mime_type": str,
        "file_nonce": str (base64 encoded),
        "sealed_dek": str (base64 encoded, DEK sealed to the uploader's own key)
    }

    Returns:
        {
            "message": str,
            "file": {...}
        }

    Error Responses:
        400: Missing required fields or invalid base64 encoding
        502: The blob store rejected the upload
    """
    data = json_payload(
        required=('file_name', 'enc_file_ciphertext', 'file_nonce', 'sealed_dek'),
        optional=('mime_type',)
    )
    new_file = lifecycle.complete_upload(
        g.user,
        filename=data['file_name'],
        mime_type=data.get('mime_type'),
        enc_file_ciphertext=data['enc_file_ciphertext'],
        file_nonce=data['file_nonce'],
        sealed_dek=data['sealed_dek']
    )
    return jsonify({
        'message': 'File uploaded successfully',
        'file': new_file.to_dict()
    }), 201


@files_bp.route('/', methods=['GET'])
@login_required
def list_files():
    """Live files the current user can open through a personal grant."""
    return jsonify({'files': lifecycle.list_files(g.user)}), 200


@files_bp.route('/<file_uuid>/download', methods=['GET'])
@login_required
def download_file(file_uuid):
    """Download an encrypted file together with every key path the caller holds.

    Returns:
        {
            "file": {...},
            "enc_file_ciphertext": str (base64),
            "file_nonce": str (base64),
            "sealed_dek": str | null,
            "folder_paths": [
                {
                    "folder_uuid": str,
                    "sealed_folder_key": str,
                    "dek_sealed_under_folder_key": str,
                    "wrapping_nonce": str
                }
            ]
        }
    """
    file, key_material = sharing.key_material_for(g.user, file_uuid)
    ciphertext = lifecycle.read_blob(file)
    current_app.logger.info(f"User {g.user.uuid} downloaded file {file.uuid}")
    return jsonify(dict(
        key_material,
        file=file.to_dict(),
        enc_file_ciphertext=encode_sealed(ciphertext),
        file_nonce=encode_sealed(file.content_nonce)
    )), 200


@files_bp.route('/<file_uuid>', methods=['DELETE'])
@login_required
def trash_file(file_uuid):
    """Move a file to the trash. It is purged once the owner's retention window passes."""
    file = lifecycle.soft_delete(g.user, file_uuid)
    return jsonify({
        'message': 'File moved to trash',
        'file': file.to_dict()
    }), 200


@files_bp.route('/<file_uuid>/restore', methods=['POST'])
@login_required
def restore_file(file_uuid):
    file = lifecycle.restore(g.user, file_uuid)
    return jsonify({
        'message': 'File restored',
        'file': file.to_dict()
    }), 200


@files_bp.route('/<file_uuid>/permanent', methods=['DELETE'])
@login_required
def delete_file_permanently(file_uuid):
    lifecycle.permanent_delete(g.user, file_uuid)
    return jsonify({'message': 'File permanently deleted'}), 200


@files_bp.route('/trash', methods=['GET'])
@login_required
def list_trash():
    return jsonify({'files': lifecycle.list_trash(g.user)}), 200


@files_bp.route('/share', methods=['POST'])
@login_required
def share_file():
    """Share a file with another user.

    The caller unseals the DEK locally and reseals it to the recipient's
    X25519 public key; only the sealed result is sent.

    Expected JSON payload:
    {
        "file_uuid": str,
        "recipient_uuid": str,
        "sealed_dek": str (base64 encoded),
        "replace": bool (optional, overwrite an existing grant)
    }

    Error Responses:
        404: File or recipient not found
        409: The recipient already holds a grant
    """
    data = json_payload(required=('file_uuid', 'recipient_uuid', 'sealed_dek'), optional=('replace',))
    replace = data.get('replace', False)
    if not isinstance(replace, bool):
        raise ValidationError('replace must be a boolean')

    grant = sharing.grant_access(
        g.user, data['file_uuid'], data['recipient_uuid'], data['sealed_dek'], replace=replace
    )
    return jsonify({
        'message': 'File shared successfully',
        'file_uuid': data['file_uuid'],
        'recipient_uuid': data['recipient_uuid'],
        'shared_at': grant.shared_at.isoformat()
    }), 201


@files_bp.route('/share-bulk', methods=['POST'])
@login_required
def share_file_bulk():
    """Share one file with several users.

    Expected JSON payload:
    {
        "file_uuid": str,
        "recipients": [{"recipient_uuid": str, "sealed_dek": str}, ...]
    }

    Returns:
        {"shared_count": int, "failed": [{"recipient_uuid": str, "error": str}]}
    """
    data = json_payload(required=('file_uuid', 'recipients'))
    result = sharing.bulk_grant(g.user, data['file_uuid'], data['recipients'])
    return jsonify(result), 200


@files_bp.route('/revoke', methods=['POST'])
@login_required
def revoke_file_access():
    """Revoke a user's grant on a file.

    Expected JSON payload:
    {
        "file_uuid": str,
        "recipient_uuid": str
    }
    """
    data = json_payload(required=('file_uuid', 'recipient_uuid'))
    revoked = sharing.revoke_access(g.user, data['file_uuid'], data['recipient_uuid'])
    message = 'Access revoked successfully' if revoked else 'No access to revoke'
    return jsonify({'message': message, 'revoked': revoked}), 200


@files_bp.route('/<file_uuid>/access-list', methods=['GET'])
@login_required
def file_access_list(file_uuid):
    return jsonify(sharing.list_access(g.user, file_uuid)), 200


@files_bp.route('/shared-with-me', methods=['GET'])
@login_required
def files_shared_with_me():
    return jsonify({'files': sharing.shared_with_me(g.user)}), 200


@files_bp.route('/shared-by-me', methods=['GET'])
@login_required
def files_shared_by_me():
    return jsonify({'shares': sharing.shared_by_me(g.user)}), 200
