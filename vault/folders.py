from flask import Blueprint, jsonify, g

from .auth import login_required
from .errors import ValidationError
from .services import folders
from .validation import json_payload

folders_bp = Blueprint('folders', __name__)


def _replace_flag(data):
    replace = data.get('replace', False)
    if not isinstance(replace, bool):
        raise ValidationError('replace must be a boolean')
    return replace


@folders_bp.route('/', methods=['POST'])
@login_required
def create_folder():
    """Create a folder.

    Expected JSON payload:
    {
        "name": str,
        "sealed_folder_key": str (base64, folder key sealed to the owner's own key)
    }
    """
    data = json_payload(required=('name', 'sealed_folder_key'))
    folder = folders.create_folder(g.user, data['name'], data['sealed_folder_key'])
    return jsonify({
        'message': 'Folder created successfully',
        'folder': folder.to_dict()
    }), 201


@folders_bp.route('/', methods=['GET'])
@login_required
def list_folders():
    """Every folder the user holds a key grant for, owned or shared."""
    return jsonify({'folders': folders.list_folders(g.user)}), 200


@folders_bp.route('/<folder_uuid>', methods=['GET'])
@login_required
def get_folder(folder_uuid):
    return jsonify(folders.get_folder(g.user, folder_uuid)), 200


@folders_bp.route('/<folder_uuid>', methods=['DELETE'])
@login_required
def delete_folder(folder_uuid):
    """Delete a folder. Files inside it are not deleted, only detached."""
    files_affected = folders.delete_folder(g.user, folder_uuid)
    return jsonify({
        'message': 'Folder deleted',
        'files_affected': files_affected
    }), 200


@folders_bp.route('/<folder_uuid>/files', methods=['POST'])
@login_required
def add_file_to_folder(folder_uuid):
    """Place a file in a folder.

    Expected JSON payload:
    {
        "file_uuid": str,
        "dek_sealed_under_folder_key": str (base64),
        "wrapping_nonce": str (base64)
    }
    """
    data = json_payload(required=('file_uuid', 'dek_sealed_under_folder_key', 'wrapping_nonce'))
    folder, file = folders.add_file(
        g.user, folder_uuid, data['file_uuid'],
        data['dek_sealed_under_folder_key'], data['wrapping_nonce']
    )
    return jsonify({
        'message': 'File added to folder',
        'folder_uuid': folder.uuid,
        'file_uuid': file.uuid
    }), 201


@folders_bp.route('/<folder_uuid>/files/<file_uuid>', methods=['DELETE'])
@login_required
def remove_file_from_folder(folder_uuid, file_uuid):
    removed = folders.remove_file(g.user, folder_uuid, file_uuid)
    message = 'File removed from folder' if removed else 'File was not in this folder'
    return jsonify({'message': message, 'removed': removed}), 200


@folders_bp.route('/<folder_uuid>/share', methods=['POST'])
@login_required
def share_folder(folder_uuid):
    """Share a folder by sealing its folder key to the recipient.

    Expected JSON payload:
    {
        "recipient_uuid": str,
        "sealed_folder_key": str (base64),
        "replace": bool (optional)
    }
    """
    data = json_payload(required=('recipient_uuid', 'sealed_folder_key'), optional=('replace',))
    grant = folders.share_folder(
        g.user, folder_uuid, data['recipient_uuid'], data['sealed_folder_key'],
        replace=_replace_flag(data)
    )
    return jsonify({
        'message': 'Folder shared successfully',
        'folder_uuid': folder_uuid,
        'recipient_uuid': data['recipient_uuid'],
        'shared_at': grant.shared_at.isoformat()
    }), 201


@folders_bp.route('/<folder_uuid>/revoke', methods=['POST'])
@login_required
def revoke_folder(folder_uuid):
    data = json_payload(required=('recipient_uuid',))
    revoked = folders.revoke_folder(g.user, folder_uuid, data['recipient_uuid'])
    message = 'Folder access revoked' if revoked else 'No access to revoke'
    return jsonify({'message': message, 'revoked': revoked}), 200


@folders_bp.route('/<folder_uuid>/access-list', methods=['GET'])
@login_required
def folder_access_list(folder_uuid):
    return jsonify(folders.list_folder_access(g.user, folder_uuid)), 200


@folders_bp.route('/shared/with-me', methods=['GET'])
@login_required
def folders_shared_with_me():
    return jsonify({'folders': folders.folders_shared_with_me(g.user)}), 200


@folders_bp.route('/shared/by-me', methods=['GET'])
@login_required
def folders_shared_by_me():
    """Folder grants the user has issued to other people."""
    return jsonify({'shares': folders.folders_shared_by_me(g.user)}), 200
