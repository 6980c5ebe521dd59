"""File sharing: per-file key grants.

A grant is a FileKeyGrant row holding the file's DEK sealed to one
recipient's public key. The sharer unseals and reseals on their own device;
the server only stores the new sealed blob. Deleting the grant is the only
revocation. A recipient who already fetched and unsealed the DEK keeps it:
revocation cannot reach plaintext that has left the server.

Concurrent grants to the same (file, recipient) pair are rejected with
ConflictError by the unique constraint, never merged.
"""
from flask import current_app
from sqlalchemy.exc import IntegrityError

from .. import db
from ..envelope import decode_sealed, encode_sealed
from ..errors import ConflictError, NotFoundError, ValidationError, VaultError
from ..models import File, FileKeyGrant, FolderFileKey, FolderKeyGrant, User, utcnow
from ..validation import parse_payload
from . import ensure_active, find_recipient, require_identity


def find_grant(file, user):
    return FileKeyGrant.query.filter_by(file_id=file.id, recipient_id=user.id).first()


def load_file_for_holder(caller, file_uuid, include_trashed=False):
    """Return (file, caller's grant). Absent, trashed or inaccessible files all look the same."""
    file = File.query.filter_by(uuid=file_uuid).first()
    if not file or (file.is_trashed and not include_trashed):
        raise NotFoundError('File not found')
    grant = find_grant(file, caller)
    if grant is None:
        raise NotFoundError('File not found')
    return file, grant


def grant_access(caller, file_uuid, recipient_uuid, sealed_dek, replace=False):
    """Store the DEK of a file sealed to a new recipient.

    With replace=True an existing grant for the recipient is overwritten
    instead of raising ConflictError.
    """
    ensure_active(caller)
    sealed = decode_sealed(sealed_dek, 'sealed_dek')
    file, _ = load_file_for_holder(caller, file_uuid)
    require_identity(caller)
    recipient = find_recipient(recipient_uuid)

    if recipient.id == file.owner_id:
        raise ConflictError('The file owner already holds a key grant')

    grant = find_grant(file, recipient)
    if grant is not None:
        if not replace:
            raise ConflictError('File already shared with this user')
        grant.sealed_dek = sealed
        grant.shared_by_id = caller.id
        grant.shared_at = utcnow()
    else:
        grant = FileKeyGrant(
            file_id=file.id,
            recipient_id=recipient.id,
            shared_by_id=caller.id,
            sealed_dek=sealed
        )
        db.session.add(grant)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('File already shared with this user')

    current_app.logger.info(f"User {caller.uuid} granted file {file.uuid} to {recipient.uuid}")
    return grant


def revoke_access(caller, file_uuid, recipient_uuid):
    """Delete the recipient's grant. Returns False when there was nothing to revoke.

    Only the file owner or the user who issued the grant may revoke it.
    """
    ensure_active(caller)
    file = File.query.filter_by(uuid=file_uuid).first()
    if not file or (file.owner_id != caller.id and find_grant(file, caller) is None):
        raise NotFoundError('File not found')

    recipient = User.query.filter_by(uuid=recipient_uuid).first()
    if recipient is None:
        return False
    if recipient.id == file.owner_id:
        raise ValidationError("The owner's key grant cannot be revoked")

    grant = find_grant(file, recipient)
    if grant is None:
        return False
    if caller.id != file.owner_id and grant.shared_by_id != caller.id:
        raise NotFoundError('Share not found or you are not the issuer')

    db.session.delete(grant)
    db.session.commit()
    current_app.logger.info(f"User {caller.uuid} revoked file {file.uuid} from {recipient.uuid}")
    return True


def _grant_entry(grant):
    return {
        'user_uuid': grant.recipient.uuid,
        'username': grant.recipient.username,
        'email': grant.recipient.email,
        'shared_by_uuid': grant.shared_by.uuid,
        'shared_at': grant.shared_at.isoformat(),
    }


def list_access(caller, file_uuid):
    """Owner plus every other grant holder. The owner's own grant is not listed as a share."""
    ensure_active(caller)
    file, _ = load_file_for_holder(caller, file_uuid, include_trashed=True)
    grants = (FileKeyGrant.query
              .filter(FileKeyGrant.file_id == file.id, FileKeyGrant.recipient_id != file.owner_id)
              .order_by(FileKeyGrant.shared_at)
              .all())
    return {
        'owner': file.owner.to_dict(),
        'shared_with': [_grant_entry(grant) for grant in grants],
    }


def bulk_grant(caller, file_uuid, recipients):
    """Grant several recipients, each in its own transaction.

    Partial success is expected: failures are reported per recipient.
    """
    ensure_active(caller)
    if not isinstance(recipients, list) or not recipients:
        raise ValidationError('recipients must be a non-empty list')
    load_file_for_holder(caller, file_uuid)

    shared_count = 0
    failed = []
    for entry in recipients:
        recipient_uuid = entry.get('recipient_uuid') if isinstance(entry, dict) else None
        try:
            parse_payload(entry, required=('recipient_uuid', 'sealed_dek'))
            grant_access(caller, file_uuid, entry['recipient_uuid'], entry['sealed_dek'])
            shared_count += 1
        except VaultError as e:
            failed.append({'recipient_uuid': recipient_uuid, 'error': e.message})

    return {'shared_count': shared_count, 'failed': failed}


def shared_with_me(caller):
    ensure_active(caller)
    rows = (db.session.query(FileKeyGrant, File)
            .join(File, FileKeyGrant.file_id == File.id)
            .filter(FileKeyGrant.recipient_id == caller.id,
                    File.owner_id != caller.id,
                    File.deleted_at.is_(None))
            .order_by(FileKeyGrant.shared_at.desc())
            .all())
    return [
        dict(file.to_dict(),
             sealed_dek=encode_sealed(grant.sealed_dek),
             shared_by_uuid=grant.shared_by.uuid,
             shared_by_username=grant.shared_by.username,
             shared_at=grant.shared_at.isoformat())
        for grant, file in rows
    ]


def shared_by_me(caller):
    ensure_active(caller)
    rows = (db.session.query(FileKeyGrant, File)
            .join(File, FileKeyGrant.file_id == File.id)
            .filter(FileKeyGrant.shared_by_id == caller.id,
                    FileKeyGrant.recipient_id != caller.id)
            .order_by(FileKeyGrant.shared_at.desc())
            .all())
    return [
        {
            'file_uuid': file.uuid,
            'filename': file.filename,
            'recipient_uuid': grant.recipient.uuid,
            'recipient_username': grant.recipient.username,
            'shared_at': grant.shared_at.isoformat(),
        }
        for grant, file in rows
    ]


def key_material_for(caller, file_uuid):
    """Every sealed path from the caller to a file's DEK.

    The personal grant and the folder paths are independent; either one is
    enough for the client to recover the DEK.
    """
    ensure_active(caller)
    file = File.query.filter_by(uuid=file_uuid).first()
    if not file or file.is_trashed:
        raise NotFoundError('File not found')

    grant = find_grant(file, caller)
    folder_paths = (db.session.query(FolderFileKey, FolderKeyGrant)
                    .join(FolderKeyGrant, FolderKeyGrant.folder_id == FolderFileKey.folder_id)
                    .filter(FolderFileKey.file_id == file.id,
                            FolderKeyGrant.recipient_id == caller.id)
                    .all())
    if grant is None and not folder_paths:
        raise NotFoundError('File not found')

    return file, {
        'sealed_dek': encode_sealed(grant.sealed_dek) if grant else None,
        'folder_paths': [
            {
                'folder_uuid': file_key.folder.uuid,
                'sealed_folder_key': encode_sealed(folder_grant.sealed_folder_key),
                'dek_sealed_under_folder_key': encode_sealed(file_key.dek_sealed_under_folder_key),
                'wrapping_nonce': encode_sealed(file_key.wrapping_nonce),
            }
            for file_key, folder_grant in folder_paths
        ],
    }
