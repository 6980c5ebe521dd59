"""Folder key hierarchy.

A folder has one random symmetric folder key, sealed once per authorized user
(FolderKeyGrant). Each file placed in the folder has its DEK encrypted under
that folder key (FolderFileKey). Sharing a folder therefore costs one sealed
blob per recipient, whatever the number of files, and a file added later is
readable by every current folder grant holder without any new grant.
"""
from flask import current_app
from sqlalchemy.exc import IntegrityError

from .. import db
from ..envelope import decode_sealed, encode_sealed
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models import File, Folder, FolderFileKey, FolderKeyGrant, User, utcnow
from ..validation import require_string
from . import ensure_active, find_recipient, require_identity
from .sharing import find_grant


def find_folder_grant(folder, user):
    return FolderKeyGrant.query.filter_by(folder_id=folder.id, recipient_id=user.id).first()


def load_folder_for_holder(caller, folder_uuid):
    folder = Folder.query.filter_by(uuid=folder_uuid).first()
    if not folder:
        raise NotFoundError('Folder not found or access denied')
    grant = find_folder_grant(folder, caller)
    if grant is None:
        raise NotFoundError('Folder not found or access denied')
    return folder, grant


def create_folder(caller, name, sealed_folder_key):
    """Create a folder together with the owner's own folder-key grant."""
    ensure_active(caller)
    require_string(name, 'name', max_length=255)
    sealed = decode_sealed(sealed_folder_key, 'sealed_folder_key')
    require_identity(caller)

    folder = Folder(owner_id=caller.id, name=name, sealed_folder_key_for_owner=sealed)
    db.session.add(folder)
    db.session.flush()
    db.session.add(FolderKeyGrant(
        folder_id=folder.id,
        recipient_id=caller.id,
        shared_by_id=caller.id,
        sealed_folder_key=sealed
    ))
    db.session.commit()
    current_app.logger.info(f"User {caller.uuid} created folder {folder.uuid}")
    return folder


def add_file(caller, folder_uuid, file_uuid, dek_sealed_under_folder_key, wrapping_nonce):
    """Place a file in a folder. The file's personal grants are left alone."""
    ensure_active(caller)
    wrapped_dek = decode_sealed(dek_sealed_under_folder_key, 'dek_sealed_under_folder_key')
    nonce = decode_sealed(wrapping_nonce, 'wrapping_nonce')
    folder, _ = load_folder_for_holder(caller, folder_uuid)

    file = File.query.filter_by(uuid=file_uuid).first()
    if not file or file.is_trashed or find_grant(file, caller) is None:
        raise NotFoundError('File not found or access denied')

    if FolderFileKey.query.filter_by(file_id=file.id, folder_id=folder.id).first():
        raise ConflictError('File is already in this folder')

    db.session.add(FolderFileKey(
        file_id=file.id,
        folder_id=folder.id,
        dek_sealed_under_folder_key=wrapped_dek,
        wrapping_nonce=nonce
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('File is already in this folder')
    return folder, file


def remove_file(caller, folder_uuid, file_uuid):
    """Take a file out of a folder. Allowed for the folder owner and the file owner."""
    ensure_active(caller)
    folder, _ = load_folder_for_holder(caller, folder_uuid)
    file = File.query.filter_by(uuid=file_uuid).first()
    if not file:
        raise NotFoundError('File not found or access denied')
    if caller.id not in (folder.owner_id, file.owner_id):
        raise NotFoundError('File not found or access denied')

    removed = FolderFileKey.query.filter_by(file_id=file.id, folder_id=folder.id).delete()
    db.session.commit()
    return removed > 0


def share_folder(caller, folder_uuid, recipient_uuid, sealed_folder_key, replace=False):
    ensure_active(caller)
    sealed = decode_sealed(sealed_folder_key, 'sealed_folder_key')
    folder, _ = load_folder_for_holder(caller, folder_uuid)
    require_identity(caller)
    recipient = find_recipient(recipient_uuid)

    if recipient.id == folder.owner_id:
        raise ConflictError('The folder owner already holds a key grant')

    grant = find_folder_grant(folder, recipient)
    if grant is not None:
        if not replace:
            raise ConflictError('Folder already shared with this user')
        grant.sealed_folder_key = sealed
        grant.shared_by_id = caller.id
        grant.shared_at = utcnow()
    else:
        grant = FolderKeyGrant(
            folder_id=folder.id,
            recipient_id=recipient.id,
            shared_by_id=caller.id,
            sealed_folder_key=sealed
        )
        db.session.add(grant)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError('Folder already shared with this user')

    current_app.logger.info(f"User {caller.uuid} shared folder {folder.uuid} with {recipient.uuid}")
    return grant


def revoke_folder(caller, folder_uuid, recipient_uuid):
    """Remove a recipient's folder-key grant.

    Per-file grants the recipient holds on files inside the folder are
    independent and stay in place.
    """
    ensure_active(caller)
    folder, _ = load_folder_for_holder(caller, folder_uuid)

    recipient = User.query.filter_by(uuid=recipient_uuid).first()
    if recipient is None:
        return False
    if recipient.id == folder.owner_id:
        raise ValidationError("The owner's key grant cannot be revoked")

    grant = find_folder_grant(folder, recipient)
    if grant is None:
        return False
    if caller.id != folder.owner_id and grant.shared_by_id != caller.id:
        raise NotFoundError('Share not found or you are not the issuer')

    db.session.delete(grant)
    db.session.commit()
    current_app.logger.info(f"User {caller.uuid} revoked folder {folder.uuid} from {recipient.uuid}")
    return True


def list_folder_access(caller, folder_uuid):
    ensure_active(caller)
    folder, _ = load_folder_for_holder(caller, folder_uuid)
    grants = (FolderKeyGrant.query
              .filter(FolderKeyGrant.folder_id == folder.id, FolderKeyGrant.recipient_id != folder.owner_id)
              .order_by(FolderKeyGrant.shared_at)
              .all())
    return {
        'owner': folder.owner.to_dict(),
        'shared_with': [
            {
                'user_uuid': grant.recipient.uuid,
                'username': grant.recipient.username,
                'email': grant.recipient.email,
                'shared_by_uuid': grant.shared_by.uuid,
                'shared_at': grant.shared_at.isoformat(),
            }
            for grant in grants
        ],
    }


def _folder_entry(folder, grant):
    return dict(folder.to_dict(), sealed_folder_key=encode_sealed(grant.sealed_folder_key))


def list_folders(caller):
    ensure_active(caller)
    rows = (db.session.query(Folder, FolderKeyGrant)
            .join(FolderKeyGrant, FolderKeyGrant.folder_id == Folder.id)
            .filter(FolderKeyGrant.recipient_id == caller.id)
            .order_by(Folder.created_at)
            .all())
    return [_folder_entry(folder, grant) for folder, grant in rows]


def folders_shared_with_me(caller):
    ensure_active(caller)
    rows = (db.session.query(Folder, FolderKeyGrant)
            .join(FolderKeyGrant, FolderKeyGrant.folder_id == Folder.id)
            .filter(FolderKeyGrant.recipient_id == caller.id, Folder.owner_id != caller.id)
            .order_by(FolderKeyGrant.shared_at.desc())
            .all())
    return [
        dict(_folder_entry(folder, grant),
             shared_by_uuid=grant.shared_by.uuid,
             shared_at=grant.shared_at.isoformat())
        for folder, grant in rows
    ]


def folders_shared_by_me(caller):
    ensure_active(caller)
    rows = (db.session.query(FolderKeyGrant, Folder)
            .join(Folder, FolderKeyGrant.folder_id == Folder.id)
            .filter(FolderKeyGrant.shared_by_id == caller.id,
                    FolderKeyGrant.recipient_id != caller.id)
            .order_by(FolderKeyGrant.shared_at.desc())
            .all())
    return [
        {
            'folder_uuid': folder.uuid,
            'name': folder.name,
            'recipient_uuid': grant.recipient.uuid,
            'recipient_username': grant.recipient.username,
            'shared_at': grant.shared_at.isoformat(),
        }
        for grant, folder in rows
    ]


def get_folder(caller, folder_uuid):
    """The folder, the caller's sealed folder key and every live file with its folder-wrapped DEK."""
    ensure_active(caller)
    folder, grant = load_folder_for_holder(caller, folder_uuid)
    rows = (db.session.query(FolderFileKey, File)
            .join(File, FolderFileKey.file_id == File.id)
            .filter(FolderFileKey.folder_id == folder.id, File.deleted_at.is_(None))
            .order_by(File.created_at)
            .all())
    files = [
        dict(file.to_dict(),
             dek_sealed_under_folder_key=encode_sealed(file_key.dek_sealed_under_folder_key),
             wrapping_nonce=encode_sealed(file_key.wrapping_nonce),
             content_nonce=encode_sealed(file.content_nonce))
        for file_key, file in rows
    ]
    return {'folder': _folder_entry(folder, grant), 'files': files}


def delete_folder(caller, folder_uuid):
    """Delete a folder and its key material. The files themselves survive.

    Associations go first, then grants, then the folder row.
    """
    ensure_active(caller)
    folder = Folder.query.filter_by(uuid=folder_uuid).first()
    if not folder or folder.owner_id != caller.id:
        raise NotFoundError('Folder not found or you do not own this folder')

    files_affected = FolderFileKey.query.filter_by(folder_id=folder.id).delete()
    FolderKeyGrant.query.filter_by(folder_id=folder.id).delete()
    Folder.query.filter_by(id=folder.id).delete()
    db.session.commit()
    current_app.logger.info(f"User {caller.uuid} deleted folder {folder_uuid}")
    return files_affected
