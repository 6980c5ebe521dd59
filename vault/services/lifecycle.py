"""File lifecycle: upload completion, trash, restore and purge.

States per file: ACTIVE -> TRASHED -> (restored to ACTIVE) | PURGED.

Tearing a file down always runs in the same order: key grants, folder
associations, blob, row. The purge sweep re-reads each due file under a row
lock and skips it unless it is still trashed and still due, so a restore that
lands between the sweep's scan and its delete wins.
"""
import base64
import binascii
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..blobstore import get_blob_store
from ..envelope import decode_sealed
from ..errors import BlobStoreError, NotFoundError, ValidationError
from ..models import (
    File, FileKeyGrant, FolderFileKey, UserSettings, new_uuid, utcnow,
    DEFAULT_TRASH_RETENTION_DAYS, MAX_TRASH_RETENTION_DAYS,
)
from ..validation import require_string
from . import ensure_active, require_identity


def get_settings(caller):
    """The caller's settings row, created with defaults on first access."""
    ensure_active(caller)
    settings = db.session.get(UserSettings, caller.id)
    if settings is None:
        settings = UserSettings(user_id=caller.id, trash_retention_days=DEFAULT_TRASH_RETENTION_DAYS)
        db.session.add(settings)
        db.session.commit()
    return settings


def update_retention(caller, days):
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError('trash_retention_days must be an integer')
    if not 0 <= days <= MAX_TRASH_RETENTION_DAYS:
        raise ValidationError(f'trash_retention_days must be between 0 and {MAX_TRASH_RETENTION_DAYS}')
    settings = get_settings(caller)
    settings.trash_retention_days = days
    db.session.commit()
    return settings


def retention_days(user):
    settings = db.session.get(UserSettings, user.id)
    days = settings.trash_retention_days if settings else DEFAULT_TRASH_RETENTION_DAYS
    return min(max(days, 0), MAX_TRASH_RETENTION_DAYS)


def _decode_b64(value, field):
    if not isinstance(value, str) or not value:
        raise ValidationError(f'Missing {field}')
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f'Invalid base64 encoding for {field}')


def complete_upload(caller, filename, mime_type, enc_file_ciphertext, file_nonce, sealed_dek):
    """Store an encrypted blob and create the File with the owner's self-grant.

    The File row and the self-grant are committed together; if that commit
    fails the blob is removed again.
    """
    ensure_active(caller)
    require_string(filename, 'file_name', max_length=255)
    require_identity(caller)
    ciphertext = _decode_b64(enc_file_ciphertext, 'enc_file_ciphertext')
    content_nonce = _decode_b64(file_nonce, 'file_nonce')
    sealed = decode_sealed(sealed_dek, 'sealed_dek')

    file_uuid = new_uuid()
    blob_pointer = f'{caller.uuid}/{file_uuid}'
    store = get_blob_store()
    store.put_object(blob_pointer, ciphertext)

    new_file = File(
        uuid=file_uuid,
        owner_id=caller.id,
        filename=filename,
        blob_pointer=blob_pointer,
        size_bytes=len(ciphertext),
        mime_type=mime_type or 'application/octet-stream',
        content_nonce=content_nonce
    )
    try:
        db.session.add(new_file)
        db.session.flush()
        db.session.add(FileKeyGrant(
            file_id=new_file.id,
            recipient_id=caller.id,
            shared_by_id=caller.id,
            sealed_dek=sealed
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        try:
            store.delete_object(blob_pointer)
        except BlobStoreError as e:
            current_app.logger.error(f"Failed to remove blob after aborted upload: {e}")
        raise

    current_app.logger.info(f"User {caller.uuid} uploaded file {file_uuid}")
    return new_file


def read_blob(file):
    return get_blob_store().get_object(file.blob_pointer)


def list_files(caller):
    """Live files the caller holds a personal grant on, newest first."""
    ensure_active(caller)
    rows = (db.session.query(File, FileKeyGrant)
            .join(FileKeyGrant, FileKeyGrant.file_id == File.id)
            .filter(FileKeyGrant.recipient_id == caller.id, File.deleted_at.is_(None))
            .order_by(File.created_at.desc())
            .all())
    return [
        dict(file.to_dict(), is_owner=file.owner_id == caller.id)
        for file, grant in rows
    ]


def _owned_file(caller, file_uuid):
    file = File.query.filter_by(uuid=file_uuid, owner_id=caller.id).first()
    if not file:
        raise NotFoundError('File not found or you do not own this file')
    return file


def soft_delete(caller, file_uuid, now=None):
    """Move a file to the trash and schedule its purge."""
    ensure_active(caller)
    file = _owned_file(caller, file_uuid)
    if file.is_trashed:
        return file
    now = now or utcnow()
    file.deleted_at = now
    file.scheduled_purge_at = now + timedelta(days=retention_days(caller))
    db.session.commit()
    current_app.logger.info(f"File {file.uuid} trashed, purge scheduled at {file.scheduled_purge_at.isoformat()}")
    return file


def restore(caller, file_uuid):
    ensure_active(caller)
    file = _owned_file(caller, file_uuid)
    file.deleted_at = None
    file.scheduled_purge_at = None
    db.session.commit()
    return file


def list_trash(caller):
    ensure_active(caller)
    files = (File.query
             .filter(File.owner_id == caller.id, File.deleted_at.isnot(None))
             .order_by(File.deleted_at.desc())
             .all())
    return [file.to_dict() for file in files]


def teardown_file(file):
    """Remove a file and everything that points at it, inside the current transaction.

    Raises BlobStoreError if the blob cannot be deleted; the caller rolls back
    and the file stays where it was.
    """
    FileKeyGrant.query.filter_by(file_id=file.id).delete(synchronize_session=False)
    FolderFileKey.query.filter_by(file_id=file.id).delete(synchronize_session=False)
    get_blob_store().delete_object(file.blob_pointer)
    File.query.filter_by(id=file.id).delete(synchronize_session=False)


def purge_file_if_due(file_id, now):
    """Purge one file if it is still trashed and due. Returns True when it was purged."""
    file = File.query.filter_by(id=file_id).with_for_update().populate_existing().first()
    if (file is None or not file.is_trashed
            or file.scheduled_purge_at is None or file.scheduled_purge_at > now):
        db.session.rollback()
        return False

    file_uuid = file.uuid
    teardown_file(file)
    db.session.commit()
    current_app.logger.info(f"Purged file {file_uuid}")
    return True


def purge_due_files(now=None):
    """Purge every trashed file whose retention window has passed.

    Safe to run repeatedly: a file that failed is retried by the next sweep.
    """
    now = now or utcnow()
    due_ids = [file_id for (file_id,) in
               db.session.query(File.id)
               .filter(File.deleted_at.isnot(None), File.scheduled_purge_at <= now)
               .all()]
    db.session.commit()

    result = {'total': len(due_ids), 'purged': 0, 'skipped': 0, 'errors': 0}
    for file_id in due_ids:
        try:
            if purge_file_if_due(file_id, now):
                result['purged'] += 1
            else:
                result['skipped'] += 1
        except (BlobStoreError, SQLAlchemyError) as e:
            db.session.rollback()
            result['errors'] += 1
            current_app.logger.error(f"Failed to purge file id {file_id}: {e}")

    if due_ids:
        current_app.logger.info(f"Trash purge: {result}")
    return result


def permanent_delete(caller, file_uuid):
    """Delete a file now, trashed or not, bypassing the retention window."""
    ensure_active(caller)
    file = File.query.filter_by(uuid=file_uuid, owner_id=caller.id).with_for_update().populate_existing().first()
    if not file:
        raise NotFoundError('File not found or you do not own this file')
    try:
        teardown_file(file)
        db.session.commit()
    except BlobStoreError:
        db.session.rollback()
        raise
    current_app.logger.info(f"User {caller.uuid} permanently deleted file {file_uuid}")
