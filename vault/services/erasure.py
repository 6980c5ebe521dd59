"""Account erasure.

Erasure runs in three phases:

1. The user is flagged as ``erasing`` and that flag is committed. From then on
   the session layer and every core operation refuse the user.
2. Blobs of owned files are deleted best-effort. Ciphertext whose keys are
   gone is confidentiality-neutral, so a failed delete is recorded in the
   report and the erasure goes on.
3. Inside one database transaction, files that appeared since phase 2 have
   their blobs deleted, then every metadata row is deleted in dependency
   order. If any step fails the transaction is rolled back, the report
   names the failing step and the user stays flagged; running the erasure
   again resumes from a clean state. The scheduler does that for every user
   still flagged.
"""
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..blobstore import get_blob_store
from ..errors import BlobStoreError, NotFoundError, PartialFailure
from ..models import (
    Account, File, FileKeyGrant, Folder, FolderFileKey, FolderKeyGrant, Identity,
    RecoveryToken, SecurityQuestion, Session, User, UserSettings, USER_ERASING,
)


@dataclass
class ErasureReport:
    user_uuid: str
    files_found: int = 0
    blobs_deleted: int = 0
    deleted_rows: dict = field(default_factory=dict)
    failures: list = field(default_factory=list)
    failed_step: str = None
    completed: bool = False

    @property
    def partial(self):
        return bool(self.failures)

    def to_dict(self):
        return {
            'user_uuid': self.user_uuid,
            'completed': self.completed,
            'partial_failure': self.partial,
            'files_found': self.files_found,
            'blobs_deleted': self.blobs_deleted,
            'blob_failures': len([f for f in self.failures if f.step == 'delete_blobs']),
            'deleted_rows': self.deleted_rows,
            'failures': [failure.to_dict() for failure in self.failures],
            'failed_step': self.failed_step,
        }


def _metadata_steps(user_id, email):
    owned_files = select(File.id).where(File.owner_id == user_id)
    owned_folders = select(Folder.id).where(Folder.owner_id == user_id)

    return [
        ('folder_file_keys', FolderFileKey.query.filter(or_(
            FolderFileKey.file_id.in_(owned_files),
            FolderFileKey.folder_id.in_(owned_folders)))),
        ('file_key_grants', FileKeyGrant.query.filter(or_(
            FileKeyGrant.file_id.in_(owned_files),
            FileKeyGrant.recipient_id == user_id,
            FileKeyGrant.shared_by_id == user_id))),
        ('files', File.query.filter(File.owner_id == user_id)),
        ('folder_key_grants', FolderKeyGrant.query.filter(or_(
            FolderKeyGrant.folder_id.in_(owned_folders),
            FolderKeyGrant.recipient_id == user_id,
            FolderKeyGrant.shared_by_id == user_id))),
        ('folders', Folder.query.filter(Folder.owner_id == user_id)),
        ('user_settings', UserSettings.query.filter(UserSettings.user_id == user_id)),
        ('security_questions', SecurityQuestion.query.filter(SecurityQuestion.user_id == user_id)),
        ('identity', Identity.query.filter(Identity.user_id == user_id)),
        ('recovery_tokens', RecoveryToken.query.filter(RecoveryToken.identifier == email)),
        ('sessions', Session.query.filter(Session.user_id == user_id)),
        ('account', Account.query.filter(Account.user_id == user_id)),
        ('user', User.query.filter(User.id == user_id)),
    ]


def _delete_blobs(user_id, report, handled):
    """Delete the blob of every owned file not already in ``handled``."""
    store = get_blob_store()
    query = File.query.filter(File.owner_id == user_id)
    if handled:
        query = query.filter(File.id.notin_(list(handled)))
    files = query.all()
    report.files_found += len(files)
    for file in files:
        handled.add(file.id)
        try:
            store.delete_object(file.blob_pointer)
            report.blobs_deleted += 1
        except BlobStoreError as e:
            current_app.logger.warning(f"Erasure of user {report.user_uuid}: blob for file {file.uuid} not deleted: {e}")
            report.failures.append(PartialFailure('delete_blobs', e.message, target=file.uuid))


def erase_account(caller):
    """Irreversibly remove every trace of a user. Returns an ErasureReport."""
    user = db.session.get(User, caller.id)
    if user is None:
        raise NotFoundError('User not found')

    user_id = user.id
    email = user.email
    report = ErasureReport(user_uuid=user.uuid)

    user.status = USER_ERASING
    db.session.commit()
    current_app.logger.info(f"Account erasure started for user {report.user_uuid}")

    handled = set()
    _delete_blobs(user_id, report, handled)

    step = None
    try:
        # Uploads that were already past the status check may have landed since.
        _delete_blobs(user_id, report, handled)
        for step, query in _metadata_steps(user_id, email):
            report.deleted_rows[step] = query.delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        report.failed_step = step
        current_app.logger.error(f"Account erasure of user {report.user_uuid} failed at step {step}: {e}")
        return report

    db.session.expire_all()
    report.completed = True
    current_app.logger.info(
        f"Account erasure completed for user {report.user_uuid} "
        f"({report.blobs_deleted}/{report.files_found} blobs deleted)"
    )
    return report


def resume_pending_erasures():
    """Re-run erasure for every user left in ``erasing`` by an interrupted run."""
    pending = User.query.filter_by(status=USER_ERASING).all()
    reports = []
    for user in pending:
        current_app.logger.info(f"Resuming account erasure for user {user.uuid}")
        reports.append(erase_account(user))
    return reports
