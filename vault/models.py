from . import db
from datetime import datetime, timezone
import uuid
import base64

USER_ACTIVE = 'active'
USER_ERASING = 'erasing'

DEFAULT_TRASH_RETENTION_DAYS = 30
MAX_TRASH_RETENTION_DAYS = 365
MAX_SECURITY_QUESTIONS = 5


def utcnow():
    """Naive UTC timestamp; every DateTime column in the vault is stored as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_uuid():
    return str(uuid.uuid4())


def b64(data):
    if data is None:
        return None
    return base64.b64encode(data).decode('utf-8')


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=new_uuid)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=USER_ACTIVE)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    account = db.relationship('Account', backref='user', uselist=False)
    identity = db.relationship('Identity', backref='user', uselist=False)
    settings = db.relationship('UserSettings', backref='user', uselist=False)
    files_owned = db.relationship('File', backref='owner', lazy='dynamic')
    folders_owned = db.relationship('Folder', backref='owner', lazy='dynamic')

    @property
    def is_erasing(self):
        return self.status == USER_ERASING

    def to_dict(self):
        return {
            'uuid': self.uuid,
            'username': self.username,
            'email': self.email,
        }

    def __repr__(self):
        return f'<User {self.username}>'


class Account(db.Model):
    """Credential record. Holds the password hash only."""
    __tablename__ = 'account'
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    password_hash = db.Column(db.String(255), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f'<Account for user_id {self.user_id}>'


class Session(db.Model):
    __tablename__ = 'sessions'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    token = db.Column(db.String(64), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    user = db.relationship('User')

    def __repr__(self):
        return f'<Session {self.id} for user_id {self.user_id}>'


class Identity(db.Model):
    __tablename__ = 'identity'
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    x25519_public_key = db.Column(db.LargeBinary, nullable=False)   # sealing key
    ed25519_public_key = db.Column(db.LargeBinary, nullable=False)  # signing key
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'x25519_public_key': b64(self.x25519_public_key),
            'ed25519_public_key': b64(self.ed25519_public_key),
        }

    def __repr__(self):
        return f'<Identity for user_id {self.user_id}>'


class File(db.Model):
    __tablename__ = 'files'
    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=new_uuid)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    filename = db.Column(db.String(255), nullable=False)
    blob_pointer = db.Column(db.String(255), unique=True, nullable=False)
    size_bytes = db.Column(db.BigInteger, nullable=False)
    mime_type = db.Column(db.String(100), nullable=True)
    content_nonce = db.Column(db.LargeBinary, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)
    scheduled_purge_at = db.Column(db.DateTime, nullable=True, index=True)

    grants = db.relationship('FileKeyGrant', backref='file', lazy='dynamic')
    folder_keys = db.relationship('FolderFileKey', backref='file', lazy='dynamic')

    @property
    def is_trashed(self):
        return self.deleted_at is not None

    def to_dict(self):
        return {
            'file_uuid': self.uuid,
            'filename': self.filename,
            'mime_type': self.mime_type,
            'size_bytes': self.size_bytes,
            'owner_uuid': self.owner.uuid,
            'created_at': self.created_at.isoformat(),
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None,
            'scheduled_purge_at': self.scheduled_purge_at.isoformat() if self.scheduled_purge_at else None,
        }

    def __repr__(self):
        return f'<File {self.filename}>'


class FileKeyGrant(db.Model):
    __tablename__ = 'file_key_grants'
    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(db.Integer, db.ForeignKey('files.id'), nullable=False)
    recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    shared_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sealed_dek = db.Column(db.LargeBinary, nullable=False)  # DEK sealed to the recipient's X25519 key
    shared_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    recipient = db.relationship('User', foreign_keys=[recipient_id])
    shared_by = db.relationship('User', foreign_keys=[shared_by_id])

    __table_args__ = (
        db.UniqueConstraint('file_id', 'recipient_id', name='uq_file_grant_recipient'),
    )

    def __repr__(self):
        return f'<FileKeyGrant file:{self.file_id} recipient:{self.recipient_id}>'


class Folder(db.Model):
    __tablename__ = 'folders'
    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=new_uuid)
    owner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    sealed_folder_key_for_owner = db.Column(db.LargeBinary, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    grants = db.relationship('FolderKeyGrant', backref='folder', lazy='dynamic')
    file_keys = db.relationship('FolderFileKey', backref='folder', lazy='dynamic')

    def to_dict(self):
        return {
            'folder_uuid': self.uuid,
            'name': self.name,
            'owner_uuid': self.owner.uuid,
            'owner_username': self.owner.username,
            'created_at': self.created_at.isoformat(),
        }

    def __repr__(self):
        return f'<Folder {self.name}>'


class FolderKeyGrant(db.Model):
    __tablename__ = 'folder_key_grants'
    id = db.Column(db.Integer, primary_key=True)
    folder_id = db.Column(db.Integer, db.ForeignKey('folders.id'), nullable=False)
    recipient_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    shared_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sealed_folder_key = db.Column(db.LargeBinary, nullable=False)
    shared_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    recipient = db.relationship('User', foreign_keys=[recipient_id])
    shared_by = db.relationship('User', foreign_keys=[shared_by_id])

    __table_args__ = (
        db.UniqueConstraint('folder_id', 'recipient_id', name='uq_folder_grant_recipient'),
    )

    def __repr__(self):
        return f'<FolderKeyGrant folder:{self.folder_id} recipient:{self.recipient_id}>'


class FolderFileKey(db.Model):
    """A file's DEK wrapped under a folder key. Its presence places the file inside the folder."""
    __tablename__ = 'folder_file_keys'
    id = db.Column(db.Integer, primary_key=True)
    file_id = db.Column(db.Integer, db.ForeignKey('files.id'), nullable=False)
    folder_id = db.Column(db.Integer, db.ForeignKey('folders.id'), nullable=False, index=True)
    dek_sealed_under_folder_key = db.Column(db.LargeBinary, nullable=False)
    wrapping_nonce = db.Column(db.LargeBinary, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('file_id', 'folder_id', name='uq_folder_file'),
    )

    def __repr__(self):
        return f'<FolderFileKey file:{self.file_id} folder:{self.folder_id}>'


class SecurityQuestion(db.Model):
    __tablename__ = 'security_questions'
    id = db.Column(db.Integer, primary_key=True)
    uuid = db.Column(db.String(36), unique=True, nullable=False, default=new_uuid)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    question_text = db.Column(db.String(500), nullable=False)
    answer_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'question_uuid': self.uuid,
            'question': self.question_text,
            'created_at': self.created_at.isoformat(),
        }

    def __repr__(self):
        return f'<SecurityQuestion {self.uuid}>'


class RecoveryToken(db.Model):
    __tablename__ = 'recovery_tokens'
    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(120), nullable=False, index=True)  # account email
    token_value = db.Column(db.String(64), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.Index('idx_recovery_token_lookup', 'identifier', 'token_value'),
    )

    def __repr__(self):
        return f'<RecoveryToken {self.id} for {self.identifier}>'


class UserSettings(db.Model):
    __tablename__ = 'user_settings'
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), primary_key=True)
    trash_retention_days = db.Column(db.Integer, nullable=False, default=DEFAULT_TRASH_RETENTION_DAYS)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {'trash_retention_days': self.trash_retention_days}

    def __repr__(self):
        return f'<UserSettings for user_id {self.user_id}>'
