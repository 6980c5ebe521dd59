import base64
import os
import shutil
from dataclasses import dataclass

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from vault import create_app, db
from vault import envelope
from vault.blobstore import ENCRYPTED_FILES_DIR, LocalBlobStore
from vault.errors import BlobStoreError
from vault.models import User

PASSWORD = 'CorrectHorse9!Battery'


def b64(data):
    return base64.b64encode(data).decode('utf-8')


def unb64(value):
    return base64.b64decode(value)


@dataclass
class Member:
    """A registered user as seen from its own client: token plus private key."""
    username: str
    email: str
    uuid: str
    token: str
    private_key: bytes = None
    public_key: bytes = None

    @property
    def headers(self):
        return {'Authorization': f'Bearer {self.token}'}


class VaultClient:
    """Drives the HTTP API the way a real client would, doing the crypto locally."""

    def __init__(self, client):
        self.client = client

    def register(self, username, with_identity=True):
        email = f'{username}@example.com'
        response = self.client.post('/api/register', json={
            'username': username,
            'email': email,
            'password': PASSWORD
        })
        assert response.status_code == 201, response.get_json()
        member = Member(
            username=username,
            email=email,
            uuid=response.get_json()['user']['uuid'],
            token=self.login(email)
        )
        if with_identity:
            self.register_identity(member)
        return member

    def login(self, email, password=PASSWORD):
        response = self.client.post('/api/login', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()['token']

    def register_identity(self, member):
        private_key, public_key = envelope.generate_keypair()
        signing_public = ed25519.Ed25519PrivateKey.generate().public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )
        response = self.client.post('/api/users/identity', headers=member.headers, json={
            'x25519_public_key': b64(public_key),
            'ed25519_public_key': b64(signing_public)
        })
        assert response.status_code == 201, response.get_json()
        member.private_key = private_key
        member.public_key = public_key

    def upload(self, member, content=b'attack at dawn', filename='notes.txt'):
        """Encrypt and upload a file. Returns (file_uuid, dek)."""
        dek = envelope.generate_key()
        nonce, ciphertext = envelope.wrap_under_key(content, dek)
        response = self.client.post('/api/files/upload', headers=member.headers, json={
            'file_name': filename,
            'enc_file_ciphertext': b64(ciphertext),
            'mime_type': 'text/plain',
            'file_nonce': b64(nonce),
            'sealed_dek': b64(envelope.seal(dek, member.public_key))
        })
        assert response.status_code == 201, response.get_json()
        return response.get_json()['file']['file_uuid'], dek

    def share(self, sharer, file_uuid, recipient, dek, **extra):
        payload = {
            'file_uuid': file_uuid,
            'recipient_uuid': recipient.uuid,
            'sealed_dek': b64(envelope.seal(dek, recipient.public_key))
        }
        payload.update(extra)
        return self.client.post('/api/files/share', headers=sharer.headers, json=payload)

    def download(self, member, file_uuid):
        return self.client.get(f'/api/files/{file_uuid}/download', headers=member.headers)

    def open_file(self, member, file_uuid):
        """Download and decrypt, through the personal grant or any folder path."""
        response = self.download(member, file_uuid)
        assert response.status_code == 200, response.get_json()
        data = response.get_json()
        if data['sealed_dek']:
            dek = envelope.unseal(unb64(data['sealed_dek']), member.private_key)
        else:
            path = data['folder_paths'][0]
            folder_key = envelope.unseal(unb64(path['sealed_folder_key']), member.private_key)
            dek = envelope.unwrap_under_key(
                unb64(path['wrapping_nonce']), unb64(path['dek_sealed_under_folder_key']), folder_key
            )
        return envelope.unwrap_under_key(unb64(data['file_nonce']), unb64(data['enc_file_ciphertext']), dek)

    def create_folder(self, member, name='Projects'):
        """Returns (folder_uuid, folder_key)."""
        folder_key = envelope.generate_key()
        response = self.client.post('/api/folders/', headers=member.headers, json={
            'name': name,
            'sealed_folder_key': b64(envelope.seal(folder_key, member.public_key))
        })
        assert response.status_code == 201, response.get_json()
        return response.get_json()['folder']['folder_uuid'], folder_key

    def add_to_folder(self, member, folder_uuid, file_uuid, dek, folder_key):
        nonce, wrapped = envelope.wrap_under_key(dek, folder_key)
        return self.client.post(f'/api/folders/{folder_uuid}/files', headers=member.headers, json={
            'file_uuid': file_uuid,
            'dek_sealed_under_folder_key': b64(wrapped),
            'wrapping_nonce': b64(nonce)
        })

    def share_folder(self, sharer, folder_uuid, recipient, folder_key):
        return self.client.post(f'/api/folders/{folder_uuid}/share', headers=sharer.headers, json={
            'recipient_uuid': recipient.uuid,
            'sealed_folder_key': b64(envelope.seal(folder_key, recipient.public_key))
        })


@pytest.fixture
def app():
    app = create_app('testing')
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    shutil.rmtree(app.config['UPLOAD_FOLDER'], ignore_errors=True)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def vault(client):
    return VaultClient(client)


@pytest.fixture
def alice(vault):
    return vault.register('alice')


@pytest.fixture
def bob(vault):
    return vault.register('bob')


@pytest.fixture
def carol(vault):
    return vault.register('carol')


def load_user(member):
    """The User row for a member; call inside an app context."""
    return User.query.filter_by(uuid=member.uuid).one()


class FailingDeleteStore(LocalBlobStore):
    """Local store whose deletes fail for the given blob keys."""

    def __init__(self, upload_folder, fail_keys):
        super().__init__(upload_folder)
        self.fail_keys = set(fail_keys)

    def delete_object(self, key):
        if key in self.fail_keys:
            raise BlobStoreError(f"Failed to delete blob {key}: store unavailable")
        super().delete_object(key)


def blob_path(app, owner, file_uuid):
    return os.path.join(app.config['UPLOAD_FOLDER'], ENCRYPTED_FILES_DIR, owner.uuid, file_uuid)
