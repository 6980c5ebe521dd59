"""Object storage for encrypted file blobs.

The vault treats blob storage as an opaque key-value service: put, get and
delete by key. Every call may fail independently and raises BlobStoreError.
"""
import os
import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import BlobStoreError

logger = logging.getLogger(__name__)

# Constants
ENCRYPTED_FILES_DIR = 'encrypted_file_blobs'


class LocalBlobStore:
    """Blobs stored as files under UPLOAD_FOLDER/encrypted_file_blobs."""

    def __init__(self, upload_folder):
        self.root = os.path.join(upload_folder, ENCRYPTED_FILES_DIR)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = key.split('/')
        if not key or any(part in ('', '.', '..') for part in parts):
            raise BlobStoreError(f"Invalid blob key: {key}")
        return os.path.join(self.root, *parts)

    def put_object(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise BlobStoreError(f"Failed to store blob {key}: {e}") from e

    def get_object(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e

    def delete_object(self, key: str) -> None:
        """Delete a blob. A blob that is already gone counts as deleted."""
        path = self._path(key)
        if not os.path.exists(path):
            logger.warning(f"Encrypted blob not found in filesystem: {key}")
            return
        try:
            os.remove(path)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete blob {key}: {e}") from e


class S3BlobStore:
    """S3-compatible blob storage (AWS S3, MinIO, LocalStack)."""

    def __init__(self, bucket, region='us-east-1', endpoint_url=None,
                 access_key_id=None, secret_access_key=None):
        self.bucket = bucket
        self._client_kwargs = {
            'service_name': 's3',
            'region_name': region,
            'config': Config(
                signature_version='s3v4',
                retries={'max_attempts': 3, 'mode': 'adaptive'},
                s3={'addressing_style': 'path'},
            ),
        }
        if access_key_id and secret_access_key:
            self._client_kwargs['aws_access_key_id'] = access_key_id
            self._client_kwargs['aws_secret_access_key'] = secret_access_key
        if endpoint_url:
            self._client_kwargs['endpoint_url'] = endpoint_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client(**self._client_kwargs)
            logger.info(f"S3 client initialized for bucket: {self.bucket}")
        return self._client

    def put_object(self, key: str, data: bytes) -> None:
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType='application/octet-stream',
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to store blob {key}: {e}") from e

    def get_object(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return response['Body'].read()
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to read blob {key}: {e}") from e

    def delete_object(self, key: str) -> None:
        # S3 deletes are idempotent: a missing key is not an error.
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise BlobStoreError(f"Failed to delete blob {key}: {e}") from e


def create_blob_store(config):
    backend = config.get('BLOB_STORE', 'local')
    if backend == 's3':
        return S3BlobStore(
            bucket=config['S3_BUCKET'],
            region=config.get('S3_REGION', 'us-east-1'),
            endpoint_url=config.get('S3_ENDPOINT_URL'),
            access_key_id=config.get('AWS_ACCESS_KEY_ID'),
            secret_access_key=config.get('AWS_SECRET_ACCESS_KEY'),
        )
    if backend == 'local':
        return LocalBlobStore(config['UPLOAD_FOLDER'])
    raise ValueError(f"Unknown BLOB_STORE backend: {backend}")


def get_blob_store():
    from flask import current_app
    return current_app.extensions['blob_store']
