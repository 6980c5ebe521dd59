"""Envelope wrapping.

Server side, a sealed key is an opaque blob: it arrives base64 encoded, is
stored as bytes and handed back unchanged. The server never unseals and never
holds a private key.

The seal/unseal helpers below are the client half of the protocol. Clients
written in Python (and the test-suite, which plays the part of the clients)
use them; no server route calls them.

Sealed-box layout: ephemeral X25519 public key (32) || nonce (12) || AES-GCM
ciphertext. The AES key is HKDF-SHA256 over the X25519 shared secret, bound to
both public keys.
"""
import base64
import binascii
from secrets import token_bytes
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import CryptoError, ValidationError

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
SEAL_INFO = b'vault sealed box v1'


def decode_sealed(value, field='sealed_key') -> bytes:
    """Decode a base64 sealed blob for storage. Raises CryptoError on anything malformed."""
    if not isinstance(value, str) or not value:
        raise CryptoError(f'Malformed {field}: expected a non-empty base64 string')
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise CryptoError(f'Malformed {field}: invalid base64 encoding')
    if not raw:
        raise CryptoError(f'Malformed {field}: empty blob')
    return raw


def encode_sealed(raw: bytes) -> str:
    return base64.b64encode(raw).decode('utf-8')


def decode_public_key(value, kind, field):
    """Decode and load a raw 32-byte public key (kind is 'x25519' or 'ed25519')."""
    if not isinstance(value, str) or not value:
        raise ValidationError(f'Missing {field}')
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f'Invalid {field}: expected base64')
    loader = x25519.X25519PublicKey if kind == 'x25519' else ed25519.Ed25519PublicKey
    try:
        loader.from_public_bytes(raw)
    except ValueError:
        raise ValidationError(f'Invalid {field}: not a raw {kind} public key')
    return raw


# Client-side helpers

def generate_key() -> bytes:
    """A fresh symmetric key: a file DEK or a folder key."""
    return token_bytes(KEY_SIZE)


def generate_keypair() -> Tuple[bytes, bytes]:
    """Return (private_key, public_key) as raw X25519 bytes."""
    private_key = x25519.X25519PrivateKey.generate()
    public_key = private_key.public_key()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_bytes = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return private_bytes, public_bytes


def _derive_seal_key(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=ephemeral_public + recipient_public,
        info=SEAL_INFO
    ).derive(shared_secret)


def seal(plaintext: bytes, recipient_public_key: bytes) -> bytes:
    """Seal plaintext to a recipient's X25519 public key."""
    try:
        recipient = x25519.X25519PublicKey.from_public_bytes(recipient_public_key)
    except ValueError as e:
        raise CryptoError(f'Invalid recipient public key: {e}')
    ephemeral = x25519.X25519PrivateKey.generate()
    ephemeral_public = ephemeral.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    key = _derive_seal_key(ephemeral.exchange(recipient), ephemeral_public, recipient_public_key)
    nonce = token_bytes(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, ephemeral_public)
    return ephemeral_public + nonce + ciphertext


def unseal(sealed_blob: bytes, private_key: bytes) -> bytes:
    """Open a sealed blob with the recipient's raw X25519 private key."""
    if len(sealed_blob) < KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise CryptoError('Sealed blob is too short')
    try:
        own = x25519.X25519PrivateKey.from_private_bytes(private_key)
    except ValueError as e:
        raise CryptoError(f'Invalid private key: {e}')
    ephemeral_public = sealed_blob[:KEY_SIZE]
    nonce = sealed_blob[KEY_SIZE:KEY_SIZE + NONCE_SIZE]
    ciphertext = sealed_blob[KEY_SIZE + NONCE_SIZE:]
    own_public = own.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    try:
        shared = own.exchange(x25519.X25519PublicKey.from_public_bytes(ephemeral_public))
        key = _derive_seal_key(shared, ephemeral_public, own_public)
        return AESGCM(key).decrypt(nonce, ciphertext, ephemeral_public)
    except (InvalidTag, ValueError):
        raise CryptoError('Unable to unseal: malformed blob or key mismatch')


def wrap_under_key(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
    """Encrypt a DEK under a folder key. Returns (nonce, ciphertext)."""
    nonce = token_bytes(NONCE_SIZE)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, None)


def unwrap_under_key(nonce: bytes, ciphertext: bytes, key: bytes) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except (InvalidTag, ValueError):
        raise CryptoError('Unable to unwrap: malformed blob or wrong key')
