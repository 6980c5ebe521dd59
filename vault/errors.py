from flask import jsonify, current_app
from werkzeug.exceptions import HTTPException


class VaultError(Exception):
    """Base exception for vault operations. Carries the HTTP status the API answers with."""
    status_code = 500

    def __init__(self, message):
        self.message = message
        super().__init__(message)


class ValidationError(VaultError):
    status_code = 400


class CryptoError(VaultError):
    """A sealed blob is malformed. The server never unseals, so this only covers transport shape."""
    status_code = 400


class AuthError(VaultError):
    status_code = 401

    def __init__(self, message='Unauthorized'):
        super().__init__(message)


class ExpiredError(AuthError):
    pass


class NotFoundError(VaultError):
    status_code = 404


class ConflictError(VaultError):
    status_code = 409


class BlobStoreError(VaultError):
    status_code = 502


class PartialFailure(VaultError):
    """A best-effort sub-step failed. Recorded in an erasure report, never raised to the client."""

    def __init__(self, step, message, target=None):
        self.step = step
        self.target = target
        super().__init__(message)

    def to_dict(self):
        return {'step': self.step, 'target': self.target, 'error': self.message}


def register_error_handlers(app):
    @app.errorhandler(VaultError)
    def handle_vault_error(error):
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        current_app.logger.exception(f"Unhandled error: {error}")
        return jsonify({'error': 'Internal server error'}), 500
