from flask import Flask, jsonify, request
from flask_cors import CORS
import os
import ssl
import tempfile
from flask_sqlalchemy import SQLAlchemy
from flask_apscheduler import APScheduler
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from dotenv import load_dotenv
import logging
from urllib.parse import quote_plus

load_dotenv()

db = SQLAlchemy()
scheduler = APScheduler()
limiter = Limiter(key_func=get_remote_address)


def _database_uri():
    # An explicit URL wins; otherwise assemble the MySQL URI from its parts.
    if os.getenv("DATABASE_URL"):
        return os.getenv("DATABASE_URL")

    db_user = os.getenv("DB_USER")
    db_pass = os.getenv("DB_PASSWORD")
    db_host = os.getenv("DB_HOST")
    db_port = os.getenv("DB_PORT", "3306")
    db_name = os.getenv("DB_NAME")

    if not all([db_user, db_pass, db_host, db_name]):
        raise ValueError("Database environment variables (DB_USER, DB_PASSWORD, DB_HOST, DB_NAME) must be set.")

    encoded_db_pass = quote_plus(db_pass)
    return f'mysql+mysqlconnector://{db_user}:{encoded_db_pass}@{db_host}:{db_port}/{db_name}'


def create_app(config_name='default', overrides=None):
    app = Flask(__name__)
    CORS(app)

    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY') or 'a-very-hard-to-guess-string'
    app.config['DEBUG'] = config_name == 'development'
    app.config['TESTING'] = config_name == 'testing'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    app.config['BLOB_STORE'] = os.environ.get('BLOB_STORE', 'local')
    app.config['UPLOAD_FOLDER'] = os.environ.get('UPLOAD_FOLDER') or 'uploads'
    app.config['S3_BUCKET'] = os.environ.get('S3_BUCKET', 'vault-files')
    app.config['S3_REGION'] = os.environ.get('S3_REGION', 'us-east-1')
    app.config['S3_ENDPOINT_URL'] = os.environ.get('S3_ENDPOINT_URL')
    app.config['AWS_ACCESS_KEY_ID'] = os.environ.get('AWS_ACCESS_KEY_ID')
    app.config['AWS_SECRET_ACCESS_KEY'] = os.environ.get('AWS_SECRET_ACCESS_KEY')

    app.config['SESSION_LIFETIME_HOURS'] = int(os.getenv('SESSION_LIFETIME_HOURS', 12))
    app.config['RECOVERY_TOKEN_TTL_MINUTES'] = int(os.getenv('RECOVERY_TOKEN_TTL_MINUTES', 15))
    app.config['PURGE_INTERVAL_MINUTES'] = int(os.getenv('PURGE_INTERVAL_MINUTES', 60))
    app.config['ERASURE_RETRY_MINUTES'] = int(os.getenv('ERASURE_RETRY_MINUTES', 15))
    app.config['PASSWORD_HASH_METHOD'] = os.getenv('PASSWORD_HASH_METHOD', 'pbkdf2:sha256')
    app.config['ANSWER_HASH_METHOD'] = os.getenv('ANSWER_HASH_METHOD', 'scrypt')
    app.config['RATELIMIT_STORAGE_URI'] = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')
    app.config['SCHEDULER_ENABLED'] = True

    if config_name == 'testing':
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
        app.config['BLOB_STORE'] = 'local'
        app.config['UPLOAD_FOLDER'] = tempfile.mkdtemp(prefix='vault-test-')
        app.config['PASSWORD_HASH_METHOD'] = 'pbkdf2:sha256:1000'
        app.config['ANSWER_HASH_METHOD'] = 'pbkdf2:sha256:1000'
        app.config['RATELIMIT_ENABLED'] = False
        app.config['SCHEDULER_ENABLED'] = False
    else:
        app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri()

    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    limiter.init_app(app)

    # Configure logging
    logging.basicConfig(level=logging.INFO)
    app.logger.setLevel(logging.INFO)

    # SSL Configuration - Keep for development testing with self-signed certs
    # In production, a reverse proxy handles SSL
    app.config['SSL_CONTEXT'] = None
    if config_name == 'development':
        try:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ssl_context.load_cert_chain(certfile=os.environ.get('SSL_CERT_PATH') or "server.crt", keyfile=os.environ.get('SSL_KEY_PATH') or "server.key")
            app.config['SSL_CONTEXT'] = ssl_context
        except FileNotFoundError:
            app.logger.warning("SSL certificate files not found. Running without SSL context.")

    from .blobstore import create_blob_store
    app.extensions['blob_store'] = create_blob_store(app.config)

    from .errors import register_error_handlers
    register_error_handlers(app)

    # Import models so that they are known to SQLAlchemy
    from . import models

    from .auth import auth_bp
    from .files import files_bp
    from .folders import folders_bp
    from .users import users_bp
    from .settings import settings_bp
    from .recovery import recovery_bp
    app.register_blueprint(auth_bp, url_prefix='/api')
    app.register_blueprint(files_bp, url_prefix='/api/files')
    app.register_blueprint(folders_bp, url_prefix='/api/folders')
    app.register_blueprint(users_bp, url_prefix='/api/users')
    app.register_blueprint(settings_bp, url_prefix='/api/settings')
    app.register_blueprint(recovery_bp, url_prefix='/api/recovery')

    with app.app_context():
        db.create_all()

    @app.route('/')
    def home():
        app.logger.info("Root endpoint accessed")
        return jsonify({
            'status': 'running',
            'message': 'Vault server is running',
            'endpoints': {
                'auth': ['/api/register', '/api/login', '/api/logout'],
                'files': '/api/files',
                'folders': '/api/folders',
                'users': '/api/users',
                'settings': '/api/settings',
                'recovery': '/api/recovery',
            }
        })

    @app.before_request
    def log_request_info():
        client_ip = request.remote_addr
        app.logger.info(f"Request from IP: {client_ip} - {request.method} {request.path}")

    if app.config['SCHEDULER_ENABLED']:
        from .jobs import register_jobs
        scheduler.init_app(app)
        register_jobs(scheduler, app)
        scheduler.start()

    return app
