from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from werkzeug.middleware.proxy_fix import ProxyFix

from .app_logger import get_logger, setup_logging
from .config import Config
from .errors import ClaimConflict, ServiceError
from .models import db

load_dotenv()
log = get_logger(__name__)


def _sqlite_begin_immediate(engine):
    """Take the SQLite write lock at BEGIN so concurrent writers queue on the busy timeout."""
    @event.listens_for(engine, 'connect')
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(Config())
    if overrides:
        app.config.update(overrides)
    setup_logging(app.config['LOG_LEVEL'])

    db.init_app(app)
    Migrate(app, db)
    # Trust reverse proxy headers (Render/Heroku)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            _sqlite_begin_immediate(db.engine)
        db.create_all()

    from .routes_api import bp as api_bp
    from .routes_admin import bp as admin_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/admin')

    @app.errorhandler(ServiceError)
    def service_error(err: ServiceError):
        db.session.rollback()
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(OperationalError)
    @app.errorhandler(ClaimConflict)
    def unavailable(err):
        db.session.rollback()
        log.error('transient storage failure: %s', type(err).__name__, exc_info=err)
        return jsonify({'error': 'Service temporarily unavailable', 'kind': 'unavailable'}), 503

    @app.get('/health')
    def health():
        return {'ok': True}

    return app
