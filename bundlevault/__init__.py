import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """
    Configure logging for the bundlevault package.

    Handlers are attached to the ``bundlevault`` logger (which is also
    ``app.logger``), and replaced rather than stacked when a second app is
    created in the same process.
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'bundlevault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    package_logger = logging.getLogger('bundlevault')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.setLevel(log_level)
    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)
        package_logger.addHandler(handler)

    # paramiko is chatty at INFO
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _ensure_sqlite_directory(uri: str):
    if uri.startswith('sqlite:///') and ':memory:' not in uri:
        db_dir = os.path.dirname(uri.replace('sqlite:///', '', 1))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)


def create_app(config_name=None, test_config=None):
    """
    Flask application factory

    Args:
        config_name: Key of bundlevault.config.config (default: FLASK_ENV or production)
        test_config: Mapping applied on top of the selected configuration
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from bundlevault.config import config
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)
    _ensure_sqlite_directory(app.config['SQLALCHEMY_DATABASE_URI'])

    # Initialize extensions
    db.init_app(app)

    # Register CLI commands
    from bundlevault.cli import backup_cli
    app.cli.add_command(backup_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Create tables on first start
    from bundlevault import models
    with app.app_context():
        db.create_all()

    return app
