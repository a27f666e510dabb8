import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler (skipped when LOG_DIR is unset, e.g. in tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'wpbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)

    app.logger.setLevel(log_level)
    app.logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from wpbackup.config import config, collect_overrides
    app.config.from_object(config[config_name])

    # Settings file first, then environment variables
    environ = {} if app.config.get('TESTING') else os.environ
    app.config.update(collect_overrides(app.config.get('CONFIG_FILE'), environ))

    # Configure logging
    configure_logging(app)

    # Status endpoints
    from wpbackup.routes import status_routes
    app.register_blueprint(status_routes.bp)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # CLI commands (flask --app wpbackup <command>)
    from wpbackup.cli import register_commands
    register_commands(app)

    return app
