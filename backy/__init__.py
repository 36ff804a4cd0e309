import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backy.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    # Transport chatter stays out of the backup log
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backy.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    # Register blueprints
    from backy.routes import commands_routes, jobs_routes
    app.register_blueprint(commands_routes.bp)
    app.register_blueprint(jobs_routes.bp)

    # Register CLI commands
    from backy.cli import backy_cli
    app.cli.add_command(backy_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        from backy.scheduler import is_scheduler_running
        return {'status': 'healthy', 'job_runner': is_scheduler_running()}, 200

    from backy.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    if app.config.get('START_SCHEDULER', True):
        app.logger.info("Initializing job runner in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop the job runner on app shutdown
        atexit.register(stop_scheduler)
    else:
        app.logger.info("Job runner disabled (START_SCHEDULER=False)")

    return app
