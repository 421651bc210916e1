import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app


EXTENSION_NAME = 'nmp_backup'


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (LOG_DIR unset = console only)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'nmp-backup.log'),
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

    # Configure Flask app logger (also the parent of all module loggers).
    # basicConfig does nothing if the root logger already has handlers.
    app.logger.setLevel(log_level)
    if handlers[0] not in logging.getLogger().handlers:
        for handler in handlers:
            app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, start_scheduler=False, config_overrides=None):
    """
    Flask application factory.

    Args:
        config_name: Key of nmp_backup.config.config (default: FLASK_ENV or production)
        config_overrides: Values applied on top of the config class
        start_scheduler: Start scheduled backups in this process
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from nmp_backup.config import build_orchestrator, config, schedule_config_from_app
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Backup root is created by the orchestrator
    from nmp_backup.scheduler import BackupScheduler

    orchestrator = build_orchestrator(app.config)
    scheduler = BackupScheduler(orchestrator, timezone=app.config['SCHEDULER_TIMEZONE'])
    app.extensions[EXTENSION_NAME] = {
        'orchestrator': orchestrator,
        'scheduler': scheduler
    }
    app.logger.info(
        f"Backup orchestrator ready (backup_dir={orchestrator.backup_dir}, "
        f"components={orchestrator.registry.names()})"
    )

    from nmp_backup.cli import backup_cli
    app.cli.add_command(backup_cli)

    if start_scheduler and app.config.get('SCHEDULER_ENABLED', True):
        import atexit

        scheduler.start(schedule_config_from_app(app.config))

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(scheduler.stop)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler not started in this process")

    return app


def get_orchestrator(app=None):
    """BackupOrchestrator of the given (or current) app."""
    app = app or current_app
    return app.extensions[EXTENSION_NAME]['orchestrator']


def get_scheduler(app=None):
    """BackupScheduler of the given (or current) app."""
    app = app or current_app
    return app.extensions[EXTENSION_NAME]['scheduler']
