import os

from nmp_backup.backup.components import create_default_registry
from nmp_backup.backup.models import ScheduleConfig
from nmp_backup.backup.orchestrator import BackupOrchestrator
from nmp_backup.backup.retention import policy_from_settings


def _env_int(name, default=None):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name, default):
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _default_retention_days(max_backups):
    # 30 days unless the operator chose count based retention
    return _env_int('RETENTION_DAYS', None if max_backups else 30)


class Config:
    """Base configuration"""

    DEBUG = False
    TESTING = False

    # Backup root
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'

    # Stores
    DATABASE_URL = os.environ.get('DATABASE_URL')
    INFLUXDB_URL = os.environ.get('INFLUXDB_URL') or 'http://localhost:8086'
    INFLUXDB_ORG = os.environ.get('INFLUXDB_ORG')
    INFLUXDB_TOKEN = os.environ.get('INFLUXDB_TOKEN')
    CONFIG_DIR = os.environ.get('CONFIG_DIR') or '/etc/nmp'
    PLUGINS_DIR = os.environ.get('PLUGINS_DIR')
    BACKUP_EXCLUDE_PATTERNS = _env_list('BACKUP_EXCLUDE_PATTERNS', ['*.pyc', '__pycache__', '*.swp'])

    # External tools
    PG_DUMP_BIN = os.environ.get('PG_DUMP_BIN') or 'pg_dump'
    PSQL_BIN = os.environ.get('PSQL_BIN') or 'psql'
    INFLUX_BIN = os.environ.get('INFLUX_BIN') or 'influx'

    # Backup behaviour
    BACKUP_CRON = os.environ.get('BACKUP_CRON') or '0 0 1 * * *'
    BACKUP_COMPRESS = _env_bool('BACKUP_COMPRESS', True)
    BACKUP_TIMEOUT = _env_int('BACKUP_TIMEOUT', 30 * 60)
    BACKUP_COMPONENTS = _env_list('BACKUP_COMPONENTS', [])

    # Retention (RETENTION_DAYS wins when both are set, 0 disables)
    MAX_BACKUPS = _env_int('MAX_BACKUPS')
    RETENTION_DAYS = _default_retention_days(MAX_BACKUPS)

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or os.path.join(DATA_DIR, 'backups')
    CONFIG_DIR = os.environ.get('CONFIG_DIR') or os.path.join(DATA_DIR, 'config')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Testing configuration (paths are overridden by the test fixtures)"""
    TESTING = True
    DATABASE_URL = None
    SCHEDULER_ENABLED = False
    LOG_DIR = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def schedule_config_from_app(app_config) -> ScheduleConfig:
    """
    Build the recurring backup policy from Flask configuration.

    Args:
        app_config: app.config (or any mapping with the Config keys)

    Returns:
        ScheduleConfig
    """
    return ScheduleConfig(
        cron_expression=app_config['BACKUP_CRON'],
        backup_dir=app_config['BACKUP_DIR'],
        retention_days=app_config.get('RETENTION_DAYS'),
        max_backups=app_config.get('MAX_BACKUPS'),
        compress=app_config.get('BACKUP_COMPRESS', True),
        timeout=app_config.get('BACKUP_TIMEOUT') or 30 * 60,
        components=tuple(app_config.get('BACKUP_COMPONENTS') or ())
    )


def build_orchestrator(app_config) -> BackupOrchestrator:
    """
    Build the component registry and orchestrator for the configured stores.

    Args:
        app_config: app.config (or any mapping with the Config keys)

    Returns:
        BackupOrchestrator rooted at BACKUP_DIR
    """
    registry = create_default_registry(
        database_url=app_config.get('DATABASE_URL'),
        influxdb_url=app_config.get('INFLUXDB_URL'),
        influxdb_org=app_config.get('INFLUXDB_ORG'),
        influxdb_token=app_config.get('INFLUXDB_TOKEN'),
        config_dir=app_config.get('CONFIG_DIR'),
        plugins_dir=app_config.get('PLUGINS_DIR'),
        exclude_patterns=app_config.get('BACKUP_EXCLUDE_PATTERNS'),
        pg_dump_bin=app_config.get('PG_DUMP_BIN') or 'pg_dump',
        psql_bin=app_config.get('PSQL_BIN') or 'psql',
        influx_bin=app_config.get('INFLUX_BIN') or 'influx'
    )

    return BackupOrchestrator(
        app_config['BACKUP_DIR'],
        registry,
        retention_policy=policy_from_settings(
            app_config.get('MAX_BACKUPS'),
            app_config.get('RETENTION_DAYS')
        ),
        compress=app_config.get('BACKUP_COMPRESS', True),
        default_timeout=app_config.get('BACKUP_TIMEOUT')
    )
