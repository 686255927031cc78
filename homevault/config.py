import os


def _env_bool(name, default):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    DEBUG = False

    # Home directory to back up
    HOME_DIR = os.environ.get('HOME_DIR') or '/data/home'
    SCRATCH_DIR = os.environ.get('SCRATCH_DIR') or os.path.join(HOME_DIR, 'backup-tmp')
    LOG_DIR = os.environ.get('LOG_DIR') or HOME_DIR

    # Backup / restore switches
    ENABLE_BACKUP = _env_bool('ENABLE_BACKUP', 'true')
    ENABLE_AUTO_RESTORE = _env_bool('ENABLE_AUTO_RESTORE', 'true')
    RESTORE_OVERWRITES_DATA = _env_bool('RESTORE_OVERWRITES_DATA', 'false')

    # Storage
    STORAGE_TYPE = os.environ.get('STORAGE_TYPE') or 'local'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_PREFIX = os.environ.get('S3_PREFIX') or ''
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Container format: zip, tar, tar.gz, tar.bz2, tar.xz
    VOLUME_FORMAT = os.environ.get('VOLUME_FORMAT') or 'zip'

    # Schedule
    FULL_BACKUP_INTERVAL_HOURS = int(os.environ.get('FULL_BACKUP_INTERVAL_HOURS', 1))
    INCREMENTAL_BACKUP_INTERVAL_MINUTES = int(os.environ.get('INCREMENTAL_BACKUP_INTERVAL_MINUTES', 3))
    FULL_BACKUP_CRON = os.environ.get('FULL_BACKUP_CRON')
    CHECK_INTERVAL_SECONDS = int(os.environ.get('CHECK_INTERVAL_SECONDS', 60))
    SCHEDULER_TIMEZONE = 'UTC'

    # Restore
    RESTORE_WORKERS = int(os.environ.get('RESTORE_WORKERS', 4))

    # Scopes: JSON list of {"scope_name", "filepath", "excluded_filepaths"}
    CUSTOM_SCOPES = os.environ.get('CUSTOM_SCOPES') or '[]'
    INCLUDE_DEFAULT_SCOPE = _env_bool('INCLUDE_DEFAULT_SCOPE', 'true')

    # Comma separated globs of configuration files, a change triggers an incremental backup
    CONFIG_FILE_PATTERNS = (os.environ.get('CONFIG_FILE_PATTERNS') or '*.xml,jobs/*/config.xml').split(',')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    HOME_DIR = os.path.join(DATA_DIR, 'home')
    SCRATCH_DIR = os.path.join(HOME_DIR, 'backup-tmp')
    LOG_DIR = HOME_DIR
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration, directories are set by the tests"""
    DEBUG = True
    ENABLE_AUTO_RESTORE = False
    STORAGE_TYPE = 'local'
    CUSTOM_SCOPES = '[]'
    INCLUDE_DEFAULT_SCOPE = True
    FULL_BACKUP_CRON = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def load_config(config_name=None, **overrides):
    """
    Build the settings dict for a configuration.

    Args:
        config_name: Key of the config dict, defaults to $HOMEVAULT_ENV or 'production'
        **overrides: Settings replacing the class values

    Returns:
        Dict of all upper-case settings
    """
    if config_name is None:
        config_name = os.environ.get('HOMEVAULT_ENV', 'production')

    config_class = config[config_name]
    settings = {key: getattr(config_class, key) for key in dir(config_class) if key.isupper()}
    settings.update(overrides)

    # derived paths follow an overridden home directory
    if 'HOME_DIR' in overrides:
        if 'SCRATCH_DIR' not in overrides:
            settings['SCRATCH_DIR'] = os.path.join(settings['HOME_DIR'], 'backup-tmp')
        if 'LOG_DIR' not in overrides:
            settings['LOG_DIR'] = settings['HOME_DIR']

    return settings
