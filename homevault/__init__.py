import os
import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler


def configure_logging(settings):
    """Configure application logging"""

    log_dir = settings['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if settings.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler, excluded from incremental backups
    from homevault.service import WORKER_LOG_FILENAME
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, WORKER_LOG_FILENAME),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_storage_from_settings(settings):
    """
    Create the configured storage backend.

    Returns:
        Storage instance, or None if the storage configuration is invalid
    """
    from homevault.backup.storage import create_storage

    logger = logging.getLogger(__name__)
    storage_type = settings['STORAGE_TYPE']

    try:
        if storage_type == 'local':
            # a missing directory is created, validation checks the rest
            os.makedirs(settings['LOCAL_BACKUP_DIR'], exist_ok=True)
            return create_storage('local', directory=settings['LOCAL_BACKUP_DIR'])
        return create_storage(
            storage_type,
            bucket_name=settings.get('S3_BUCKET'),
            region=settings.get('S3_REGION'),
            prefix=settings.get('S3_PREFIX'),
            access_key=settings.get('AWS_ACCESS_KEY_ID'),
            secret_key=settings.get('AWS_SECRET_ACCESS_KEY'),
        )
    except (ValueError, OSError) as e:
        logger.error(f"Invalid storage configuration, backup and restore are disabled: {e}")
        return None


def create_service(config_name=None, configure_logs=True, **overrides):
    """
    BackupService factory

    Args:
        config_name: Configuration to load ('development', 'production', 'testing')
        configure_logs: Whether logging handlers are installed
        **overrides: Settings replacing the configured values

    Returns:
        BackupService, not initialized yet
    """
    from homevault.config import load_config
    from homevault.backup.volume import create_volume
    from homevault.service import BackupService, build_scope

    settings = load_config(config_name, **overrides)

    if configure_logs:
        configure_logging(settings)

    logger = logging.getLogger(__name__)

    # Ensure required directories exist
    os.makedirs(settings['HOME_DIR'], exist_ok=True)
    os.makedirs(settings['SCRATCH_DIR'], exist_ok=True)

    storage = create_storage_from_settings(settings)

    service = BackupService(
        volume=create_volume(settings['VOLUME_FORMAT']),
        scope=build_scope(settings['CUSTOM_SCOPES'], settings['INCLUDE_DEFAULT_SCOPE']),
        storage=storage,
        root=settings['HOME_DIR'],
        scratch_dir=settings['SCRATCH_DIR'],
        enable_backup=settings['ENABLE_BACKUP'] and storage is not None,
        enable_auto_restore=settings['ENABLE_AUTO_RESTORE'] and storage is not None,
        restore_overwrites_data=settings['RESTORE_OVERWRITES_DATA'],
        full_backup_interval=timedelta(hours=settings['FULL_BACKUP_INTERVAL_HOURS']),
        incremental_backup_interval=timedelta(minutes=settings['INCREMENTAL_BACKUP_INTERVAL_MINUTES']),
        full_backup_cron=settings['FULL_BACKUP_CRON'],
        restore_workers=settings['RESTORE_WORKERS'],
        config_file_patterns=settings['CONFIG_FILE_PATTERNS'],
    )
    service.settings = settings

    logger.info(f"Backup service created for {settings['HOME_DIR']} (storage: {storage!r})")
    return service
