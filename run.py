#!/usr/bin/env python3
"""HomeVault worker runner"""
import argparse
import logging
import signal
import sys
import threading

from homevault import create_service
from homevault.service import RestoreError


def serve(service):
    """Restore if needed, then run scheduled backups until interrupted."""
    from homevault.scheduler import init_scheduler, start_scheduler, stop_scheduler

    service.initialize()

    init_scheduler(service, service.settings['CHECK_INTERVAL_SECONDS'])
    start_scheduler()

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stopped.set())
    try:
        stopped.wait()
    except KeyboardInterrupt:
        pass
    finally:
        stop_scheduler()
    return 0


def backup(service):
    # no restore before a one-off backup
    service.end_backup_or_restore()
    run = service.create_backup(full=True)
    return 0 if run is not None and run.success else 1


def restore(service):
    service.end_backup_or_restore()
    try:
        service.restore()
    except RestoreError as e:
        logging.getLogger(__name__).error(f"Restore failed: {e}")
        return 1
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Back up and restore a home directory.')
    parser.add_argument('--config', default=None,
                        help='configuration name (development, production, testing)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('serve', help='restore, then run scheduled backups')
    subparsers.add_parser('backup', help='create a full backup and exit')
    subparsers.add_parser('restore', help='restore the latest backup and exit')

    args = parser.parse_args(argv)
    service = create_service(args.config)

    if args.command == 'serve':
        return serve(service)
    if args.command == 'backup':
        return backup(service)
    return restore(service)


if __name__ == '__main__':
    sys.exit(main())
