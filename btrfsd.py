#!/usr/bin/env python3
"""
btrfsd - Btrfs maintenance helper

Run hourly by a systemd timer; checks error counters, scrubs and balances
all mounted Btrfs filesystems according to /etc/btrfsd/settings.conf.
"""

import argparse
import logging
import logging.handlers
import os
import sys
from pathlib import Path
import colorlog

from constants import APP_VERSION as __version__
from errors import BtrfsdError

LOG_BACKEND_CONSOLE = 'console'
LOG_BACKEND_JOURNAL = 'journal'
LOG_BACKEND_SYSLOG = 'syslog'

# Pass skipped because another instance holds the lock (EX_TEMPFAIL)
EXIT_SKIPPED = 75

# syslog priorities understood by journald as line prefixes
SYSLOG_PRIORITIES = {
    logging.DEBUG: 7,
    logging.INFO: 6,
    logging.WARNING: 4,
    logging.ERROR: 3,
    logging.CRITICAL: 2,
}


class JournalFormatter(logging.Formatter):
    """Prefix messages with <N> so journald records the right priority"""

    def format(self, record):
        priority = SYSLOG_PRIORITIES.get(record.levelno, 6)
        return f"<{priority}>{super().format(record)}"


def select_log_backend(stream=None, environ=None):
    """Pick where log messages go: console on a tty, else journal or syslog"""
    stream = stream or sys.stdout
    environ = os.environ if environ is None else environ

    if stream.isatty():
        return LOG_BACKEND_CONSOLE
    if environ.get('JOURNAL_STREAM') or environ.get('INVOCATION_ID'):
        return LOG_BACKEND_JOURNAL
    return LOG_BACKEND_SYSLOG


def _create_handler(backend):
    if backend == LOG_BACKEND_CONSOLE:
        handler = colorlog.StreamHandler()
        handler.setFormatter(
            colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s [%(levelname)s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
        )
        return handler

    if backend == LOG_BACKEND_SYSLOG and os.path.exists('/dev/log'):
        handler = logging.handlers.SysLogHandler(
            address='/dev/log',
            facility=logging.handlers.SysLogHandler.LOG_DAEMON
        )
        handler.setFormatter(logging.Formatter('btrfsd[%(process)d]: %(message)s'))
        return handler

    # journald adds timestamps and the unit name itself
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JournalFormatter('%(message)s'))
    return handler


def setup_logging(verbosity=0, quiet=False, log_file=None, backend=None):
    """Setup logging for the detected backend and verbosity"""
    if quiet:
        level = logging.ERROR
    elif verbosity == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    backend = backend or select_log_backend()

    logger = logging.getLogger('btrfsd')
    logger.setLevel(level)
    logger.handlers.clear()
    logger.addHandler(_create_handler(backend))
    logger.propagate = False

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')
        )
        logger.addHandler(file_handler)

    logger.debug(f"Logging to {backend}")
    return logger


def create_parser():
    parser = argparse.ArgumentParser(
        description='Btrfs maintenance helper',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  btrfsd                          # Run all due maintenance actions
  btrfsd --status                 # Show configuration and last runs
  btrfsd --service install        # Install the hourly systemd timer
        """
    )

    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Show extra debugging information')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress non-error output')
    parser.add_argument('--version', action='version',
                        version=f'%(prog)s {__version__}')
    parser.add_argument('--status', action='store_true',
                        help='Display some short status information')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Log to file in addition to the default log backend')
    parser.add_argument('--service',
                        choices=['install', 'remove', 'status', 'logs'],
                        help='Systemd timer management commands')

    return parser


def main(argv=None):
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    logger = setup_logging(args.verbose, args.quiet, args.log_file)

    if args.service:
        from service_manager import ServiceManager
        return ServiceManager().execute_command(args.service)

    from scheduler import Scheduler
    scheduler = Scheduler(logger=logger.getChild('scheduler'))

    try:
        if args.status:
            return 0 if scheduler.print_status() else 1

        if not scheduler.run():
            return EXIT_SKIPPED
    except BtrfsdError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
