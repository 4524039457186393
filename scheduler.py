"""
Scheduler for Btrfs maintenance actions

Invoked once per hour by a systemd timer. Each pass finds all mounted Btrfs
filesystems, and for every distinct filesystem runs the maintenance actions
that are due according to the configuration, recording the results in a
small per-filesystem state record.
"""

import fcntl
import logging
import os
import socket
import sys
import time
from datetime import datetime
from pathlib import Path

from btrfs import find_mounted_btrfs_filesystems
from config import SchedulerConfig
from constants import (CONFIG_PATH, STATE_DIR, LOCK_FILENAME, REFERENCE_TIME_MARGIN,
                       BROADCAST_INTERVAL, ISSUE_MAIL_INTERVAL)
from errors import BtrfsError, RecordError, MailError, SchedulerError, ErrorKind
from mailer import Mailer, ISSUE_MAIL_TEMPLATE, BROADCAST_TEMPLATE
from record import Action, FilesystemRecord
from status import StatusReport
from utils import is_on_battery, render_template


class FilesystemLogger:
    """Logger wrapper that prepends the mountpoint to messages"""
    def __init__(self, base_logger, mountpoint):
        self.base_logger = base_logger
        self.mountpoint = str(mountpoint)

    def _format_msg(self, msg):
        return f"[{self.mountpoint}] {msg}"

    def debug(self, msg, *args, **kwargs):
        self.base_logger.debug(self._format_msg(msg), *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.base_logger.info(self._format_msg(msg), *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.base_logger.warning(self._format_msg(msg), *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.base_logger.error(self._format_msg(msg), *args, **kwargs)


class Scheduler:
    def __init__(self, config_path=CONFIG_PATH, state_dir=STATE_DIR,
                 find_filesystems=find_mounted_btrfs_filesystems,
                 on_battery=is_on_battery, mailer=None, logger=None, clock=time.time):
        self.config_path = config_path
        self.state_dir = Path(state_dir)
        self.find_filesystems = find_filesystems
        self.on_battery = on_battery
        self.mailer = mailer or Mailer()
        self.logger = logger or logging.getLogger('btrfsd.scheduler')
        self.clock = clock

        self.loaded = False
        self.filesystems = []
        self.config = SchedulerConfig()
        self.default_intervals = {}
        self.reference_time = 0
        self._lock_fd = None

        self._handlers = {
            Action.STATS: self._run_stats,
            Action.SCRUB: self._run_scrub,
            Action.BALANCE: self._run_balance,
        }

    def load(self):
        """Find filesystems and read the configuration.

        Raises SchedulerError if called twice, BtrfsError if the mounted
        filesystems can't be enumerated and ConfigError for a broken
        configuration file.
        """
        if self.loaded:
            raise SchedulerError("Tried to initialize already initialized scheduler.")

        # One reference time for all decisions of this pass
        self.reference_time = int(self.clock()) - REFERENCE_TIME_MARGIN

        self.filesystems = list(self.find_filesystems())
        self.config = SchedulerConfig.load(self.config_path)
        self.default_intervals = self.config.default_intervals()

        self.loaded = True
        self.logger.debug(f"Loaded scheduler: {len(self.filesystems)} Btrfs mount(s) found")

    def _group_filesystems(self):
        """Group mounts of the same physical device.

        Returns a list of (canonical filesystem, all mountpoints) sorted by
        mountpoint; the canonical entry is the one with the lowest mountpoint.
        """
        groups = {}
        order = []
        for fs in sorted(self.filesystems, key=lambda f: f.mountpoint):
            if fs.devno in groups:
                groups[fs.devno][1].append(fs.mountpoint)
                continue
            groups[fs.devno] = (fs, [fs.mountpoint])
            order.append(fs.devno)
        return [groups[devno] for devno in order]

    def _acquire_lock(self):
        """Take the pass lock.

        Returns False if another instance holds it. If the lock file can't
        be set up at all, e.g. because the state directory sits on a
        filesystem that went read-only, the pass runs without the lock.
        """
        lock_file = self.state_dir / LOCK_FILENAME
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            lock_fd = open(lock_file, 'a+')
        except OSError as e:
            self.logger.warning(f"Unable to open lock file {lock_file}: {e}. Running without lock")
            return True

        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_fd.seek(0)
            pid = lock_fd.read().strip() or 'unknown'
            lock_fd.close()
            self.logger.warning(f"Another btrfsd instance is running (PID: {pid}), skipping this run")
            return False
        except OSError as e:
            lock_fd.close()
            self.logger.warning(f"Unable to lock {lock_file}: {e}. Running without lock")
            return True

        try:
            lock_fd.seek(0)
            lock_fd.truncate()
            lock_fd.write(str(os.getpid()))
            lock_fd.flush()
        except OSError as e:
            self.logger.debug(f"Could not write PID to {lock_file}: {e}")

        self._lock_fd = lock_fd
        return True

    def _release_lock(self):
        if self._lock_fd is None:
            return
        fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        self._lock_fd.close()
        self._lock_fd = None

    def run(self):
        """Run all due maintenance actions on all mounted Btrfs filesystems.

        Returns False if the pass was skipped because another instance is
        running, True otherwise. Failures of single filesystems or actions
        are logged and do not stop the pass.
        """
        if not self.loaded:
            self.load()

        if os.geteuid() != 0:
            raise SchedulerError("Need to be root to run maintenance actions.", ErrorKind.PRIVILEGE)

        if not self.filesystems:
            self.logger.debug("No mounted Btrfs filesystems found, nothing to do")
            return True

        if not self._acquire_lock():
            return False

        try:
            for fs, mountpoints in self._group_filesystems():
                for other in mountpoints[1:]:
                    self.logger.debug(f"Skipping {other}: already handled via a previous mount ({fs.mountpoint})")

                try:
                    self._process_filesystem(fs)
                except Exception as e:
                    self.logger.error(f"Maintenance of {fs.mountpoint} failed: {e}",
                                      exc_info=self.logger.isEnabledFor(logging.DEBUG))
        finally:
            self._release_lock()

        return True

    def _process_filesystem(self, fs):
        log = FilesystemLogger(self.logger, fs.mountpoint)
        record = FilesystemRecord(fs.mountpoint, self.state_dir)
        try:
            record.load(now=self.reference_time)
        except RecordError as e:
            log.warning(f"{e}. Continuing with an empty record.")

        for action in Action:
            interval = self.config.get_interval(fs.mountpoint, action)
            if interval == 0:
                log.debug(f"{action.label}: disabled")
                continue

            last_run = record.get_last_action_time(action)
            if self.reference_time - last_run <= interval:
                log.debug(f"{action.label}: not due yet")
                continue

            if not action.battery_safe and self.on_battery():
                log.debug(f"{action.label}: skipped, system is running on battery")
                continue

            log.debug(f"{action.label}: running")
            if self._handlers[action](fs, record, log):
                record.set_last_action_time(action, self.reference_time)
            else:
                log.warning(f"{action.label} did not complete, it will be retried on the next run")

        try:
            record.save()
        except RecordError as e:
            log.warning(str(e))

    def _notification_vars(self, fs):
        return {
            'sender': self.config.get_mail_from(fs.mountpoint),
            'date': datetime.fromtimestamp(self.reference_time).strftime('%Y-%m-%d %H:%M:%S'),
            'hostname': socket.gethostname(),
            'mountpoint': fs.mountpoint,
        }

    def _run_stats(self, fs, record, log):
        """Check the device error counters and notify about problems"""
        try:
            report, errors_count = fs.read_error_stats()
        except BtrfsError as e:
            log.warning(f"Failed to read error statistics: {e}")
            return False

        last_errors = record.get_value_int('errors', 'total', 0)
        if errors_count == 0:
            log.debug("No errors found")
            record.set_value_int('errors', 'total', 0)
            return True

        record.set_value_int('errors', 'total', errors_count)
        new_errors_found = errors_count > last_errors
        log.warning(f"Found {errors_count} error(s) on the filesystem")

        variables = self._notification_vars(fs)

        last_broadcast = record.get_value_int('messages', 'broadcast_sent', 0)
        if new_errors_found or self.reference_time - last_broadcast > BROADCAST_INTERVAL:
            self.mailer.broadcast(render_template(BROADCAST_TEMPLATE, variables))
            record.set_value_int('messages', 'broadcast_sent', self.reference_time)

        mail_address = self.config.get_mail_address(fs.mountpoint)
        if not mail_address:
            log.warning("No email address set, unable to send an issue report")
            return True

        last_mail = record.get_value_int('messages', 'issue_mail_sent', 0)
        if not new_errors_found and self.reference_time - last_mail < ISSUE_MAIL_INTERVAL:
            log.debug("Issue mail about these errors was sent recently, not sending another one")
            return True

        try:
            fs_usage = fs.read_usage()
        except BtrfsError as e:
            fs_usage = f"Unable to read filesystem usage: {e}"

        variables['issue_report'] = report
        variables['fs_usage'] = fs_usage
        try:
            self.mailer.send_email(mail_address, render_template(ISSUE_MAIL_TEMPLATE, variables))
        except MailError as e:
            log.warning(f"Failed to send issue report mail: {e}")
            return True

        record.set_value_int('messages', 'issue_mail_sent', self.reference_time)
        log.info(f"Sent issue report to {mail_address}")
        return True

    def _run_scrub(self, fs, record, log):
        try:
            fs.scrub()
        except BtrfsError as e:
            log.warning(str(e))
            return False
        log.info("Scrub completed")
        return True

    def _run_balance(self, fs, record, log):
        try:
            fs.balance()
        except BtrfsError as e:
            log.warning(str(e))
            return False
        log.info("Balance completed")
        return True

    def print_status(self, file=None):
        """Print configuration and last-run times of all filesystems.

        Returns False if any state record could not be read.
        """
        if not self.loaded:
            self.load()

        report = StatusReport(now=self.clock())
        for fs, mountpoints in self._group_filesystems():
            record = FilesystemRecord(fs.mountpoint, self.state_dir)
            try:
                record.load(now=self.reference_time)
            except RecordError as e:
                report.add_filesystem(fs, mountpoints, self.config, error=e)
                continue
            report.add_filesystem(fs, mountpoints, self.config, record=record)

        print(report.render(), file=file or sys.stdout)
        return not report.failed
