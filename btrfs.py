"""
Btrfs filesystem operations for btrfsd
Handles all Btrfs-specific functionality
"""

import subprocess
import logging
import json

from constants import BTRFS_CMD
from errors import BtrfsError, ErrorKind

logger = logging.getLogger('btrfsd.btrfs')

# Error counters reported per device by `btrfs device stats`
ERROR_COUNTERS = [
    ('write_io_errs', 'Write IO Errors: '),
    ('read_io_errs', 'Read IO Errors:  '),
    ('flush_io_errs', 'Flush IO Errors: '),
    ('corruption_errs', 'Corruption Errors: '),
    ('generation_errs', 'Generation Errors: '),
]


def _run(cmd, timeout=None, debug_commands=False):
    """Run a command, capturing its output. Raises BtrfsError if it can't be spawned."""
    if debug_commands:
        logger.debug(f"Running command: {' '.join(cmd)}")

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        raise BtrfsError(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")
    except OSError as e:
        raise BtrfsError(f"Failed to execute {cmd[0]}: {e}")

    if debug_commands:
        if result.stdout:
            logger.debug(f"stdout: {result.stdout}")
        if result.stderr:
            logger.debug(f"stderr: {result.stderr}")

    return result


def _combine_output(stdout, stderr):
    """Merge stdout and stderr of a failed command into one diagnostic message"""
    stdout = (stdout or '').strip()
    stderr = (stderr or '').strip()
    if not stdout:
        return stderr
    if not stderr:
        return stdout
    return f"{stderr}\n{stdout}"


def _strip_subvolume(source):
    """findmnt reports subvolume mounts as /dev/sda1[/@home]"""
    if source and source.endswith(']') and '[' in source:
        return source[:source.index('[')]
    return source


def find_mounted_btrfs_filesystems(btrfs_cmd=BTRFS_CMD, findmnt_cmd='findmnt'):
    """Find all mounted Btrfs filesystems on the current system.

    Every mount of the same Btrfs instance (e.g. several subvolumes) shares
    one MAJ:MIN device number, which is used as the physical device id.
    """
    cmd = [findmnt_cmd, '--json', '--list', '--types', 'btrfs',
           '--output', 'SOURCE,TARGET,MAJ:MIN']
    result = _run(cmd)

    # findmnt exits with 1 and prints nothing if no filesystem matched
    if result.returncode == 1 and not result.stdout.strip():
        return []
    if result.returncode != 0:
        raise BtrfsError(f"Failed to read the mount table: {result.stderr.strip()}")

    try:
        data = json.loads(result.stdout)
        entries = data['filesystems']
    except (ValueError, KeyError, TypeError) as e:
        raise BtrfsError(f"Failed to parse findmnt output: {e}", ErrorKind.PARSE)

    filesystems = []
    for entry in entries:
        mountpoint = entry.get('target')
        if not mountpoint:
            logger.debug(f"Ignoring Btrfs mount without target: {entry}")
            continue
        filesystems.append(BtrfsFilesystem(
            _strip_subvolume(entry.get('source')),
            mountpoint,
            entry.get('maj:min'),
            btrfs_cmd=btrfs_cmd
        ))

    logger.debug(f"Found {len(filesystems)} mounted Btrfs filesystems")
    return filesystems


def parse_device_stats(data):
    """Build an issue report from decoded `btrfs device stats` JSON.

    Returns (report_text, total_errors). The total is summed over all
    devices of the filesystem.
    """
    if not isinstance(data, dict):
        raise BtrfsError("Failed to parse stats output: Unexpected JSON document.", ErrorKind.PARSE)

    devices = data.get('device-stats')
    if not isinstance(devices, list):
        raise BtrfsError("Failed to parse stats output: No 'device-stats' section.", ErrorKind.PARSE)

    intro = ["Registered Devices:"]
    issues = ["Issue Report:"]
    total_errors = 0

    for entry in devices:
        if not isinstance(entry, dict):
            raise BtrfsError("Failed to parse stats output: Invalid device entry.", ErrorKind.PARSE)

        device = entry.get('device', '?')
        try:
            counters = [(label, int(entry.get(key) or 0)) for key, label in ERROR_COUNTERS]
        except (TypeError, ValueError) as e:
            raise BtrfsError(f"Failed to parse stats output: {e}", ErrorKind.PARSE)

        intro.append(f"  • {device}")

        device_errors = sum(value for _, value in counters)
        if device_errors == 0:
            continue

        total_errors += device_errors
        issues.append(f"Device: {device}")
        issues.append(f"Devid:  {entry.get('devid', '?')}")
        for label, value in counters:
            issues.append(f"{label}{value}")
        issues.append("")

    if total_errors == 0:
        issues.append("  • No errors found")

    report = '\n'.join(intro) + '\n\n' + '\n'.join(issues)
    return report.rstrip(), total_errors


class BtrfsFilesystem:
    """An active Btrfs mountpoint that maintenance actions can run on"""

    def __init__(self, device_name, mountpoint, devno, btrfs_cmd=BTRFS_CMD,
                 debug_commands=False, timeout=None):
        if not mountpoint:
            raise ValueError(f"Mountpoint for {device_name} is empty!")
        self.device_name = device_name
        self.mountpoint = str(mountpoint)
        self.devno = devno
        self.btrfs_cmd = btrfs_cmd
        self.debug_commands = debug_commands
        # None means wait for btrfs as long as it takes
        self.timeout = timeout

    def __repr__(self):
        return f"BtrfsFilesystem({self.device_name!r}, {self.mountpoint!r}, {self.devno!r})"

    def _run_command(self, args):
        return _run([self.btrfs_cmd] + args, timeout=self.timeout,
                    debug_commands=self.debug_commands)

    def read_usage(self):
        """Read filesystem usage information (btrfs filesystem df)"""
        try:
            result = self._run_command(['filesystem', 'df', self.mountpoint])
        except BtrfsError as e:
            raise BtrfsError(f"Failed to execute btrfs filesystem df command: {e}")

        if result.returncode != 0:
            raise BtrfsError(f"Running btrfs filesystem df has failed: {result.stderr.strip()}")

        return result.stdout.strip()

    def read_error_stats(self):
        """Read device error counters.

        Returns (report_text, total_error_count).
        """
        logger.debug(f"Running btrfs device stats on {self.mountpoint}")
        try:
            result = self._run_command(['--format=json', 'device', 'stats', self.mountpoint])
        except BtrfsError as e:
            raise BtrfsError(f"Failed to execute btrfs stats command: {e}")

        if result.returncode != 0:
            raise BtrfsError(f"Running btrfs stats has failed: {result.stderr.strip()}")

        try:
            data = json.loads(result.stdout)
        except ValueError as e:
            raise BtrfsError(f"Failed to parse btrfs stats JSON: {e}", ErrorKind.PARSE)

        return parse_device_stats(data)

    def scrub(self):
        """Run a scrub and wait for it to finish"""
        logger.info(f"Running btrfs scrub on {self.mountpoint}")
        try:
            result = self._run_command(['-q', 'scrub', 'start', '-B', self.mountpoint])
        except BtrfsError as e:
            raise BtrfsError(f"Failed to execute btrfs scrub command: {e}")

        if result.returncode != 0:
            raise BtrfsError(
                f"Scrub action failed: {_combine_output(result.stdout, result.stderr)}",
                ErrorKind.SCRUB_FAILED
            )

    def balance(self):
        """Run a balance that only compacts block groups with little usage"""
        logger.info(f"Running btrfs balance on {self.mountpoint}")
        try:
            result = self._run_command(['balance', 'start', '--enqueue',
                                        '-dusage=15', '-musage=10', self.mountpoint])
        except BtrfsError as e:
            raise BtrfsError(f"Failed to execute btrfs balance command: {e}")

        if result.returncode != 0:
            raise BtrfsError(
                f"Balance action failed: {_combine_output(result.stdout, result.stderr)}",
                ErrorKind.BALANCE_FAILED
            )
