"""
Status display for btrfsd
"""

import logging
from datetime import datetime

import humanize
from tabulate import tabulate

from record import Action
from utils import format_duration

logger = logging.getLogger('btrfsd.status')


class StatusReport:
    """Renders configuration and last-run information per filesystem"""

    def __init__(self, now=None):
        self.now = now if now is not None else datetime.now().timestamp()
        self.sections = []
        self.failed = False

    def _format_last_run(self, timestamp, record_is_new):
        if record_is_new or not timestamp:
            return "Never"
        when = datetime.fromtimestamp(timestamp)
        ago = humanize.naturaltime(datetime.fromtimestamp(self.now) - when)
        return f"{when.strftime('%Y-%m-%d %H:%M:%S')} ({ago})"

    def add_filesystem(self, fs, mountpoints, config, record=None, error=None):
        """Add one (deduplicated) filesystem to the report.

        mountpoints lists every mountpoint backed by the same device. Pass
        error instead of a record if the state record failed to load.
        """
        lines = [f"Filesystem: {fs.mountpoint}  ({fs.device_name or 'unknown device'})"]
        others = [mp for mp in mountpoints if mp != fs.mountpoint]
        if others:
            lines.append(f"  Also mounted at: {', '.join(others)}")

        if error is not None:
            self.failed = True
            lines.append(f"  Error: Unable to read state record: {error}")
            self.sections.append('\n'.join(lines))
            return

        rows = []
        for action in Action:
            interval = config.get_interval(fs.mountpoint, action)
            last_run = self._format_last_run(record.get_last_action_time(action), record.is_new())
            notes = ''
            if action == Action.STATS:
                mail_address = config.get_mail_address(fs.mountpoint)
                notes = f"Mail to: {mail_address}" if mail_address else "No mail address set"
            rows.append([action.label, format_duration(interval), last_run, notes])

        table = tabulate(rows, headers=['Action', 'Interval', 'Last run', 'Notes'], tablefmt='simple')
        lines.extend('  ' + line for line in table.splitlines())
        self.sections.append('\n'.join(lines))

    def render(self):
        if not self.sections:
            return "No mounted Btrfs filesystems found."

        header = f"btrfsd Status - {datetime.fromtimestamp(self.now).strftime('%Y-%m-%d %H:%M:%S')}"
        out = [header, "=" * len(header)]
        for section in self.sections:
            out.append("")
            out.append(section)
        return '\n'.join(out)
