"""
Configuration for btrfsd

settings.conf is an INI file with a [default] section and one section per
mountpoint, e.g.:

    [default]
    mail_address = admin@example.com
    scrub_interval = 1M

    [/srv/data]
    balance_interval = 6M
"""

import configparser
import logging
import socket
from pathlib import Path

from errors import ConfigError
from record import Action
from utils import parse_duration

logger = logging.getLogger('btrfsd.config')

DEFAULT_SECTION = 'default'

# Used when neither the mountpoint nor the default section set an interval.
# Balancing is disabled unless explicitly enabled.
DEFAULT_INTERVALS = {
    Action.STATS: '1h',
    Action.SCRUB: '1M',
    Action.BALANCE: 'never',
}


class SchedulerConfig:
    """Read-only access to the resolved configuration values"""

    def __init__(self, parser=None, path=None):
        self.parser = parser or self._new_parser()
        self.path = path
        self._default_intervals = None

    @staticmethod
    def _new_parser():
        # Sections are real mountpoints, the special DEFAULT section of
        # configparser must not leak into them
        return configparser.ConfigParser(interpolation=None, default_section='\0')

    @classmethod
    def load(cls, path):
        """Load configuration from path. A missing file yields an empty configuration."""
        path = Path(path)
        parser = cls._new_parser()

        if not path.exists():
            logger.debug(f"No configuration found at {path}, using defaults")
            return cls(parser, path)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                parser.read_file(f, source=str(path))
        except (configparser.Error, OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to load configuration: {e}")

        logger.debug(f"Loaded configuration from {path}")
        return cls(parser, path)

    def get(self, mountpoint, key, fallback=None):
        """Look up a key in the mountpoint section, then in the default section"""
        for section in (mountpoint, DEFAULT_SECTION):
            if section and self.parser.has_option(section, key):
                return self.parser.get(section, key)
        return fallback

    def _parse_interval(self, value, where):
        seconds = parse_duration(value)
        if seconds == 0 and value.strip() != 'never':
            logger.warning(f"Invalid interval '{value}' for {where}, the action is disabled")
        return seconds

    def default_intervals(self):
        """Intervals from the default section, with built-in fallbacks"""
        if self._default_intervals is None:
            intervals = {}
            for action in Action:
                key = f"{action.key}_interval"
                value = DEFAULT_INTERVALS[action]
                if self.parser.has_option(DEFAULT_SECTION, key):
                    value = self.parser.get(DEFAULT_SECTION, key)
                intervals[action] = self._parse_interval(value, f"[{DEFAULT_SECTION}] {key}")
            self._default_intervals = intervals
        return self._default_intervals

    def get_interval(self, mountpoint, action):
        """Interval in seconds for an action on a filesystem, 0 if disabled"""
        key = f"{action.key}_interval"
        if self.parser.has_option(mountpoint, key):
            return self._parse_interval(self.parser.get(mountpoint, key), f"[{mountpoint}] {key}")
        return self.default_intervals()[action]

    def get_mail_address(self, mountpoint):
        address = self.get(mountpoint, 'mail_address')
        return address.strip() if address and address.strip() else None

    def get_mail_from(self, mountpoint):
        sender = self.get(mountpoint, 'mail_from')
        if sender and sender.strip():
            return sender.strip()
        return f"btrfsd@{socket.getfqdn()}"
