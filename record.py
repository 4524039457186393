"""
Persistent per-filesystem state for btrfsd

Every mounted Btrfs filesystem gets a small INI record in the state
directory, holding the last time each maintenance action ran, the last seen
error count and when notifications were last sent.
"""

import configparser
import logging
import os
import time
from enum import Enum
from pathlib import Path
from typing import Optional

from constants import STATE_DIR
from errors import RecordError, ErrorKind
from utils import path_to_filename

logger = logging.getLogger('btrfsd.record')


class Action(Enum):
    """Maintenance actions, in execution order"""

    STATS = ('stats', 'Check for Issues', True)
    SCRUB = ('scrub', 'Scrub Filesystem', False)
    BALANCE = ('balance', 'Balance Filesystem', False)

    def __init__(self, key, label, battery_safe):
        self.key = key
        self.label = label
        self.battery_safe = battery_safe

    @classmethod
    def from_string(cls, text: str) -> Optional['Action']:
        for action in cls:
            if action.key == text:
                return action
        return None


class FilesystemRecord:
    """State record of one mounted Btrfs filesystem"""

    def __init__(self, mountpoint: str, state_dir: Optional[str] = None):
        if not mountpoint:
            raise ValueError("Mountpoint for record file is empty!")
        self.mountpoint = mountpoint
        self.state_dir = Path(state_dir or STATE_DIR)
        self._state = self._new_state()
        self._is_new = False

    @staticmethod
    def _new_state():
        state = configparser.ConfigParser(interpolation=None)
        # Keep key case as written
        state.optionxform = str
        return state

    @property
    def path(self) -> Path:
        return self.state_dir / f"{path_to_filename(self.mountpoint)}.state"

    def load(self, now: Optional[int] = None):
        """Load the record from disk.

        If no record exists yet, all actions except the cheap stats check are
        treated as having just run, so a new filesystem does not get scrubbed
        and balanced immediately. On a read error the in-memory record is
        left empty and RecordError is raised.
        """
        path = self.path
        self._state = self._new_state()
        self._is_new = False

        if not path.exists():
            self._is_new = True
            if now is None:
                now = int(time.time())
            for action in Action:
                if action != Action.STATS:
                    self.set_last_action_time(action, now)
            return

        try:
            with open(path, 'r', encoding='utf-8') as f:
                self._state.read_file(f, source=str(path))
        except (OSError, UnicodeDecodeError) as e:
            self._state = self._new_state()
            raise RecordError(f"Failed to read state record {path}: {e}")
        except configparser.Error as e:
            self._state = self._new_state()
            raise RecordError(f"Failed to parse state record {path}: {e}", ErrorKind.PARSE)

    def save(self):
        """Write the record to disk atomically"""
        path = self.path
        temp_path = path.with_name(path.name + '.tmp')
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'w', encoding='utf-8') as f:
                self._state.write(f)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError as e:
            raise RecordError(f"Failed to save state record {path}: {e}")

    def is_new(self) -> bool:
        return self._is_new

    def get_last_action_time(self, action: Action) -> int:
        """Last UNIX timestamp the action ran successfully, 0 if never"""
        return self.get_value_int('times', action.key, 0)

    def set_last_action_time(self, action: Action, timestamp: int):
        self.set_value_int('times', action.key, timestamp)

    def set_last_action_time_now(self, action: Action):
        self.set_last_action_time(action, int(time.time()))

    def get_value_int(self, group: str, key: str, default: int = 0) -> int:
        try:
            return self._state.getint(group, key)
        except (configparser.Error, ValueError):
            return default

    def set_value_int(self, group: str, key: str, value: int):
        if not self._state.has_section(group):
            self._state.add_section(group)
        self._state.set(group, key, str(int(value)))
