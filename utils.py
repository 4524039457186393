"""
Helper functions for btrfsd: duration parsing, templates, state filenames
and the power-state oracle
"""

import logging
import posixpath
import re
from datetime import timedelta
from typing import Mapping, Optional

import humanize
import psutil
import xxhash

logger = logging.getLogger('btrfsd.utils')

SECONDS_IN_AN_HOUR = 60 * 60
SECONDS_IN_A_DAY = 24 * SECONDS_IN_AN_HOUR
SECONDS_IN_A_WEEK = 7 * SECONDS_IN_A_DAY
# An average month is assumed to have 30.44 days
SECONDS_IN_A_MONTH = int(30.44 * SECONDS_IN_A_DAY)

DURATION_UNITS = {
    'h': SECONDS_IN_AN_HOUR,
    'd': SECONDS_IN_A_DAY,
    'w': SECONDS_IN_A_WEEK,
    'M': SECONDS_IN_A_MONTH,
}

_DURATION_RE = re.compile(r'([0-9]+)([^0-9]?)')
_PLACEHOLDER_RE = re.compile(r'\{\{(.*?)\}\}', re.DOTALL)

ROOT_FILENAME = '-'


def parse_duration(text: Optional[str]) -> int:
    """Parse interval strings like '1h', '3d', '2w', '1M' or '6' into seconds.

    A missing unit means hours. Units are case-sensitive ('M' is a month,
    'm' is invalid). Returns 0 for "never", empty or invalid input, and
    callers treat 0 as "disabled".
    """
    if not text:
        return 0

    match = _DURATION_RE.fullmatch(text)
    if not match:
        return 0

    value = int(match.group(1))
    if value <= 0:
        return 0

    suffix = match.group(2)
    if not suffix:
        return value * SECONDS_IN_AN_HOUR
    if suffix not in DURATION_UNITS:
        return 0
    return value * DURATION_UNITS[suffix]


def format_duration(seconds: int) -> str:
    """Human-readable interval, 'never' for a disabled (0) interval"""
    if seconds <= 0:
        return "never"
    return humanize.naturaldelta(timedelta(seconds=seconds))


def render_template(template: Optional[str], variables: Mapping[str, Optional[str]]) -> Optional[str]:
    """Replace {{name}} placeholders with values from the mapping.

    Placeholders without a value in the mapping are kept as they are.
    """
    if template is None:
        return None

    def replace(match):
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        value = variables[name]
        return '' if value is None else str(value)

    return _PLACEHOLDER_RE.sub(replace, template)


def canonicalize_path(path: Optional[str]) -> str:
    """Normalize a mountpoint path; the empty path is treated as root"""
    if not path:
        return '/'
    path = posixpath.normpath(path)
    # normpath keeps a leading '//' as POSIX allows it, we don't
    if path.startswith('//'):
        path = '/' + path.lstrip('/')
    return path


def path_to_filename(path: Optional[str]) -> str:
    """Map a mountpoint path to a unique filename for its state record.

    The root path (and the empty path) maps to '-'. Every other path is
    escaped and gets a hash of its canonical form appended, so that paths
    which escape to the same text still produce different names.
    """
    canonical = canonicalize_path(path)

    name = canonical[1:] if canonical.startswith('/') else canonical
    if not name:
        return ROOT_FILENAME
    if name.startswith('.'):
        name = '_' + name
    name = name.replace('/', '-').replace('\\', '-')

    digest = xxhash.xxh64_intdigest(canonical.encode('utf-8'))
    return f"{name}_{digest}"


def is_on_battery() -> bool:
    """Check whether the system is currently running on battery power"""
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, OSError) as e:
        logger.debug(f"Unable to query battery state: {e}")
        return False

    if battery is None:
        return False
    # power_plugged is None if the state can't be determined
    return battery.power_plugged is False
