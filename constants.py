"""
Global constants for btrfsd
"""

# Application version
APP_VERSION = "0.2.3"

# Configuration file, one section per mountpoint plus a "default" section
CONFIG_PATH = "/etc/btrfsd/settings.conf"

# Per-filesystem state records live here (created on demand)
STATE_DIR = "/var/lib/btrfsd"

# Held by a running scheduler pass, relative to STATE_DIR
LOCK_FILENAME = "btrfsd.lock"

BTRFS_CMD = "btrfs"

# Subtracted from "now" when a pass captures its reference time, so an hourly
# timer does not skip an action because of a few seconds of drift
REFERENCE_TIME_MARGIN = 60

# Repeat a terminal broadcast about unchanged errors at most this often
BROADCAST_INTERVAL = 6 * 60 * 60

# Repeat an issue mail about unchanged errors at most this often
ISSUE_MAIL_INTERVAL = 20 * 60 * 60
