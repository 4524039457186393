"""
Error types for btrfsd
"""

from enum import Enum


class ErrorKind(Enum):
    FAILED = "failed"
    PARSE = "parse"
    SCRUB_FAILED = "scrub-failed"
    BALANCE_FAILED = "balance-failed"
    IO = "io"
    PRIVILEGE = "privilege"


class BtrfsdError(Exception):
    """Base error, tagged with an ErrorKind"""

    def __init__(self, message, kind=ErrorKind.FAILED):
        super().__init__(message)
        self.kind = kind


class BtrfsError(BtrfsdError):
    """Btrfs operation error"""
    pass


class RecordError(BtrfsdError):
    """Failed to read or write a filesystem state record"""

    def __init__(self, message, kind=ErrorKind.IO):
        super().__init__(message, kind)


class ConfigError(BtrfsdError):
    """Configuration file could not be loaded"""

    def __init__(self, message, kind=ErrorKind.PARSE):
        super().__init__(message, kind)


class MailError(BtrfsdError):
    """Notification could not be delivered"""
    pass


class SchedulerError(BtrfsdError):
    """Scheduler state or privilege error"""
    pass
