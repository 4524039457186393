"""Shared test fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path for module imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from errors import MailError  # noqa: E402

NOW = 1_700_000_000


class FakeFilesystem:
    """Stands in for BtrfsFilesystem without running btrfs."""

    def __init__(self, mountpoint, devno='0:40', device_name='/dev/sda1', errors=0):
        self.device_name = device_name
        self.mountpoint = mountpoint
        self.devno = devno
        self.errors = errors
        self.stats_error = None
        self.scrub_error = None
        self.balance_error = None
        self.usage = "Data, single: total=1.00GiB, used=512.00MiB"
        self.calls = []

    def read_error_stats(self):
        self.calls.append('stats')
        if self.stats_error:
            raise self.stats_error
        return f"Issue Report:\n{self.errors} errors", self.errors

    def read_usage(self):
        self.calls.append('usage')
        return self.usage

    def scrub(self):
        self.calls.append('scrub')
        if self.scrub_error:
            raise self.scrub_error

    def balance(self):
        self.calls.append('balance')
        if self.balance_error:
            raise self.balance_error


class FakeMailer:
    """Records notifications instead of delivering them."""

    def __init__(self):
        self.mails = []
        self.broadcasts = []
        self.fail = False

    def send_email(self, to_address, body):
        if self.fail:
            raise MailError("sendmail exploded")
        self.mails.append((to_address, body))

    def broadcast(self, message):
        self.broadcasts.append(message)
        return 1


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(os, 'geteuid', lambda: 0)


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / 'state'


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / 'settings.conf'


@pytest.fixture
def make_scheduler(state_dir, config_path, mailer, clock):
    """Factory building a Scheduler wired to fakes."""
    from scheduler import Scheduler

    def factory(filesystems, config=None, on_battery=False):
        if config is not None:
            config_path.write_text(config)
        return Scheduler(
            config_path=config_path,
            state_dir=state_dir,
            find_filesystems=lambda: list(filesystems),
            on_battery=lambda: on_battery,
            mailer=mailer,
            clock=clock,
        )

    return factory
