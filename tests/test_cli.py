"""Tests for the command line entry point."""

import io
import logging

import pytest

import btrfsd
import scheduler
from btrfsd import (JournalFormatter, EXIT_SKIPPED, select_log_backend, setup_logging, main,
                    LOG_BACKEND_CONSOLE, LOG_BACKEND_JOURNAL, LOG_BACKEND_SYSLOG)
from errors import SchedulerError, ErrorKind


class TtyStream(io.StringIO):
    def isatty(self):
        return True


@pytest.fixture(autouse=True)
def restore_logger(monkeypatch):
    """setup_logging reconfigures the package logger, undo that after each test"""
    logger = logging.getLogger('btrfsd')
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    monkeypatch.setattr(btrfsd, 'select_log_backend', lambda: LOG_BACKEND_JOURNAL)
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


class FakeScheduler:
    instances = []
    status_ok = True
    run_error = None
    run_result = True

    def __init__(self, logger=None):
        self.logger = logger
        self.ran = False
        FakeScheduler.instances.append(self)

    def print_status(self):
        return self.status_ok

    def run(self):
        if self.run_error:
            raise self.run_error
        self.ran = True
        return self.run_result


@pytest.fixture
def fake_scheduler(monkeypatch):
    FakeScheduler.instances = []
    FakeScheduler.status_ok = True
    FakeScheduler.run_error = None
    FakeScheduler.run_result = True
    monkeypatch.setattr(scheduler, 'Scheduler', FakeScheduler)
    return FakeScheduler


class TestSelectLogBackend:
    def test_terminal(self):
        assert select_log_backend(TtyStream(), {'INVOCATION_ID': 'x'}) == LOG_BACKEND_CONSOLE

    def test_systemd(self):
        assert select_log_backend(io.StringIO(), {'JOURNAL_STREAM': '8:1234'}) == LOG_BACKEND_JOURNAL
        assert select_log_backend(io.StringIO(), {'INVOCATION_ID': 'abc'}) == LOG_BACKEND_JOURNAL

    def test_other(self):
        assert select_log_backend(io.StringIO(), {}) == LOG_BACKEND_SYSLOG


def test_journal_formatter_prefixes_priority():
    formatter = JournalFormatter('%(message)s')
    record = logging.LogRecord('btrfsd', logging.WARNING, __file__, 1, 'disk on fire', None, None)
    assert formatter.format(record) == '<4>disk on fire'
    record.levelno = logging.DEBUG
    assert formatter.format(record) == '<7>disk on fire'


class TestSetupLogging:
    def test_levels(self):
        assert setup_logging(0, backend=LOG_BACKEND_JOURNAL).level == logging.INFO
        assert setup_logging(1, backend=LOG_BACKEND_JOURNAL).level == logging.DEBUG
        assert setup_logging(1, quiet=True, backend=LOG_BACKEND_JOURNAL).level == logging.ERROR

    def test_handlers_are_replaced(self):
        setup_logging(backend=LOG_BACKEND_CONSOLE)
        logger = setup_logging(backend=LOG_BACKEND_JOURNAL)
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JournalFormatter)

    def test_log_file(self, tmp_path):
        log_file = tmp_path / 'logs' / 'btrfsd.log'
        logger = setup_logging(backend=LOG_BACKEND_JOURNAL, log_file=str(log_file))
        logger.info("hello file")
        for handler in logger.handlers:
            handler.flush()
        assert "hello file" in log_file.read_text()
        logger.handlers[-1].close()


class TestMain:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(['--version'])
        assert excinfo.value.code == 0
        assert '0.2.3' in capsys.readouterr().out

    def test_run(self, fake_scheduler):
        assert main([]) == 0
        assert fake_scheduler.instances[0].ran
        assert fake_scheduler.instances[0].logger.name == 'btrfsd.scheduler'

    def test_skipped_pass_has_own_exit_code(self, fake_scheduler):
        fake_scheduler.run_result = False
        assert main([]) == EXIT_SKIPPED

    def test_status(self, fake_scheduler):
        assert main(['--status']) == 0
        assert not fake_scheduler.instances[0].ran

    def test_status_failure(self, fake_scheduler):
        fake_scheduler.status_ok = False
        assert main(['--status']) == 1

    def test_error_exit_code(self, fake_scheduler):
        fake_scheduler.run_error = SchedulerError("Need to be root", ErrorKind.PRIVILEGE)
        assert main(['-q']) == 1

    def test_interrupt(self, fake_scheduler):
        fake_scheduler.run_error = KeyboardInterrupt()
        assert main([]) == 1

    def test_service_command(self, monkeypatch):
        import service_manager

        commands = []
        monkeypatch.setattr(service_manager.ServiceManager, 'execute_command',
                            lambda self, command: commands.append(command) or 0)
        assert main(['--service', 'status']) == 0
        assert commands == ['status']

    def test_invalid_service_command(self):
        with pytest.raises(SystemExit):
            main(['--service', 'restart'])
