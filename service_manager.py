"""
Systemd integration for btrfsd
Installs and removes the oneshot service and the hourly timer that runs it
"""

import os
import sys
import subprocess
import logging
import shutil

logger = logging.getLogger('btrfsd.service')

SERVICE_TEMPLATE = """[Unit]
Description=Btrfs maintenance helper
Documentation=man:btrfsd(8)
After=local-fs.target

[Service]
Type=oneshot
ExecStart={btrfsd_path}
SuccessExitStatus=75
Nice=19
IOSchedulingClass=idle
StandardOutput=journal
StandardError=journal
SyslogIdentifier=btrfsd
"""

TIMER_TEMPLATE = """[Unit]
Description=Run Btrfs maintenance helper hourly

[Timer]
OnCalendar=hourly
Persistent=true

[Install]
WantedBy=timers.target
"""


class ServiceManager:
    """Manages the systemd service and timer for btrfsd"""

    # Common systemd paths by distribution
    SYSTEMD_PATHS = [
        '/etc/systemd/system',           # Most common location
        '/usr/lib/systemd/system',       # Fallback location
        '/lib/systemd/system',           # Debian/Ubuntu alternative
    ]

    SERVICE_NAME = 'btrfsd.service'
    TIMER_NAME = 'btrfsd.timer'

    def __init__(self, systemd_paths=None):
        self.systemd_paths = systemd_paths or self.SYSTEMD_PATHS
        self.service_path = self._find_systemd_path()

    def _find_systemd_path(self):
        """Find the appropriate systemd unit directory"""
        for path in self.systemd_paths:
            if os.path.isdir(path):
                return path
        return None

    def _check_root(self):
        if os.geteuid() != 0:
            logger.error("Service management requires root privileges")
            logger.error("Please run with sudo or as root")
            return False
        return True

    def _check_systemd(self):
        try:
            result = subprocess.run(['systemctl', '--version'],
                                    capture_output=True, check=False)
        except FileNotFoundError:
            logger.error("systemctl command not found - is systemd installed?")
            return False
        if result.returncode != 0:
            logger.error("systemd not found or not available")
            return False
        return True

    def _systemctl(self, *args, check=True):
        return subprocess.run(['systemctl'] + list(args), check=check)

    def execute_command(self, command):
        """Execute the requested service command, returns the exit code"""
        if not self._check_systemd():
            return 1

        if command != 'status' and not self._check_root():
            return 1

        if not self.service_path and command == 'install':
            logger.error("Could not find systemd unit directory")
            logger.error(f"Searched in: {', '.join(self.systemd_paths)}")
            return 1

        method = getattr(self, f'cmd_{command}', None)
        if method is None:
            logger.error(f"Unknown service command: {command}")
            return 1
        return method()

    def _find_executable(self):
        btrfsd_path = shutil.which('btrfsd')
        if btrfsd_path:
            return btrfsd_path
        btrfsd_path = os.path.abspath(sys.argv[0])
        if os.path.exists(btrfsd_path):
            return btrfsd_path
        return None

    def cmd_install(self):
        """Install service and timer, and enable the timer"""
        logger.info("Installing btrfsd systemd timer...")

        btrfsd_path = self._find_executable()
        if not btrfsd_path:
            logger.error("Could not find btrfsd executable")
            return 1
        logger.info(f"Using btrfsd at: {btrfsd_path}")

        units = {
            self.SERVICE_NAME: SERVICE_TEMPLATE.format(btrfsd_path=btrfsd_path),
            self.TIMER_NAME: TIMER_TEMPLATE,
        }
        for name, content in units.items():
            unit_file = os.path.join(self.service_path, name)
            try:
                with open(unit_file, 'w') as f:
                    f.write(content)
                os.chmod(unit_file, 0o644)
                logger.info(f"Created unit file: {unit_file}")
            except OSError as e:
                logger.error(f"Failed to create unit file {unit_file}: {e}")
                return 1

        try:
            self._systemctl('daemon-reload')
            self._systemctl('enable', '--now', self.TIMER_NAME)
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to enable timer: {e}")
            return 1

        logger.info("btrfsd timer installed and started successfully")
        return 0

    def cmd_remove(self):
        """Disable the timer and remove both unit files"""
        logger.info("Removing btrfsd timer...")

        self._systemctl('disable', '--now', self.TIMER_NAME, check=False)

        removed = 0
        for path in self.systemd_paths:
            for name in (self.TIMER_NAME, self.SERVICE_NAME):
                unit_file = os.path.join(path, name)
                if not os.path.exists(unit_file):
                    continue
                try:
                    os.remove(unit_file)
                    removed += 1
                    logger.info(f"Removed unit file: {unit_file}")
                except OSError as e:
                    logger.error(f"Failed to remove unit file {unit_file}: {e}")
                    return 1

        if not removed:
            logger.warning("No btrfsd unit files found")

        self._systemctl('daemon-reload', check=False)
        logger.info("btrfsd timer removed successfully")
        return 0

    def cmd_status(self):
        """Show timer and last run status"""
        result = subprocess.run(['systemctl', 'list-unit-files', self.TIMER_NAME],
                                capture_output=True, text=True)
        if self.TIMER_NAME not in result.stdout:
            logger.error("btrfsd timer is not installed")
            logger.info("Install it with: btrfsd --service install")
            return 1

        self._systemctl('status', self.TIMER_NAME, self.SERVICE_NAME, '--no-pager', check=False)
        return 0

    def cmd_logs(self):
        """Show logs of past runs"""
        try:
            subprocess.run(['journalctl', '-u', self.SERVICE_NAME, '--no-pager'])
        except OSError as e:
            logger.error(f"Error showing logs: {e}")
            return 1
        return 0
