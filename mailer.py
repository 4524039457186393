"""
Notification helpers for btrfsd: issue mails through sendmail and
wall-style broadcasts to logged-in users
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path

import psutil

from errors import MailError

logger = logging.getLogger('btrfsd.mailer')

ISSUE_MAIL_TEMPLATE = """From: {{sender}}
Subject: [{{hostname}}] Issues found on btrfs filesystem {{mountpoint}}
Content-Type: text/plain; charset=utf-8

Hello,

btrfsd found errors on the Btrfs filesystem mounted at {{mountpoint}}
on {{hostname}} while checking it at {{date}}.
Please check the affected devices, their data may be at risk.

{{issue_report}}

Filesystem usage:
{{fs_usage}}

You will be notified again if more errors are found, and reminded about
existing errors at most once per day.

--
Sent by btrfsd on {{hostname}}
"""

BROADCAST_TEMPLATE = (
    "\r\n\r\nBroadcast message from btrfsd@{{hostname}} ({{date}}):\r\n\r\n"
    "Errors were detected on the Btrfs filesystem at {{mountpoint}}!\r\n"
    "Please check `btrfs device stats {{mountpoint}}` and the system log.\r\n\r\n"
)


class Mailer:
    """Delivers notifications to the administrator and logged-in users"""

    def __init__(self, sendmail_cmd='sendmail', dev_dir='/dev', timeout=120):
        self.sendmail_cmd = sendmail_cmd
        self.dev_dir = Path(dev_dir)
        self.timeout = timeout

    def have_sendmail(self):
        return shutil.which(self.sendmail_cmd) is not None

    def send_email(self, to_address, body):
        """Send a mail via `sendmail -t`. The body contains the remaining headers."""
        sendmail_exe = shutil.which(self.sendmail_cmd)
        if sendmail_exe is None:
            raise MailError("Unable to find the `sendmail` command, can not send emails.")

        content = f"To: {to_address}\n{body}"
        try:
            result = subprocess.run(
                [sendmail_exe, '-t'],
                input=content,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise MailError(f"Failed to send mail with sendmail: {e}")

        if result.returncode != 0:
            raise MailError(f"Sendmail failed with exit status {result.returncode}: {result.stderr.strip()}")

        logger.debug(f"Sent mail to {to_address}")

    def broadcast(self, message):
        """Write a message to the terminals of all logged-in users, like `wall`.

        Returns the number of terminals the message was written to.
        """
        try:
            users = psutil.users()
        except OSError as e:
            logger.warning(f"Unable to list logged-in users: {e}")
            return 0

        sent = 0
        seen = set()
        for user in users:
            terminal = user.terminal
            if not terminal or terminal in seen:
                continue
            seen.add(terminal)

            term_path = self.dev_dir / terminal
            try:
                # Never create files in dev_dir, only write to existing terminals
                fd = os.open(term_path, os.O_WRONLY | os.O_NOCTTY)
                with os.fdopen(fd, 'w') as tty:
                    tty.write(message)
                sent += 1
            except OSError as e:
                logger.debug(f"Could not write to terminal {term_path}: {e}")

        return sent
