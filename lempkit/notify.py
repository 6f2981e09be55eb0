"""Email notifications through the local sendmail binary."""

import logging
import socket
from typing import Optional

from lempkit import system
from lempkit.ui import print_step, print_warning

logger = logging.getLogger(__name__)


def build_message(subject: str, recipient: str, body: str) -> str:
    return f"Subject: {subject}\nTo: {recipient}\n\n{body}"


def send_notification(subject: str, body: str, recipient: Optional[str]) -> bool:
    """Send ``body`` to ``recipient`` with ``sendmail -t``. No-op without a recipient."""
    if not recipient:
        return False
    if not system.command_exists("sendmail"):
        print_warning("A notification email is set, but sendmail was not found. Cannot send email.")
        return False
    system.run_command(["sendmail", "-t"], input_text=build_message(subject, recipient, body))
    print_step(f"Sent notification email to {recipient}.")
    return True


def hostname() -> str:
    return socket.gethostname()
