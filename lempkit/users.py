"""
Jailed SFTP users: creation, password changes and removal.

The sshd side goes through ``SshdConfig`` so repeated runs never stack
duplicate ``Match User`` blocks.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from lempkit import system
from lempkit.config import WEB_GROUP, Paths
from lempkit.errors import ConfirmationError, ValidationError
from lempkit.mail import validate_username
from lempkit.sshd import SshdConfig
from lempkit.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

NOLOGIN_SHELL: str = "/usr/sbin/nologin"
WRITABLE_SUBDIR: str = "public_html"


def restart_sshd() -> None:
    result = system.run_command(["systemctl", "restart", "sshd"], check=False)
    if result.returncode != 0:
        # Debian and Ubuntu name the unit "ssh".
        system.run_command(["systemctl", "restart", "ssh"])
    print_success("SSH service restarted.")


def list_sftp_users(paths: Optional[Paths] = None) -> List[str]:
    paths = paths or Paths()
    return SshdConfig(paths.sshd_config).users()


def create_sftp_user(
    user: str,
    password: str,
    jail_dir: Union[str, Path],
    paths: Optional[Paths] = None,
) -> Path:
    """
    Create ``user`` jailed to ``jail_dir`` with a writable ``public_html``.

    OpenSSH requires the chroot directory to be owned by root, so the jail is
    checked before anything is changed.
    """
    paths = paths or Paths()
    user = validate_username(user)
    if not password:
        raise ValidationError("Password cannot be empty.")
    jail = Path(jail_dir)
    if not jail.is_dir():
        raise ValidationError(f"Directory '{jail}' does not exist.")
    owner = system.path_owner(jail)
    if owner != "root":
        raise ValidationError(
            f"SFTP jail requirement failed: '{jail}' must be owned by 'root' "
            f"(currently '{owner}'). Use a root-owned jail with a writable "
            f"subdirectory such as {jail / WRITABLE_SUBDIR}."
        )

    print_step(f"Creating user '{user}' and configuring SFTP jail...")
    result = system.run_command(
        ["useradd", "--home", str(jail), "--shell", NOLOGIN_SHELL, "--gid", WEB_GROUP, user],
        check=False,
    )
    if result.returncode != 0:
        print_step(f"User '{user}' may already exist. Proceeding with configuration.")
    system.set_password(user, password)
    print_success(f"User '{user}' created/password updated.")

    sshd = SshdConfig(paths.sshd_config)
    if sshd.add_sftp_user(user, str(jail)):
        print_success(f"SFTP jail configured for '{user}' in {paths.sshd_config}.")
    else:
        print_step(f"SFTP configuration for '{user}' already exists.")

    system.run_command(["chmod", "755", str(jail)])
    writable = jail / WRITABLE_SUBDIR
    writable.mkdir(exist_ok=True)
    system.chown(writable, user, WEB_GROUP)
    system.run_command(["chmod", "755", str(writable)])

    restart_sshd()
    print_success(
        f"SFTP user '{user}' is ready. User is jailed to '{jail}' "
        f"and has write access to '{writable}'."
    )
    return writable


def change_sftp_password(user: str, password: str, paths: Optional[Paths] = None) -> None:
    paths = paths or Paths()
    if not password:
        raise ValidationError("Password cannot be empty.")
    if not SshdConfig(paths.sshd_config).has_user(user):
        raise ValidationError(f"User '{user}' is not a configured SFTP user.")
    system.set_password(user, password)
    print_success(f"Password for '{user}' has been changed.")


def delete_sftp_user(user: str, confirmation: str, paths: Optional[Paths] = None) -> None:
    paths = paths or Paths()
    sshd = SshdConfig(paths.sshd_config)
    if not sshd.has_user(user):
        raise ValidationError(f"User '{user}' is not a configured SFTP user.")
    if confirmation != user:
        raise ConfirmationError("Confirmation failed. Deletion cancelled.")

    result = system.run_command(["userdel", user], check=False)
    if result.returncode == 0:
        print_step(f"System user '{user}' deleted.")
    else:
        print_warning(f"System user '{user}' could not be deleted; removing its SFTP block anyway.")

    sshd.remove_user(user)
    print_success(f"SFTP configuration for '{user}' removed from {paths.sshd_config}.")
    restart_sshd()
    print_success(f"SFTP user '{user}' has been deleted.")


def setup_site_sftp_user(
    domain: str, user: str, password: str, paths: Optional[Paths] = None
) -> None:
    """SFTP-only account with group write access to a site's web root."""
    paths = paths or Paths()
    user = validate_username(user)
    print_step(f"Setting up dedicated SFTP user: {user}...")
    system.run_command(
        ["useradd", "--create-home", "--shell", NOLOGIN_SHELL, "--gid", WEB_GROUP, user],
        check=False,
    )
    system.set_password(user, password)

    print_step("Adjusting directory permissions for SFTP user...")
    system.run_command(["chmod", "-R", "g+w", str(paths.web_root(domain))])

    print_step("Restricting user to SFTP-only access...")
    SshdConfig(paths.sshd_config).add_sftp_user(user)
    restart_sshd()
    print_success(f"SFTP user '{user}' created with access to the web root.")
