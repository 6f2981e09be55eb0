"""
Fail2Ban: jail.local rendering and jail inspection through fail2ban-client.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from lempkit import system
from lempkit.config import Paths
from lempkit.errors import ValidationError
from lempkit.ui import print_step, print_success

logger = logging.getLogger(__name__)

JAIL_DEFAULTS = """[DEFAULT]
bantime = 1h
findtime = 10m
maxretry = 5
backend = auto
"""


@dataclass
class Jail:
    name: str
    banned_ips: List[str] = field(default_factory=list)


def _jail_section(name: str, port: str, logpath: str, maxretry: Optional[int] = None) -> str:
    lines = [f"[{name}]", "enabled = true", f"port = {port}", f"logpath = {logpath}"]
    if maxretry is not None:
        lines.append(f"maxretry = {maxretry}")
    return "\n".join(lines) + "\n"


def jail_local(ssh_port: int = 22, with_mail: bool = False) -> str:
    """Render jail.local for sshd, nginx and optionally the mail daemons."""
    sections = [
        JAIL_DEFAULTS,
        _jail_section("sshd", str(ssh_port), "%(sshd_log)s"),
        _jail_section("nginx-http-auth", "http,https", "/var/log/nginx/error.log"),
        _jail_section("nginx-botsearch", "http,https", "/var/log/nginx/access.log", maxretry=2),
    ]
    if with_mail:
        sections.append(
            _jail_section("postfix", "smtp,465,submission", "/var/log/mail.log")
        )
        sections.append(
            _jail_section("dovecot", "pop3,pop3s,imap,imaps,submission,465,sieve", "/var/log/mail.log")
        )
    return "\n".join(sections)


def configure_fail2ban(
    paths: Optional[Paths] = None,
    ssh_port: int = 22,
    with_mail: bool = False,
    package_manager: str = "apt-get",
) -> bool:
    """Install fail2ban if needed and write jail.local when its content changed."""
    paths = paths or Paths()
    if not system.command_exists("fail2ban-client"):
        print_step("Installing Fail2Ban...")
        system.run_command([package_manager, "install", "-y", "fail2ban"])

    content = jail_local(ssh_port, with_mail)
    jail_file = paths.fail2ban_jail
    if jail_file.is_file() and jail_file.read_text() == content:
        logger.info(f"{jail_file} already up to date")
        return False

    jail_file.parent.mkdir(parents=True, exist_ok=True)
    jail_file.write_text(content)
    system.run_command(["systemctl", "enable", "fail2ban"], check=False)
    system.run_command(["systemctl", "restart", "fail2ban"])
    print_success(f"Fail2Ban configured ({jail_file}).")
    return True


# ----------------------------------------------------------------
# fail2ban-client
# ----------------------------------------------------------------
def parse_jail_list(output: str) -> List[str]:
    # Status
    # |- Number of jail:  2
    # `- Jail list:   sshd, nginx-http-auth
    for line in output.splitlines():
        if "Jail list:" in line:
            names = line.split("Jail list:", 1)[1]
            return [name.strip() for name in names.split(",") if name.strip()]
    return []


def parse_banned_ips(output: str) -> List[str]:
    for line in output.splitlines():
        if "Banned IP list:" in line:
            return line.split("Banned IP list:", 1)[1].split()
    return []


def banned_ips(jail: str) -> List[str]:
    result = system.run_command(["fail2ban-client", "status", jail])
    return parse_banned_ips(result.stdout or "")


def list_jails() -> List[Jail]:
    result = system.run_command(["fail2ban-client", "status"])
    return [Jail(name=name, banned_ips=banned_ips(name)) for name in parse_jail_list(result.stdout or "")]


def unban_ip(jail: str, ip: str) -> None:
    if not jail or not ip:
        raise ValidationError("Both a jail name and an IP address are required.")
    system.run_command(["fail2ban-client", "set", jail, "unbanip", ip])
    print_success(f"Unbanned {ip} from jail '{jail}'.")
