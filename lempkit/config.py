"""
Configuration for lempkit: filesystem locations and setup options.

``Paths`` collects every location the toolkit reads or writes so tests (and
unusual hosts) can re-root them. ``SetupOptions`` holds the answers for the
full server setup, loaded from a ``KEY=VALUE`` config.ini and overridden by
command-line flags.
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from lempkit import system

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE: str = "config.ini"
WEB_USER: str = "www-data"
WEB_GROUP: str = "www-data"


@dataclass
class Paths:
    sshd_config: Path = Path("/etc/ssh/sshd_config")
    nginx_available: Path = Path("/etc/nginx/sites-available")
    nginx_enabled: Path = Path("/etc/nginx/sites-enabled")
    www_root: Path = Path("/var/www")
    backup_dir: Path = Path("/root/backups")
    server_backup_dir: Path = Path("/var/backups/server-backups")
    mysql_root_password_file: Path = Path("/root/.mysql_root_password")
    postfix_master_cf: Path = Path("/etc/postfix/master.cf")
    dovecot_conf_dir: Path = Path("/etc/dovecot/conf.d")
    fail2ban_jail: Path = Path("/etc/fail2ban/jail.local")
    letsencrypt_live: Path = Path("/etc/letsencrypt/live")
    passwd_file: Path = Path("/etc/passwd")
    os_release: Path = Path("/etc/os-release")
    apt_auto_upgrades: Path = Path("/etc/apt/apt.conf.d/20auto-upgrades")
    hosts_file: Path = Path("/etc/hosts")
    miab_user_data: Path = Path("/home/user-data")
    miab_install_dir: Path = Path("/usr/local/lib/mailinabox")
    miab_daemon: Path = Path("/usr/local/bin/mailinabox-daemon")
    wp_cli: Path = Path("/usr/local/bin/wp")
    log_dir: Path = Path("/var/log")

    @classmethod
    def under(cls, root: Union[str, Path]) -> "Paths":
        """Return a copy of the default paths re-rooted below ``root``."""
        root = Path(root)
        values = {}
        for f in fields(cls):
            default: Path = f.default  # type: ignore[assignment]
            values[f.name] = root / default.relative_to("/")
        return cls(**values)

    @property
    def miab_backup_dir(self) -> Path:
        return self.miab_user_data / "backup"

    def web_root(self, domain: str) -> Path:
        return self.www_root / domain

    def site_config(self, name: str) -> Path:
        return self.nginx_available / name

    def certificate_dir(self, hostname: str) -> Path:
        return self.letsencrypt_live / hostname


@dataclass
class SetupOptions:
    """Answers for the full Mail-in-a-Box + WordPress setup."""

    domain: str = ""
    email: str = ""
    timezone: str = "Etc/UTC"
    wp_admin_user: str = "admin"
    wp_admin_password: str = ""
    wp_db_name: str = "wordpress_db"
    wp_db_user: str = "wp_user"
    wp_db_password: str = ""
    db_root_password: str = ""
    non_interactive: bool = False
    setup_sftp: bool = False
    sftp_user: str = ""
    sftp_password: str = ""
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def mail_hostname(self) -> str:
        return f"box.{self.domain}"

    def assign_defaults(self) -> None:
        """Fill generated secrets and derived names that were not provided."""
        if not self.wp_admin_password:
            self.wp_admin_password = system.generate_password()
        if not self.wp_db_password:
            self.wp_db_password = system.generate_password()
        if not self.sftp_password:
            self.sftp_password = system.generate_password()
        if not self.sftp_user and self.domain:
            self.sftp_user = "sftp-user-" + self.domain.replace(".", "-")

    def update(self, **overrides: Any) -> None:
        """Apply overrides, ignoring ``None`` values (unset CLI flags)."""
        for key, value in overrides.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def parse_config_text(text: str) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` lines. Comments, blank lines and quotes are dropped."""
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip().rstrip("\r")
        if not line or line.startswith("#") or line.startswith(";"):
            continue
        if "=" not in line:
            logger.debug(f"Ignoring config line without '=': {line}")
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        values[key.strip().upper()] = value
    return values


def load_options(path: Optional[Union[str, Path]] = DEFAULT_CONFIG_FILE) -> SetupOptions:
    """Load setup options from a config.ini file if it exists."""
    options = SetupOptions()
    if path is None:
        return options
    path = Path(path)
    if not path.is_file():
        logger.info(f"{path} not found. Using defaults and interactive prompts.")
        return options

    logger.info(f"Loading configuration from {path}")
    known = {f.name.upper(): f for f in fields(SetupOptions) if f.name != "extra"}
    for key, value in parse_config_text(path.read_text()).items():
        f = known.get(key)
        if f is None:
            options.extra[key] = value
        elif f.type in (bool, "bool"):
            setattr(options, f.name, _to_bool(value))
        else:
            setattr(options, f.name, value)
    return options
