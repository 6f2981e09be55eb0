"""
MariaDB helpers: root password file, hardening, schema and dump management.

Credentials are handed to the mysql client through ``MYSQL_PWD`` rather than
on the command line.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from lempkit import system
from lempkit.errors import MissingCredentialsError, ValidationError
from lempkit.ui import print_success, print_warning

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
WP_CONFIG_KEYS = ("DB_NAME", "DB_USER", "DB_PASSWORD", "DB_HOST")


@dataclass
class Credentials:
    user: str = "root"
    password: str = ""
    host: str = "localhost"

    def env(self) -> Dict[str, str]:
        return {"MYSQL_PWD": self.password} if self.password else {}

    def client_args(self) -> List[str]:
        args = ["-u", self.user]
        if self.host and self.host != "localhost":
            args.extend(["-h", self.host])
        return args


def validate_identifier(name: str, kind: str = "database") -> str:
    if not IDENTIFIER_RE.match(name or ""):
        raise ValidationError(
            f"Invalid {kind} name '{name}'. Use letters, digits and underscores only."
        )
    return name


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


# ----------------------------------------------------------------
# Root Password File
# ----------------------------------------------------------------
def save_root_password(path: Path, password: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(password + "\n")
    os.chmod(str(path), 0o600)
    logger.info(f"Root password saved to {path}")


def load_root_password(path: Path) -> Credentials:
    if not path.is_file():
        raise MissingCredentialsError(
            f"MariaDB root password file not found at {path}. Cannot automate this step."
        )
    return Credentials(user="root", password=path.read_text().strip())


# ----------------------------------------------------------------
# SQL Execution
# ----------------------------------------------------------------
def execute_sql(
    sql: str, credentials: Optional[Credentials] = None, database: Optional[str] = None
):
    credentials = credentials or Credentials()
    cmd = ["mysql"] + credentials.client_args()
    if database:
        cmd.append(database)
    return system.run_command(cmd, input_text=sql, env=credentials.env())


def secure_installation_sql(password: str) -> str:
    return (
        f"ALTER USER 'root'@'localhost' IDENTIFIED BY '{_quote(password)}';\n"
        "DELETE FROM mysql.user WHERE User='';\n"
        "DELETE FROM mysql.user WHERE User='root' AND Host NOT IN "
        "('localhost', '127.0.0.1', '::1');\n"
        "DROP DATABASE IF EXISTS test;\n"
        "DELETE FROM mysql.db WHERE Db='test' OR Db='test\\\\_%';\n"
        "FLUSH PRIVILEGES;\n"
    )


def secure_mariadb(password_file: Path, password: Optional[str] = None) -> str:
    """Set a root password, drop anonymous/remote root/test, save the password."""
    password = password or system.generate_password()
    execute_sql(secure_installation_sql(password))
    save_root_password(password_file, password)
    print_success("MariaDB installation has been secured.")
    print_warning(f"Root password saved to {password_file} (mode 600).")
    return password


def create_database(
    name: str,
    user: Optional[str] = None,
    password: Optional[str] = None,
    credentials: Optional[Credentials] = None,
) -> None:
    validate_identifier(name)
    sql = (
        f"CREATE DATABASE IF NOT EXISTS `{name}` "
        "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;\n"
    )
    if user:
        validate_identifier(user, "user")
        sql += (
            f"CREATE USER IF NOT EXISTS '{user}'@'localhost' "
            f"IDENTIFIED BY '{_quote(password or '')}';\n"
            f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{user}'@'localhost';\n"
            "FLUSH PRIVILEGES;\n"
        )
    execute_sql(sql, credentials)
    logger.info(f"Database '{name}' ready")


def drop_database(name: str, credentials: Optional[Credentials] = None) -> None:
    validate_identifier(name)
    execute_sql(f"DROP DATABASE IF EXISTS `{name}`;\n", credentials)
    logger.info(f"Database '{name}' dropped")


def dump_database(name: str, dest: Path, credentials: Credentials) -> Path:
    validate_identifier(name)
    cmd = ["mysqldump"] + credentials.client_args() + ["--single-transaction", name]
    result = system.run_command(cmd, env=credentials.env())
    dest.write_text(result.stdout or "")
    logger.info(f"Dumped database '{name}' to {dest}")
    return dest


def import_database(
    name: str, sql_file: Path, credentials: Credentials, recreate: bool = False
) -> None:
    validate_identifier(name)
    if recreate:
        execute_sql(f"DROP DATABASE IF EXISTS `{name}`; CREATE DATABASE `{name}`;\n", credentials)
    else:
        execute_sql(f"CREATE DATABASE IF NOT EXISTS `{name}`;\n", credentials)
    execute_sql(sql_file.read_text(), credentials, database=name)
    logger.info(f"Imported {sql_file.name} into '{name}'")


# ----------------------------------------------------------------
# wp-config.php
# ----------------------------------------------------------------
def read_wp_config(path: Path) -> Dict[str, str]:
    """Extract the DB_* defines from a wp-config.php file."""
    if not path.is_file():
        raise ValidationError(f"WordPress config file not found at {path}.")
    text = path.read_text()
    values: Dict[str, str] = {}
    for key in WP_CONFIG_KEYS:
        match = re.search(
            rf"define\(\s*['\"]{key}['\"]\s*,\s*(['\"])(.*?)\1\s*\)", text
        )
        if match:
            values[key] = match.group(2)
    missing = [k for k in ("DB_NAME", "DB_USER") if k not in values]
    if missing:
        raise ValidationError(f"{path} is missing {', '.join(missing)}.")
    return values


def wp_credentials(path: Path) -> Credentials:
    values = read_wp_config(path)
    return Credentials(
        user=values["DB_USER"],
        password=values.get("DB_PASSWORD", ""),
        host=values.get("DB_HOST", "localhost"),
    )
