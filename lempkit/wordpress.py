"""
WordPress management through wp-cli, always run as the web server user.
"""

import logging
from pathlib import Path
from typing import List, Optional

from lempkit import system
from lempkit.config import WEB_GROUP, WEB_USER, Paths, SetupOptions
from lempkit.errors import ValidationError
from lempkit.ui import print_step, print_success

logger = logging.getLogger(__name__)

WP_CLI_URL: str = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"
PLUGIN_ACTIONS = ("activate", "deactivate", "toggle")
MAINTENANCE_MODES = {"on": "activate", "off": "deactivate"}


def ensure_wp_cli(paths: Optional[Paths] = None) -> Path:
    """Download the wp-cli phar unless wp is already installed."""
    paths = paths or Paths()
    if system.command_exists("wp") or paths.wp_cli.is_file():
        logger.info("WP-CLI is already installed.")
        return paths.wp_cli
    print_step("Installing WP-CLI...")
    paths.wp_cli.parent.mkdir(parents=True, exist_ok=True)
    system.download_file(WP_CLI_URL, paths.wp_cli)
    paths.wp_cli.chmod(0o755)
    print_success("WP-CLI installed.")
    return paths.wp_cli


def wp(args: List[str], wp_path: Path, input_text: Optional[str] = None):
    """Run ``wp <args> --path=<wp_path>`` as the web server user."""
    cmd = ["sudo", "-u", WEB_USER, "wp"] + args + [f"--path={wp_path}"]
    return system.run_command(cmd, input_text=input_text)


def install_wordpress(options: SetupOptions, paths: Optional[Paths] = None) -> Path:
    """Download core, write wp-config.php and run the installer."""
    paths = paths or Paths()
    if not options.domain or not options.email:
        raise ValidationError("A domain and an admin email are required to install WordPress.")
    wp_path = paths.web_root(options.domain)
    print_step(f"Installing WordPress for {options.domain} using WP-CLI...")
    wp_path.mkdir(parents=True, exist_ok=True)
    system.chown(wp_path, WEB_USER, WEB_GROUP, recursive=True)

    wp(["core", "download"], wp_path)
    wp(
        [
            "config",
            "create",
            f"--dbname={options.wp_db_name}",
            f"--dbuser={options.wp_db_user}",
            f"--dbpass={options.wp_db_password}",
            "--extra-php",
        ],
        wp_path,
        input_text="define('FS_METHOD', 'direct');\n",
    )
    wp(
        [
            "core",
            "install",
            f"--url=https://www.{options.domain}",
            f"--title=Welcome to {options.domain}",
            f"--admin_user={options.wp_admin_user}",
            f"--admin_password={options.wp_admin_password}",
            f"--admin_email={options.email}",
        ],
        wp_path,
    )
    print_success("WordPress installed and configured via WP-CLI.")
    return wp_path


def create_admin_user(
    wp_path: Path, username: str, email: str, password: Optional[str] = None
) -> str:
    """Create an administrator; returns the password (generated if not given)."""
    if not username or not email:
        raise ValidationError("Usage: user-create <username> <email> [password]")
    password = password or system.generate_password(16)
    print_step(f"Creating user '{username}'...")
    wp(["user", "create", username, email, "--role=administrator", f"--user_pass={password}"], wp_path)
    print_success(f"User '{username}' created.")
    return password


def plugin(wp_path: Path, action: str, name: str) -> None:
    if action not in PLUGIN_ACTIONS:
        raise ValidationError(f"Invalid plugin action '{action}'. Use activate, deactivate or toggle.")
    print_step(f"Attempting to '{action}' plugin '{name}'...")
    wp(["plugin", action, name], wp_path)
    print_success(f"Action '{action}' completed for plugin '{name}'.")


def maintenance(wp_path: Path, mode: str) -> None:
    if mode not in MAINTENANCE_MODES:
        raise ValidationError("Invalid mode for maintenance. Use 'on' or 'off'.")
    wp(["maintenance-mode", MAINTENANCE_MODES[mode]], wp_path)
    print_success(f"Maintenance mode is now {mode.upper()}.")


def update_all(wp_path: Path) -> None:
    print_step(f"Updating WordPress core for {wp_path.name}...")
    wp(["core", "update"], wp_path)
    print_step(f"Updating WordPress themes for {wp_path.name}...")
    wp(["theme", "update", "--all"], wp_path)
    print_step(f"Updating WordPress plugins for {wp_path.name}...")
    wp(["plugin", "update", "--all"], wp_path)
    print_success("WordPress updates completed.")
