"""
Interactive menu. Each entry collects its answers with the ui prompts and
calls the same operations the subcommands use.
"""

import logging
import subprocess
from typing import Callable, List, Sequence, Tuple

from rich.panel import Panel
from rich.prompt import Prompt

from lempkit import (
    backup,
    fail2ban,
    mail,
    nginx,
    provision,
    services,
    users,
    wordpress,
)
from lempkit.config import Paths, SetupOptions
from lempkit.errors import LempkitError
from lempkit.system import OSInfo
from lempkit.ui import (
    NordColors,
    ask,
    ask_path,
    ask_secret,
    ask_typed_confirmation,
    clear_screen,
    confirm,
    console,
    create_header,
    display_panel,
    pause,
    print_error,
    print_message,
    print_step,
    print_warning,
)

logger = logging.getLogger(__name__)

Action = Tuple[str, Callable[[], None]]


def _attempt(action: Callable[[], None]) -> None:
    try:
        action()
    except LempkitError as e:
        print_error(str(e))
    except subprocess.CalledProcessError as e:
        print_error(f"Command failed with exit code {e.returncode}.")
    except subprocess.TimeoutExpired as e:
        print_error(f"Command timed out after {e.timeout} seconds.")
    except KeyboardInterrupt:
        console.print()
        print_warning("Operation cancelled.")


def _ask_new_password(label: str = "password") -> str:
    while True:
        password = ask_secret(f"Enter {label}")
        if not password:
            print_error("Password cannot be empty.")
            continue
        if password == ask_secret(f"Confirm {label}"):
            return password
        print_error("Passwords do not match. Please try again.")


def _choose(title: str, labels: Sequence[str]) -> str:
    """Print a numbered menu and return the chosen number as text."""
    clear_screen()
    console.print(create_header())
    console.print(Panel.fit(title, title="[bold]Server Management", border_style=NordColors.FROST_3))
    for i, label in enumerate(labels, 1):
        console.print(f"[bold {NordColors.FROST_2}]{i}.[/] {label}")
    console.print()
    choices = [str(i) for i in range(1, len(labels) + 1)]
    return Prompt.ask(
        f"[bold {NordColors.FROST_1}]Enter your choice[/]", choices=choices, default=choices[-1]
    )


def _pick(items: List[str], what: str) -> str:
    """Let the operator pick one entry of ``items`` by number; '' when none."""
    if not items:
        print_warning(f"No {what} found.")
        return ""
    for i, item in enumerate(items, 1):
        console.print(f"  [bold {NordColors.FROST_2}]{i})[/] {item}")
    choices = [str(i) for i in range(1, len(items) + 1)]
    choice = Prompt.ask(f"[bold {NordColors.FROST_1}]Select the {what}[/]", choices=choices)
    return items[int(choice) - 1]


class Submenu:
    """A menu entry that opens another list of actions."""

    def __init__(self, title: str, actions: List[Action]):
        self.title = title
        self.actions = actions

    def __call__(self) -> None:
        run_submenu(self.title, self.actions)


def run_submenu(title: str, actions: List[Action]) -> None:
    labels = [label for label, _ in actions] + ["Back"]
    while True:
        choice = int(_choose(title, labels))
        if choice == len(labels):
            return
        action = actions[choice - 1][1]
        _attempt(action)
        if not isinstance(action, Submenu):
            pause("\nPress Enter to return to the menu")


class Menu:
    """Main menu bound to one host's paths and setup options."""

    def __init__(self, paths: Paths, options: SetupOptions, os_info: OSInfo, log_file: str):
        self.paths = paths
        self.options = options
        self.os_info = os_info
        self.log_file = log_file

    # ------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------
    def initial_setup(self) -> None:
        if not confirm("This will install the LEMP stack and configure the firewall. Continue?"):
            print_step("Operation cancelled.")
            return
        provision.run_initial_setup(self.os_info, self.paths)

    def full_setup(self) -> None:
        if not self.options.domain:
            self.options.domain = ask("Enter the main domain (e.g., example.com)")
        if not self.options.email:
            self.options.email = ask("Enter the admin email (e.g., admin@example.com)")
        if not self.options.setup_sftp:
            self.options.setup_sftp = confirm("Create an SFTP user for the website?")
        provision.run_full_setup(self.options, self.paths, self.log_file)

    def add_website(self) -> None:
        domain = nginx.validate_domain(ask("Enter the domain name (e.g., example.com)"))
        email = ask("Enter your email for SSL certificate registration", self.options.email or None)
        nginx.add_website(self.paths, domain)
        nginx.obtain_certificate([domain, f"www.{domain}"], email, self.os_info.package_manager)

    def mail_server(self) -> None:
        domain = ask("Enter your mail domain (e.g., example.com)")
        hostname = ask("Enter your mail server hostname (e.g., mail.example.com)", f"mail.{domain}")
        mail.setup_mail_server(domain, hostname, self.os_info.package_manager, self.paths)

    def install_yourls(self) -> None:
        domain = ask("Enter the domain for Yourls (e.g., sho.rt)")
        admin_user = ask("Enter a username for the Yourls admin")
        admin_password = _ask_new_password("a password for the Yourls admin")
        provision.install_yourls(domain, admin_user, admin_password, self.options.email, self.paths)

    def smart_update(self) -> None:
        provision.smart_update(
            self.paths,
            continue_without_backup=lambda: confirm("Backup failed. Continue with the update anyway?"),
        )

    # ------------------------------------------------------------
    # SFTP
    # ------------------------------------------------------------
    def create_sftp_user(self) -> None:
        user = ask("Enter the new SFTP username")
        jail_dir = ask_path("Enter the root-owned directory to jail the user in (e.g., /var/www/example.com)",
                            only_directories=True)
        password = _ask_new_password()
        writable = users.create_sftp_user(user, password, jail_dir, self.paths)
        print_step(f"The user should upload files to the '{writable.name}' directory.")

    def change_sftp_password(self) -> None:
        user = _pick(users.list_sftp_users(self.paths), "SFTP user")
        if user:
            users.change_sftp_password(user, _ask_new_password("new password"), self.paths)

    def delete_sftp_user(self) -> None:
        user = _pick(users.list_sftp_users(self.paths), "SFTP user")
        if not user:
            return
        print_warning(f"This will permanently delete the user '{user}' and their SFTP configuration.")
        users.delete_sftp_user(user, ask_typed_confirmation(user), self.paths)

    # ------------------------------------------------------------
    # Websites
    # ------------------------------------------------------------
    def _pick_site(self, status: str) -> str:
        return _pick([s.name for s in nginx.list_sites(self.paths, status)], "website")

    def delete_website(self) -> None:
        name = self._pick_site("all")
        if not name:
            return
        domain = nginx.NginxSite(name=name, enabled=False).domain
        print_warning(f"This will permanently delete the Nginx config, web files and SSL certificate for {domain}.")
        drop_db = None
        if confirm("Also drop a database for this website?"):
            drop_db = ask("Enter the database name")
        nginx.delete_website(self.paths, name, ask_typed_confirmation(domain), drop_db)

    def disable_website(self) -> None:
        name = self._pick_site("enabled")
        if name:
            nginx.disable_site(self.paths, name)

    def enable_website(self) -> None:
        name = self._pick_site("disabled")
        if name:
            nginx.enable_site(self.paths, name)

    # ------------------------------------------------------------
    # Email accounts
    # ------------------------------------------------------------
    def list_email_accounts(self) -> None:
        names = mail.list_mail_users(self.paths.passwd_file)
        if not names:
            print_warning("No mail/system users found.")
        for name in names:
            print_message(name, prefix="-")

    def add_email_account(self) -> None:
        name = ask("Enter the new email username (e.g., 'john' for john@domain.com)")
        mail.add_mail_user(name, _ask_new_password())

    def delete_email_account(self) -> None:
        name = _pick(mail.list_mail_users(self.paths.passwd_file), "email user")
        if not name:
            return
        print_warning(f"This will permanently delete the user '{name}' and all their emails.")
        mail.delete_mail_user(name, ask_typed_confirmation(name))

    # ------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------
    def backup_website(self) -> None:
        domain = ask("Enter the domain to back up")
        db_name = ask("Enter the database name for this site")
        backup.backup_website(domain, db_name, self.paths)

    def restore_website(self) -> None:
        archive = ask_path("Enter the full path to the backup file (.tar.gz)")
        domain = ask("Enter the domain to restore to")
        db_name = ask("Enter the database name to restore to")
        print_warning(f"This will overwrite all files in '{self.paths.web_root(domain)}' and the database '{db_name}'.")
        backup.restore_website(archive, domain, db_name, ask_typed_confirmation(domain), self.paths)

    def backup_server(self) -> None:
        remote = ask("rclone remote for an off-site copy (blank to skip)", "") or None
        result = backup.backup_server(rclone_remote=remote, notify_email=self.options.email or None,
                                      paths=self.paths)
        print_step(f"Archive size: {result.human_size}")

    def restore_server(self) -> None:
        archive = ask_path("Enter the full path to the server backup file (.tar.gz)")
        domain = backup.detect_wordpress_domain(self.paths.www_root) or ask("Enter the WordPress domain")
        print_warning("This will overwrite your current WordPress files, database, and Mail-in-a-Box data.")
        backup.restore_server(archive, ask_typed_confirmation(domain), domain, self.paths)

    def restore_instructions(self) -> None:
        display_panel(backup.restore_instructions(), NordColors.FROST_2, "How to Restore from a Backup")

    # ------------------------------------------------------------
    # Services & WordPress
    # ------------------------------------------------------------
    def _service_group(self) -> str:
        return Prompt.ask(f"[bold {NordColors.FROST_1}]Service group[/]", choices=list(services.GROUPS),
                          default="all")

    def manage_services(self) -> None:
        action = Prompt.ask(f"[bold {NordColors.FROST_1}]Action[/]", choices=list(services.ACTIONS),
                            default="status")
        services.manage(action, self._service_group(), self.paths)

    def show_usage(self) -> None:
        console.print(services.usage_report())

    def tail_logs(self) -> None:
        services.tail_logs(self._service_group(), self.paths)

    def run_autoheal(self) -> None:
        services.autoheal(notify_email=self.options.email or None)

    def _wp_path(self):
        domain = backup.detect_wordpress_domain(self.paths.www_root) or ask("Enter the WordPress domain")
        return self.paths.web_root(domain)

    def wp_update(self) -> None:
        wordpress.ensure_wp_cli(self.paths)
        wordpress.update_all(self._wp_path())

    def wp_create_admin(self) -> None:
        wp_path = self._wp_path()
        username = ask("Enter the new admin username")
        email = ask("Enter the new admin email")
        password = wordpress.create_admin_user(wp_path, username, email)
        display_panel(f"Username: {username}\nPassword: {password}", NordColors.YELLOW, "New Administrator")

    def wp_plugin(self) -> None:
        wp_path = self._wp_path()
        action = Prompt.ask(f"[bold {NordColors.FROST_1}]Action[/]", choices=list(wordpress.PLUGIN_ACTIONS))
        wordpress.plugin(wp_path, action, ask("Enter the plugin slug"))

    def wp_maintenance(self) -> None:
        wp_path = self._wp_path()
        mode = Prompt.ask(f"[bold {NordColors.FROST_1}]Maintenance mode[/]",
                          choices=sorted(wordpress.MAINTENANCE_MODES))
        wordpress.maintenance(wp_path, mode)

    def fail2ban_status(self) -> None:
        for jail in fail2ban.list_jails():
            banned = ", ".join(jail.banned_ips) or "none"
            print_message(f"{jail.name}: {banned}", prefix="-")

    # ------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------
    def management(self) -> Submenu:
        return Submenu(
            "MANAGEMENT",
            [
                ("Manage Websites", Submenu("WEBSITE MANAGEMENT", [
                    ("Delete a Website", self.delete_website),
                    ("Disable a Website", self.disable_website),
                    ("Enable a Website", self.enable_website),
                ])),
                ("Manage SFTP Users", Submenu("SFTP USER MANAGEMENT", [
                    ("Change User Password", self.change_sftp_password),
                    ("Delete SFTP User", self.delete_sftp_user),
                ])),
                ("Manage Email Accounts", Submenu("EMAIL ACCOUNT MANAGEMENT", [
                    ("Add Email Account", self.add_email_account),
                    ("Delete Email Account", self.delete_email_account),
                    ("List Email Accounts", self.list_email_accounts),
                ])),
                ("Services & Monitoring", Submenu("SERVICES", [
                    ("Start/Stop/Restart/Status", self.manage_services),
                    ("Resource Usage", self.show_usage),
                    ("Tail Logs", self.tail_logs),
                    ("Auto-heal Check", self.run_autoheal),
                    ("Fail2Ban Jails", self.fail2ban_status),
                ])),
                ("WordPress", Submenu("WORDPRESS", [
                    ("Update Core, Themes and Plugins", self.wp_update),
                    ("Create Administrator", self.wp_create_admin),
                    ("Activate/Deactivate Plugin", self.wp_plugin),
                    ("Maintenance Mode", self.wp_maintenance),
                ])),
                ("Server Backup & Restore", Submenu("SERVER BACKUP", [
                    ("Back Up Server", self.backup_server),
                    ("Restore Server", self.restore_server),
                    ("Restore Instructions", self.restore_instructions),
                ])),
            ],
        )

    def main_actions(self) -> List[Action]:
        return [
            ("Initial Server Setup (Firewall, LEMP)", self.initial_setup),
            ("Add New Website (with SSL)", self.add_website),
            ("Setup Mail Server (Postfix & Dovecot)", self.mail_server),
            ("Create SFTP User", self.create_sftp_user),
            ("Backup Website", self.backup_website),
            ("Restore Website", self.restore_website),
            ("Management (Websites, Users, Services, Backups)", self.management()),
            ("Full Setup (Mail-in-a-Box + WordPress)", self.full_setup),
            ("Install Yourls URL Shortener", self.install_yourls),
            ("Smart Update", self.smart_update),
        ]

    def show(self) -> None:
        actions = self.main_actions()
        labels = [label for label, _ in actions] + ["Exit"]
        while True:
            choice = int(_choose("MAIN MENU", labels))
            if choice == len(labels):
                console.print(Panel("[bold green]Exiting LEMP Kit. Goodbye![/]", border_style=NordColors.GREEN))
                return
            label, action = actions[choice - 1]
            logger.info(f"Menu selection: {label}")
            _attempt(action)
            if not isinstance(action, Submenu):
                pause("\nPress Enter to return to the menu")


def run(paths: Paths, options: SetupOptions, os_info: OSInfo, log_file: str) -> None:
    Menu(paths, options, os_info, log_file).show()
