"""
Command line entry point.

``lempkit`` without a subcommand opens the interactive menu; every menu
action is also available as a subcommand for scripting and cron.
"""

import atexit
import functools
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import click
from rich.table import Table
from rich.traceback import install as install_rich_traceback

from lempkit import (
    VERSION,
    backup,
    database,
    fail2ban,
    mail,
    menu,
    nginx,
    provision,
    services,
    system,
    users,
    wordpress,
)
from lempkit.config import DEFAULT_CONFIG_FILE, Paths, SetupOptions, load_options
from lempkit.errors import LempkitError, ValidationError
from lempkit.logger import DEFAULT_LOG_FILE, setup_logger
from lempkit.ui import (
    NordColors,
    ask,
    ask_typed_confirmation,
    confirm,
    console,
    display_panel,
    print_error,
    print_message,
    print_section,
    print_step,
    print_warning,
)

AUTOHEAL_LOG_FILE: str = "/var/log/autoheal.log"


@dataclass
class CliState:
    paths: Paths = field(default_factory=Paths)
    options: SetupOptions = field(default_factory=SetupOptions)
    log_file: str = DEFAULT_LOG_FILE


pass_state = click.make_pass_decorator(CliState, ensure=True)


def requires_root(func):
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        system.require_root()
        return func(*args, **kwargs)

    return wrapper


def _confirmation(value: Optional[str], name: str) -> str:
    return value if value is not None else ask_typed_confirmation(name)


def _wp_path(state: CliState, domain: Optional[str]) -> Path:
    domain = domain or backup.detect_wordpress_domain(state.paths.www_root)
    if not domain:
        raise ValidationError("Could not auto-detect the WordPress domain. Use --domain.")
    return state.paths.web_root(domain)


class LempkitGroup(click.Group):
    """Reports operational errors as one red line and a non-zero exit."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except LempkitError as e:
            print_error(str(e))
            ctx.exit(1)
        except subprocess.CalledProcessError as e:
            cmd = e.cmd if isinstance(e.cmd, str) else " ".join(map(str, e.cmd))
            print_error(f"Command failed with exit code {e.returncode}: {cmd}")
            ctx.exit(1)
        except subprocess.TimeoutExpired as e:
            print_error(f"Command timed out after {e.timeout} seconds.")
            ctx.exit(1)
        except KeyboardInterrupt:
            print_warning("Operation cancelled by user.")
            ctx.exit(130)


@click.group(cls=LempkitGroup, invoke_without_command=True)
@click.option("--config", "config_file", default=DEFAULT_CONFIG_FILE, show_default=True,
              help="KEY=VALUE file with setup answers")
@click.option("--log-file", default=None, help=f"Log file (default {DEFAULT_LOG_FILE})")
@click.option("-v", "--verbose", is_flag=True, help="Echo debug logging to the console")
@click.version_option(VERSION)
@click.pass_context
def cli(ctx: click.Context, config_file: str, log_file: Optional[str], verbose: bool) -> None:
    """Provision and maintain a LEMP, mail and WordPress server."""
    state = ctx.ensure_object(CliState)
    if log_file is None and ctx.invoked_subcommand == "autoheal":
        log_file = AUTOHEAL_LOG_FILE
    state.log_file = log_file or state.log_file
    try:
        setup_logger(state.log_file, verbose)
    except OSError as e:
        print_warning(f"Could not set up logging: {e}")
    state.options = load_options(config_file)
    if ctx.invoked_subcommand is None:
        ctx.invoke(menu_command)


@cli.command("menu")
@pass_state
@requires_root
def menu_command(state: CliState) -> None:
    """Interactive server management menu."""
    os_info = system.detect_os(state.paths.os_release)
    menu.run(state.paths, state.options, os_info, state.log_file)


# ----------------------------------------------------------------
# setup
# ----------------------------------------------------------------
@cli.group()
def setup() -> None:
    """Initial and full server setup."""


@setup.command("initial")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@pass_state
@requires_root
def setup_initial(state: CliState, yes: bool) -> None:
    """Firewall, LEMP stack and secured MariaDB."""
    if not yes and not confirm("This will install the LEMP stack and configure the firewall. Continue?"):
        print_step("Operation cancelled.")
        return
    os_info = system.detect_os(state.paths.os_release)
    provision.run_initial_setup(os_info, state.paths)


@setup.command("full")
@click.option("-d", "--domain", default=None, help="Main domain")
@click.option("-e", "--email", default=None, help="Admin email")
@click.option("-n", "--non-interactive", is_flag=True, help="Never prompt")
@click.option("--sftp/--no-sftp", "setup_sftp", default=None, help="Create an SFTP user for the site")
@click.option("--sftp-user", default=None)
@pass_state
@requires_root
def setup_full(state: CliState, domain, email, non_interactive, setup_sftp, sftp_user) -> None:
    """Mail-in-a-Box + WordPress on one host."""
    options = state.options
    options.update(domain=domain, email=email, non_interactive=non_interactive or None,
                   setup_sftp=setup_sftp, sftp_user=sftp_user)
    if not options.domain or not options.email:
        if options.non_interactive:
            raise ValidationError(
                "Domain and email are required in non-interactive mode (flags or config.ini)."
            )
        if not options.domain:
            options.domain = ask("Enter the main domain (e.g., example.com)")
        if not options.email:
            options.email = ask("Enter the admin email (e.g., admin@example.com)")
    provision.run_full_setup(options, state.paths, state.log_file)


@setup.command("firewall")
@click.option("--with-mail", is_flag=True, help="Also open SMTP/submission/IMAPS ports")
@requires_root
def setup_firewall(with_mail: bool) -> None:
    """Configure UFW."""
    provision.setup_firewall(with_mail)


@setup.command("mail")
@click.option("--domain", required=True, help="Mail domain, e.g. example.com")
@click.option("--hostname", required=True, help="Mail host, e.g. mail.example.com")
@pass_state
@requires_root
def setup_mail(state: CliState, domain: str, hostname: str) -> None:
    """Postfix & Dovecot."""
    os_info = system.detect_os(state.paths.os_release)
    mail.setup_mail_server(domain, hostname, os_info.package_manager, state.paths)


@setup.command("yourls")
@click.option("--domain", required=True)
@click.option("--admin-user", required=True)
@click.option("--admin-password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--email", default=None, help="Certificate contact")
@pass_state
@requires_root
def setup_yourls(state: CliState, domain, admin_user, admin_password, email) -> None:
    """Yourls URL shortener."""
    provision.install_yourls(domain, admin_user, admin_password, email or state.options.email, state.paths)


@setup.command("update")
@click.option("--force", is_flag=True, help="Continue when the pre-update backup fails")
@pass_state
@requires_root
def setup_update(state: CliState, force: bool) -> None:
    """Backup, then update packages, Mail-in-a-Box and WordPress."""
    provision.smart_update(state.paths, continue_without_backup=lambda: force)


# ----------------------------------------------------------------
# site
# ----------------------------------------------------------------
@cli.group()
def site() -> None:
    """Nginx websites."""


@site.command("list")
@click.option("--status", type=click.Choice(nginx.SITE_STATUSES), default="all", show_default=True)
@pass_state
def site_list(state: CliState, status: str) -> None:
    sites = nginx.list_sites(state.paths, status)
    if not sites:
        print_warning("No website configurations found.")
        return
    table = Table(title="Websites", border_style=NordColors.FROST_3)
    table.add_column("Config", style=f"bold {NordColors.FROST_2}")
    table.add_column("Status")
    for s in sites:
        table.add_row(s.name, "[green]Enabled[/]" if s.enabled else "[yellow]Disabled[/]")
    console.print(table)


@site.command("add")
@click.argument("domain")
@click.option("--email", default=None, help="Request a certificate with this contact")
@pass_state
@requires_root
def site_add(state: CliState, domain: str, email: Optional[str]) -> None:
    """Static site with a placeholder page."""
    domain = nginx.validate_domain(domain)
    nginx.add_website(state.paths, domain)
    email = email or state.options.email
    if email:
        nginx.obtain_certificate([domain, f"www.{domain}"], email)
    else:
        print_warning("No email given; the site is only available via HTTP.")


@site.command("enable")
@click.argument("name")
@pass_state
@requires_root
def site_enable(state: CliState, name: str) -> None:
    nginx.enable_site(state.paths, name)


@site.command("disable")
@click.argument("name")
@pass_state
@requires_root
def site_disable(state: CliState, name: str) -> None:
    nginx.disable_site(state.paths, name)


@site.command("delete")
@click.argument("name")
@click.option("--drop-db", default=None, help="Also drop this database")
@click.option("--confirm", "confirmation", default=None, help="Type the domain to confirm")
@pass_state
@requires_root
def site_delete(state: CliState, name: str, drop_db: Optional[str], confirmation: Optional[str]) -> None:
    """Delete config, web root, certificate and optionally the database."""
    domain = nginx.NginxSite(name=name, enabled=False).domain
    print_warning(f"This will permanently delete the Nginx config, web files and SSL certificate for {domain}.")
    nginx.delete_website(state.paths, name, _confirmation(confirmation, domain), drop_db)


@site.command("cert")
@click.argument("domains", nargs=-1, required=True)
@click.option("--email", required=True)
@pass_state
@requires_root
def site_cert(state: CliState, domains, email: str) -> None:
    os_info = system.detect_os(state.paths.os_release)
    nginx.obtain_certificate(list(domains), email, os_info.package_manager)


# ----------------------------------------------------------------
# sftp
# ----------------------------------------------------------------
@cli.group()
def sftp() -> None:
    """Jailed SFTP users."""


@sftp.command("list")
@pass_state
def sftp_list(state: CliState) -> None:
    names = users.list_sftp_users(state.paths)
    if not names:
        print_warning(f"No SFTP users configured in {state.paths.sshd_config}.")
        return
    for name in names:
        print_message(name, prefix="-")


@sftp.command("create")
@click.argument("user")
@click.option("--dir", "jail_dir", required=True, help="Root-owned jail, e.g. /var/www/example.com")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@pass_state
@requires_root
def sftp_create(state: CliState, user: str, jail_dir: str, password: str) -> None:
    users.create_sftp_user(user, password, jail_dir, state.paths)


@sftp.command("passwd")
@click.argument("user")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@pass_state
@requires_root
def sftp_passwd(state: CliState, user: str, password: str) -> None:
    users.change_sftp_password(user, password, state.paths)


@sftp.command("delete")
@click.argument("user")
@click.option("--confirm", "confirmation", default=None, help="Type the username to confirm")
@pass_state
@requires_root
def sftp_delete(state: CliState, user: str, confirmation: Optional[str]) -> None:
    print_warning(f"This will permanently delete the user '{user}' and their SFTP configuration.")
    users.delete_sftp_user(user, _confirmation(confirmation, user), state.paths)


# ----------------------------------------------------------------
# mail
# ----------------------------------------------------------------
@cli.group("mail")
def mail_group() -> None:
    """Email accounts."""


@mail_group.command("list")
@pass_state
def mail_list(state: CliState) -> None:
    names = mail.list_mail_users(state.paths.passwd_file)
    if not names:
        print_warning("No mail/system users found.")
        return
    for name in names:
        print_message(name, prefix="-")


@mail_group.command("add")
@click.argument("name")
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@requires_root
def mail_add(name: str, password: str) -> None:
    mail.add_mail_user(name, password)


@mail_group.command("delete")
@click.argument("name")
@click.option("--confirm", "confirmation", default=None, help="Type the username to confirm")
@requires_root
def mail_delete(name: str, confirmation: Optional[str]) -> None:
    print_warning(f"This will permanently delete the user '{name}' and all their emails.")
    mail.delete_mail_user(name, _confirmation(confirmation, name))


# ----------------------------------------------------------------
# backup
# ----------------------------------------------------------------
@cli.group("backup")
def backup_group() -> None:
    """Website and server backups."""


@backup_group.command("website")
@click.argument("domain")
@click.option("--db", "db_name", required=True, help="Database to dump")
@pass_state
@requires_root
def backup_website(state: CliState, domain: str, db_name: str) -> None:
    backup.backup_website(domain, db_name, state.paths)


@backup_group.command("restore-website")
@click.argument("archive", type=click.Path(dir_okay=False))
@click.argument("domain")
@click.option("--db", "db_name", required=True, help="Database to restore into")
@click.option("--confirm", "confirmation", default=None, help="Type the domain to confirm")
@pass_state
@requires_root
def restore_website(state: CliState, archive: str, domain: str, db_name: str, confirmation: Optional[str]) -> None:
    print_warning(f"This will overwrite all files in '{state.paths.web_root(domain)}' and the database '{db_name}'.")
    backup.restore_website(archive, domain, db_name, _confirmation(confirmation, domain), state.paths)


@backup_group.command("server")
@click.option("-d", "--domain", default=None, help="WordPress domain (auto-detected)")
@click.option("-r", "--rclone-remote", default=None, help="rclone remote for an off-site copy")
@click.option("-e", "--email", "notify_email", default=None, help="Notification address")
@pass_state
@requires_root
def backup_server(state: CliState, domain, rclone_remote, notify_email) -> None:
    """WordPress files and database plus Mail-in-a-Box data."""
    result = backup.backup_server(domain, rclone_remote, notify_email, state.paths)
    print_step(f"Archive size: {result.human_size}")
    print_step("To restore from this backup, run: lempkit backup instructions")


@backup_group.command("restore-server")
@click.argument("archive", type=click.Path(dir_okay=False))
@click.option("-d", "--domain", default=None, help="WordPress domain (auto-detected)")
@click.option("--confirm", "confirmation", default=None, help="Type the domain to confirm")
@pass_state
@requires_root
def restore_server(state: CliState, archive: str, domain: Optional[str], confirmation: Optional[str]) -> None:
    domain = domain or backup.detect_wordpress_domain(state.paths.www_root)
    if not domain:
        raise ValidationError("Could not auto-detect the WordPress domain. Use --domain.")
    print_warning("This will overwrite your current WordPress files, database, and Mail-in-a-Box data.")
    backup.restore_server(archive, _confirmation(confirmation, domain), domain, state.paths)


@backup_group.command("instructions")
def backup_instructions() -> None:
    """How to restore a server backup by hand."""
    display_panel(backup.restore_instructions(), NordColors.FROST_2, "How to Restore from a Backup")


# ----------------------------------------------------------------
# services
# ----------------------------------------------------------------
@cli.group("services")
def services_group() -> None:
    """Start, stop and inspect service groups."""


def _service_action(action: str):
    @click.argument("group", type=click.Choice(services.GROUPS))
    @pass_state
    @requires_root
    def command(state: CliState, group: str) -> None:
        results = services.manage(action, group, state.paths)
        if action != "status" and not all(results.values()):
            sys.exit(1)

    command.__doc__ = f"{action.capitalize()} a service group."
    return services_group.command(action)(command)


for _action in services.ACTIONS:
    _service_action(_action)


@services_group.command("usage")
def services_usage() -> None:
    """Disk, memory and CPU usage."""
    print_section("Server Resource Usage")
    console.print(services.usage_report())


@services_group.command("logs")
@click.argument("group", type=click.Choice(services.GROUPS))
@pass_state
def services_logs(state: CliState, group: str) -> None:
    """Tail the logs of a service group."""
    services.tail_logs(group, state.paths)


@cli.command()
@click.option("-e", "--email", "notify_email", default=None, help="Notification address")
@requires_root
def autoheal(notify_email: Optional[str]) -> None:
    """Restart inactive services (for cron)."""
    report = services.autoheal(notify_email=notify_email)
    if "failed" in report.values():
        sys.exit(1)


# ----------------------------------------------------------------
# wp
# ----------------------------------------------------------------
@cli.group()
@click.option("--domain", default=None, help="WordPress site (auto-detected)")
@click.pass_context
def wp(ctx: click.Context, domain: Optional[str]) -> None:
    """WordPress tasks through wp-cli."""
    state = ctx.find_object(CliState)
    if not system.command_exists("wp") and not state.paths.wp_cli.is_file():
        raise ValidationError("wp-cli is not installed. Run 'lempkit setup update' or install it manually.")
    ctx.meta["wp_path"] = _wp_path(state, domain)


@wp.command("user-create")
@click.argument("username")
@click.argument("email")
@click.argument("password", required=False)
@click.pass_context
@requires_root
def wp_user_create(ctx: click.Context, username: str, email: str, password: Optional[str]) -> None:
    """Create an administrator (password generated if omitted)."""
    password = wordpress.create_admin_user(ctx.meta["wp_path"], username, email, password)
    display_panel(f"Username: {username}\nPassword: {password}", NordColors.YELLOW, "New Administrator")


@wp.command("plugin")
@click.argument("action", type=click.Choice(wordpress.PLUGIN_ACTIONS))
@click.argument("name")
@click.pass_context
@requires_root
def wp_plugin(ctx: click.Context, action: str, name: str) -> None:
    wordpress.plugin(ctx.meta["wp_path"], action, name)


@wp.command("maintenance")
@click.argument("mode", type=click.Choice(sorted(wordpress.MAINTENANCE_MODES)))
@click.pass_context
@requires_root
def wp_maintenance(ctx: click.Context, mode: str) -> None:
    wordpress.maintenance(ctx.meta["wp_path"], mode)


@wp.command("update")
@click.pass_context
@requires_root
def wp_update(ctx: click.Context) -> None:
    """Core, themes and plugins."""
    wordpress.update_all(ctx.meta["wp_path"])


# ----------------------------------------------------------------
# fail2ban
# ----------------------------------------------------------------
@cli.group("fail2ban")
def fail2ban_group() -> None:
    """Fail2Ban jails."""


@fail2ban_group.command("configure")
@click.option("--ssh-port", default=22, show_default=True, type=int)
@click.option("--with-mail", is_flag=True, help="Add postfix and dovecot jails")
@pass_state
@requires_root
def fail2ban_configure(state: CliState, ssh_port: int, with_mail: bool) -> None:
    os_info = system.detect_os(state.paths.os_release)
    fail2ban.configure_fail2ban(state.paths, ssh_port, with_mail, os_info.package_manager)


@fail2ban_group.command("list")
@requires_root
def fail2ban_list() -> None:
    jails = fail2ban.list_jails()
    if not jails:
        print_warning("No jails found.")
        return
    table = Table(title="Fail2Ban Jails", border_style=NordColors.FROST_3)
    table.add_column("Jail", style=f"bold {NordColors.FROST_2}")
    table.add_column("Banned", justify="right")
    table.add_column("IPs")
    for jail in jails:
        table.add_row(jail.name, str(len(jail.banned_ips)), ", ".join(jail.banned_ips))
    console.print(table)


@fail2ban_group.command("unban")
@click.argument("jail")
@click.argument("ip")
@requires_root
def fail2ban_unban(jail: str, ip: str) -> None:
    fail2ban.unban_ip(jail, ip)


# ----------------------------------------------------------------
# Entry Point
# ----------------------------------------------------------------
def signal_handler(sig: int, frame: Any) -> None:
    sig_name = signal.Signals(sig).name
    print_warning(f"Process interrupted by {sig_name}")
    system.cleanup_temp_dirs()
    sys.exit(128 + sig)


def main() -> None:
    install_rich_traceback(show_locals=False)
    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, signal_handler)
    atexit.register(system.cleanup_temp_dirs)
    cli(obj=CliState())


if __name__ == "__main__":
    main()
