"""
Setup flows: firewall, LEMP stack, the full Mail-in-a-Box + WordPress
installation, the Yourls URL shortener and the smart update.
"""

import hashlib
import logging
import secrets
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from lempkit import backup, database, fail2ban, nginx, system, users, wordpress
from lempkit.config import WEB_GROUP, WEB_USER, Paths, SetupOptions
from lempkit.errors import LempkitError, UnsupportedSystemError, ValidationError
from lempkit.logger import DEFAULT_LOG_FILE
from lempkit.system import OSInfo
from lempkit.ui import NordColors, display_panel, print_section, print_step, print_success, print_warning

logger = logging.getLogger(__name__)

BASE_FIREWALL_RULES: List[str] = ["ssh", "http", "https"]
MAIL_FIREWALL_PORTS: List[str] = ["25/tcp", "587/tcp", "465/tcp", "993/tcp"]
PHP_EXTENSIONS: List[str] = ["fpm", "mysql", "curl", "gd", "mbstring", "xml", "zip"]
RHEL_LEMP_PACKAGES: List[str] = [
    "nginx", "mariadb-server", "php-fpm", "php-mysqlnd", "php-gd",
    "php-mbstring", "php-xml", "php-zip", "curl", "wget", "unzip",
]
AUTO_UPGRADES = 'APT::Periodic::Update-Package-Lists "1";\nAPT::Periodic::Unattended-Upgrade "1";\n'

MIAB_SETUP_URL: str = "https://mailinabox.email/setup.sh"
YOURLS_RELEASE_API: str = "https://api.github.com/repos/YOURLS/YOURLS/releases/latest"
YOURLS_FALLBACK_URL: str = "https://github.com/YOURLS/YOURLS/archive/refs/tags/1.10.2.tar.gz"
YOURLS_DB_NAME: str = "yourls_db"
YOURLS_DB_USER: str = "yourls_user"
COOKIE_KEY_ALPHABET: str = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*(-_=+"


# ----------------------------------------------------------------
# Building Blocks
# ----------------------------------------------------------------
def setup_firewall(with_mail: bool = False) -> bool:
    """Default-deny UFW policy with SSH/HTTP/HTTPS (and mail ports) allowed."""
    print_step("Configuring firewall (UFW)...")
    if not system.command_exists("ufw"):
        print_warning("UFW command not found. Skipping firewall setup. Please install and configure it manually.")
        return False
    system.run_command(["ufw", "default", "deny", "incoming"])
    system.run_command(["ufw", "default", "allow", "outgoing"])
    rules = BASE_FIREWALL_RULES + (MAIL_FIREWALL_PORTS if with_mail else [])
    for rule in rules:
        system.run_command(["ufw", "allow", rule])
    system.run_command(["ufw", "--force", "enable"])
    print_success("Firewall is configured and enabled.")
    return True


def php_packages(version: Optional[str]) -> List[str]:
    if not version:
        return [f"php-{ext}" for ext in PHP_EXTENSIONS]
    return [f"php{version}-{ext}" for ext in PHP_EXTENSIONS]


def enable_php_fpm() -> None:
    units = system.run_command(["systemctl", "list-unit-files"], check=False).stdout or ""
    service = system.php_fpm_unit(units)
    if service == "php-fpm" and "php-fpm.service" not in units:
        print_warning("Could not determine PHP-FPM service name to enable it.")
        return
    system.run_command(["systemctl", "enable", "--now", service])


def install_lemp(os_info: OSInfo) -> Optional[str]:
    """Install Nginx, MariaDB and PHP-FPM; returns the PHP version on apt hosts."""
    print_step("Installing LEMP stack (Nginx, MariaDB, PHP)...")
    manager = os_info.package_manager
    php_version = None
    system.run_command([manager, "update", "-y"])
    if os_info.is_debian:
        php_version = system.find_latest_php_version()
        if php_version:
            print_step(f"Detected latest PHP version: {php_version}")
        else:
            print_warning("Could not detect a suitable PHP-FPM package. Defaulting to 'php-fpm'.")
        packages = ["nginx", "mariadb-server"] + php_packages(php_version) + ["curl", "wget", "unzip"]
    else:
        if os_info.os_id in ("centos", "rhel") and os_info.major_version < 8:
            system.run_command([manager, "install", "-y", "epel-release"])
        packages = RHEL_LEMP_PACKAGES
    system.run_command([manager, "install", "-y"] + packages)

    print_step("Enabling and starting services...")
    system.run_command(["systemctl", "enable", "--now", "nginx"])
    system.run_command(["systemctl", "enable", "--now", "mariadb"])
    enable_php_fpm()
    print_success("LEMP stack installed.")
    return php_version


def run_initial_setup(os_info: OSInfo, paths: Optional[Paths] = None) -> str:
    """Firewall, LEMP stack and a secured MariaDB. Returns the root password."""
    paths = paths or Paths()
    print_section("Initial Server Setup")
    setup_firewall()
    install_lemp(os_info)
    password = database.secure_mariadb(paths.mysql_root_password_file)
    print_success("Initial server setup completed successfully.")
    return password


def set_hostname(hostname: str, paths: Paths) -> None:
    print_step(f"Setting system hostname to '{hostname}'...")
    system.run_command(["hostnamectl", "set-hostname", hostname])
    hosts = paths.hosts_file.read_text() if paths.hosts_file.is_file() else ""
    if not any(hostname in line.split() for line in hosts.splitlines()):
        entry = f"{system.public_ip()} {hostname} box\n"
        with open(paths.hosts_file, "a") as f:
            if hosts and not hosts.endswith("\n"):
                f.write("\n")
            f.write(entry)
    print_success("Hostname is set.")


def configure_auto_upgrades(paths: Paths) -> None:
    print_step("Configuring automatic security updates...")
    paths.apt_auto_upgrades.parent.mkdir(parents=True, exist_ok=True)
    paths.apt_auto_upgrades.write_text(AUTO_UPGRADES)
    print_success("Automatic security updates configured.")


def run_mailinabox_setup(env: Optional[Dict[str, str]] = None) -> None:
    """Download and run the Mail-in-a-Box setup script (interactive)."""
    with system.work_dir("lempkit_miab_") as work:
        script = system.download_file(MIAB_SETUP_URL, work / "setup.sh")
        system.run_command(["bash", str(script)], env=env, capture_output=False, timeout=None)


def setup_database(options: SetupOptions, paths: Paths) -> None:
    print_step("Creating WordPress database and user...")
    database.create_database(options.wp_db_name, options.wp_db_user, options.wp_db_password)
    print_success("WordPress database and user created.")

    if options.db_root_password:
        database.secure_mariadb(paths.mysql_root_password_file, options.db_root_password)
    elif options.non_interactive:
        print_warning("Skipping interactive mysql_secure_installation. Please run it manually later.")
    else:
        print_warning("This next step is INTERACTIVE. Answer 'Y' to all prompts.")
        system.run_command(["mysql_secure_installation"], capture_output=False, timeout=None)


def run_security_scan(package_manager: str = "apt-get") -> None:
    print_step("Running initial security scan with Lynis...")
    if not system.command_exists("lynis"):
        system.run_command([package_manager, "install", "-y", "lynis"])
    system.run_command(["lynis", "audit", "system", "--quiet"], check=False, timeout=None)
    print_step("Lynis scan complete. A detailed report can be found in /var/log/lynis-report.dat")


def credentials_summary(options: SetupOptions, log_file: str = DEFAULT_LOG_FILE) -> str:
    lines = [
        "WordPress Admin Credentials (SAVE THESE):",
        f"  - URL:               https://www.{options.domain}/wp-admin",
        f"  - Username:          {options.wp_admin_user}",
        f"  - Password:          {options.wp_admin_password}",
        "",
        "WordPress Database Credentials (SAVE THESE):",
        f"  - Database Name:     {options.wp_db_name}",
        f"  - Database User:     {options.wp_db_user}",
        f"  - Database Password: {options.wp_db_password}",
    ]
    if options.setup_sftp:
        lines += [
            "",
            "SFTP User Credentials (SAVE THESE):",
            f"  - Hostname:          www.{options.domain}",
            "  - Port:              22",
            f"  - Username:          {options.sftp_user}",
            f"  - Password:          {options.sftp_password}",
        ]
    lines += ["", f"A detailed installation log can be found at {log_file}"]
    return "\n".join(lines)


# ----------------------------------------------------------------
# Full Setup (Mail-in-a-Box + WordPress)
# ----------------------------------------------------------------
def run_full_setup(
    options: SetupOptions,
    paths: Optional[Paths] = None,
    log_file: str = DEFAULT_LOG_FILE,
) -> SetupOptions:
    paths = paths or Paths()
    if not options.domain or not options.email:
        raise ValidationError("Domain and email are required (via flags or config.ini).")
    options.domain = nginx.validate_domain(options.domain)
    options.assign_defaults()

    print_section(f"Full Server Setup for {options.domain}")
    php_version = system.find_latest_php_version()
    if not php_version:
        raise UnsupportedSystemError("Could not detect a suitable PHP-FPM package.")
    print_success(f"Detected PHP-FPM service: php{php_version}-fpm")

    print_step("Updating system and installing dependencies...")
    system.run_command(["apt-get", "update"])
    system.run_command(["apt-get", "upgrade", "-y"])
    system.run_command(
        ["apt-get", "install", "-y", "curl", "wget", "socat", "mariadb-server",
         f"php{php_version}-fpm", "unattended-upgrades", "ufw", "php-cli"]
    )
    configure_auto_upgrades(paths)
    set_hostname(options.mail_hostname, paths)
    setup_firewall(with_mail=True)
    setup_database(options, paths)
    wordpress.ensure_wp_cli(paths)

    # Mail-in-a-Box sets up its own nginx, so it runs before the site config.
    print_step("Starting Mail-in-a-Box installation...")
    miab_env = {
        "PRIMARY_HOSTNAME": options.mail_hostname,
        "PUBLIC_IP": system.public_ip(),
        "CONTACT_EMAIL": options.email,
        "TZ": options.timezone,
    }
    if options.non_interactive:
        print_warning("Running Mail-in-a-Box non-interactively.")
        miab_env["NONINTERACTIVE"] = "1"
    else:
        print_warning("This step is INTERACTIVE. Please follow the on-screen prompts.")
    run_mailinabox_setup(miab_env)
    print_success("Mail-in-a-Box installation finished.")

    wp_path = wordpress.install_wordpress(options, paths)

    print_step("Configuring Nginx for WordPress site...")
    default_site = paths.nginx_enabled / "default"
    if default_site.is_symlink() or default_site.exists():
        default_site.unlink()
    nginx.install_site_config(
        paths,
        options.domain,
        nginx.render_wordpress_site(options.domain, wp_path, nginx.php_socket_path(php_version)),
    )

    nginx.obtain_certificate([f"www.{options.domain}", options.domain], options.email)
    nginx.obtain_certificate([options.mail_hostname], options.email)

    if options.setup_sftp:
        users.setup_site_sftp_user(options.domain, options.sftp_user, options.sftp_password, paths)
    else:
        print_step("SFTP user setup is disabled. Skipping.")

    fail2ban.configure_fail2ban(paths, with_mail=True)
    run_security_scan()

    print_success("--- FULL INSTALLATION COMPLETE ---")
    print_step("Please check your Mail-in-a-Box admin panel for DNS status.")
    display_panel(credentials_summary(options, log_file), NordColors.YELLOW, "Credentials")
    return options


# ----------------------------------------------------------------
# Yourls
# ----------------------------------------------------------------
def latest_yourls_url(timeout: int = 15) -> str:
    try:
        response = requests.get(YOURLS_RELEASE_API, timeout=timeout)
        response.raise_for_status()
        url = response.json().get("tarball_url")
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"GitHub release lookup failed: {e}")
        url = None
    if not url:
        print_warning("Could not find latest Yourls release URL. Using fallback.")
        return YOURLS_FALLBACK_URL
    return url


def yourls_password_hash(password: str) -> str:
    return hashlib.md5(password.encode()).hexdigest()


def generate_cookie_key(length: int = 64) -> str:
    return "".join(secrets.choice(COOKIE_KEY_ALPHABET) for _ in range(length))


def render_yourls_config(
    sample: str,
    domain: str,
    db_user: str,
    db_password: str,
    db_name: str,
    admin_user: str,
    admin_password: str,
    cookie_key: Optional[str] = None,
) -> str:
    replacements = [
        ("define( 'YOURLS_DB_USER', 'your db user' );", f"define( 'YOURLS_DB_USER', '{db_user}' );"),
        ("define( 'YOURLS_DB_PASS', 'your db password' );", f"define( 'YOURLS_DB_PASS', '{db_password}' );"),
        ("define( 'YOURLS_DB_NAME', 'yourls' );", f"define( 'YOURLS_DB_NAME', '{db_name}' );"),
        (
            "define( 'YOURLS_SITE', 'http://your-own-domain-here.com' );",
            f"define( 'YOURLS_SITE', 'https://{domain}' );",
        ),
        (
            "define( 'YOURLS_COOKIEKEY', 'modify me!' );",
            f"define( 'YOURLS_COOKIEKEY', '{cookie_key or generate_cookie_key()}' );",
        ),
        (
            "$yourls_user_passwords = array(",
            f"$yourls_user_passwords = array( '{admin_user}' => '{yourls_password_hash(admin_password)}',",
        ),
    ]
    for old, new in replacements:
        sample = sample.replace(old, new, 1)
    return sample


def install_yourls(
    domain: str,
    admin_user: str,
    admin_password: str,
    email: str,
    paths: Optional[Paths] = None,
    php_version: Optional[str] = None,
) -> Path:
    """Install Yourls with its own database, nginx site and certificate."""
    paths = paths or Paths()
    domain = nginx.validate_domain(domain)
    if not admin_user or not admin_password:
        raise ValidationError("A Yourls admin username and password are required.")
    print_section("Installing Yourls URL Shortener")

    db_password = system.generate_password()
    print_step(f"Creating MariaDB database '{YOURLS_DB_NAME}' and user '{YOURLS_DB_USER}'...")
    database.create_database(YOURLS_DB_NAME, YOURLS_DB_USER, db_password)
    print_success("Database created.")

    url = latest_yourls_url()
    print_step(f"Downloading from {url}")
    yourls_path = paths.web_root(domain)
    with system.work_dir("lempkit_yourls_") as work:
        tarball = system.download_file(url, work / "yourls.tar.gz")
        unpacked = work / "src"
        backup.extract_archive(tarball, unpacked)
        top_dirs = [p for p in unpacked.iterdir() if p.is_dir()]
        if len(top_dirs) != 1:
            raise LempkitError("Unexpected Yourls archive layout.")
        backup.copy_contents(top_dirs[0], yourls_path)
    system.chown(yourls_path, WEB_USER, WEB_GROUP, recursive=True)
    print_success("Yourls installed.")

    print_step("Configuring Yourls...")
    user_dir = yourls_path / "user"
    config = render_yourls_config(
        (user_dir / "config-sample.php").read_text(),
        domain,
        YOURLS_DB_USER,
        db_password,
        YOURLS_DB_NAME,
        admin_user,
        admin_password,
    )
    (user_dir / "config.php").write_text(config)
    system.chown(user_dir / "config.php", WEB_USER, WEB_GROUP)
    print_success("Yourls configured securely.")

    if php_version is None:
        php_version = system.find_latest_php_version()
    nginx.install_site_config(
        paths, domain, nginx.render_yourls_site(domain, yourls_path, nginx.php_socket_path(php_version))
    )
    nginx.obtain_certificate([domain], email or f"admin@{domain}")

    print_success("--- YOURLS INSTALLATION COMPLETE ---")
    display_panel(
        f"URL:       https://{domain}/admin\nUsername:  {admin_user}\nPassword:  (the one you just entered)",
        NordColors.YELLOW,
        "Yourls Admin Credentials",
    )
    return yourls_path


# ----------------------------------------------------------------
# Smart Update
# ----------------------------------------------------------------
def smart_update(
    paths: Optional[Paths] = None,
    continue_without_backup: Callable[[], bool] = lambda: False,
) -> None:
    """Pre-update backup, system packages, Mail-in-a-Box and WordPress."""
    paths = paths or Paths()
    print_section("Smart Update")

    print_step("Step 1: Performing a pre-update backup...")
    try:
        backup.backup_server(paths=paths)
        print_success("Pre-update backup completed.")
    except LempkitError as e:
        print_warning(f"Pre-update backup failed: {e}")
        if not continue_without_backup():
            raise LempkitError("Aborting update process.") from e

    print_step("Step 2: Updating system packages (apt)...")
    system.run_command(["apt-get", "update"])
    system.run_command(["apt-get", "dist-upgrade", "-y"], env={"DEBIAN_FRONTEND": "noninteractive"})
    system.run_command(["apt-get", "autoremove", "-y"])
    print_success("System packages updated.")

    print_step("Step 3: Updating Mail-in-a-Box...")
    if paths.miab_install_dir.is_dir():
        run_mailinabox_setup()
        print_success("Mail-in-a-Box update process completed.")
    else:
        print_warning("Mail-in-a-Box installation not found. Skipping.")

    print_step("Step 4: Updating WordPress (core, themes, plugins)...")
    wordpress.ensure_wp_cli(paths)
    domain = backup.detect_wordpress_domain(paths.www_root)
    if domain:
        wordpress.update_all(paths.web_root(domain))
    else:
        print_warning("Could not auto-detect the WordPress domain. Skipping WordPress updates.")

    print_success("--- Smart Update Process Finished ---")
    print_step("It is recommended to reboot the server if a new kernel was installed.")
