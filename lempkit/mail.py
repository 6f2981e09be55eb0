"""
Postfix & Dovecot configuration and mail accounts.

Postfix main.cf goes through ``postconf -e``. master.cf and the Dovecot
``conf.d`` files are edited with line transforms that are safe to re-run.
"""

import logging
import re
from collections import OrderedDict
from pathlib import Path
from typing import Callable, Dict, List, Optional

from lempkit import system
from lempkit.config import Paths
from lempkit.errors import ConfirmationError, ValidationError
from lempkit.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

MAIL_PORTS: List[str] = ["25/tcp", "587/tcp", "993/tcp"]
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_.-]{0,31}$")


def validate_username(name: str) -> str:
    name = name.strip()
    if not USERNAME_RE.match(name):
        raise ValidationError(f"Invalid username: '{name}'.")
    return name


# ----------------------------------------------------------------
# Postfix
# ----------------------------------------------------------------
def postfix_settings(domain: str, hostname: str, cert_dir: Path) -> "OrderedDict[str, str]":
    settings: "OrderedDict[str, str]" = OrderedDict(
        [
            ("myhostname", hostname),
            ("mydomain", domain),
            ("myorigin", "$mydomain"),
            ("mydestination", "$myhostname, localhost.$mydomain, localhost, $mydomain"),
            ("mynetworks", "127.0.0.0/8 [::ffff:127.0.0.0]/104 [::1]/128"),
            ("home_mailbox", "Maildir/"),
            ("smtpd_sasl_type", "dovecot"),
            ("smtpd_sasl_path", "private/auth"),
            ("smtpd_sasl_auth_enable", "yes"),
            (
                "smtpd_recipient_restrictions",
                "permit_sasl_authenticated,permit_mynetworks,reject_unauth_destination",
            ),
        ]
    )
    if (cert_dir / "fullchain.pem").is_file():
        settings["smtpd_tls_cert_file"] = str(cert_dir / "fullchain.pem")
        settings["smtpd_tls_key_file"] = str(cert_dir / "privkey.pem")
        settings["smtpd_tls_security_level"] = "may"
        settings["smtp_tls_security_level"] = "may"
    return settings


def apply_postfix_settings(settings: Dict[str, str]) -> None:
    for key, value in settings.items():
        system.run_command(["postconf", "-e", f"{key} = {value}"])


_SUBMISSION_RE = re.compile(r"^[#\s]*submission\s+inet\s+n\s+-\s+\S+\s+-\s+-\s+smtpd\s*$")
_SUBMISSION_OPTIONS = ("smtpd_tls_security_level=encrypt", "smtpd_sasl_auth_enable=yes")


def enable_submission(master_cf: str) -> str:
    """Uncomment the submission service (port 587) and its TLS/SASL options."""
    lines = master_cf.splitlines(keepends=True)
    in_submission = False
    for i, line in enumerate(lines):
        if _SUBMISSION_RE.match(line.rstrip("\n")):
            lines[i] = line.lstrip("#\t ")
            in_submission = True
            continue
        if not in_submission:
            continue
        option = re.match(r"^[#\s]*-o\s+(\S+)\s*$", line)
        if option:
            if option.group(1) in _SUBMISSION_OPTIONS:
                lines[i] = f"  -o {option.group(1)}\n"
            continue
        in_submission = False
    return "".join(lines)


# ----------------------------------------------------------------
# Dovecot
# ----------------------------------------------------------------
def set_mail_location(text: str) -> str:
    desired = "mail_location = maildir:~/Maildir"
    pattern = re.compile(r"^#?\s*mail_location\s*=.*$", re.MULTILINE)
    if re.search(rf"^{re.escape(desired)}\s*$", text, re.MULTILINE):
        return text
    if pattern.search(text):
        return pattern.sub(desired, text, count=1)
    return text.rstrip("\n") + "\n" + desired + "\n"


def enable_postfix_auth_socket(text: str) -> str:
    """Open the auth unix_listener for Postfix with mode 0660, owned by postfix."""
    settings = {"mode": "0660", "user": "postfix", "group": "postfix"}
    result = []
    listener_indent = None
    done = False
    seen = set()
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if not done and listener_indent is None and re.match(
            r"^#?\s*unix_listener\s+/var/spool/postfix/private/auth\b", stripped
        ):
            listener_indent = line[: len(line) - len(line.lstrip())]
            result.append(f"{listener_indent}unix_listener /var/spool/postfix/private/auth {{\n")
            continue
        if listener_indent is None or done:
            result.append(line)
            continue
        key = re.match(r"^#?\s*(mode|user|group)\s*=", stripped)
        if key:
            name = key.group(1)
            result.append(f"{listener_indent}  {name} = {settings[name]}\n")
            seen.add(name)
        elif re.match(r"^#?\s*}", stripped):
            for name, value in settings.items():
                if name not in seen:
                    result.append(f"{listener_indent}  {name} = {value}\n")
            result.append(f"{listener_indent}}}\n")
            done = True
        else:
            result.append(line)
    return "".join(result)


def enable_login_mechanism(text: str) -> str:
    return re.sub(
        r"^(\s*)auth_mechanisms\s*=\s*plain\s*$",
        r"\1auth_mechanisms = plain login",
        text,
        flags=re.MULTILINE,
    )


def configure_ssl(text: str, cert_dir: Path) -> str:
    text = re.sub(r"^#?\s*ssl\s*=\s*yes\s*$", "ssl = required", text, flags=re.MULTILINE)
    text = re.sub(
        r"^#?\s*ssl_cert\s*=\s*<.*$",
        f"ssl_cert = <{cert_dir / 'fullchain.pem'}",
        text,
        flags=re.MULTILINE,
    )
    text = re.sub(
        r"^#?\s*ssl_key\s*=\s*<.*$",
        f"ssl_key = <{cert_dir / 'privkey.pem'}",
        text,
        flags=re.MULTILINE,
    )
    return text


def edit_file(path: Path, transform: Callable[[str], str]) -> bool:
    """Apply ``transform`` to a config file. Missing files are skipped."""
    if not path.is_file():
        print_warning(f"{path} not found; skipping.")
        return False
    original = path.read_text()
    updated = transform(original)
    if updated == original:
        logger.debug(f"{path} already up to date")
        return False
    path.write_text(updated)
    logger.info(f"Updated {path}")
    return True


def setup_mail_server(
    domain: str, hostname: str, package_manager: str, paths: Optional[Paths] = None
) -> None:
    """Install and configure Postfix and Dovecot for ``domain``."""
    paths = paths or Paths()
    if not domain or not hostname:
        raise ValidationError("Mail domain and hostname are required.")

    print_step("Installing Postfix and Dovecot...")
    if package_manager == "apt-get":
        selections = (
            "postfix postfix/main_mailer_type string 'Internet Site'\n"
            f"postfix postfix/mailname string {domain}\n"
        )
        system.run_command(["debconf-set-selections"], input_text=selections)
        system.run_command(
            ["apt-get", "install", "-y", "postfix", "dovecot-core", "dovecot-imapd"],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )
    else:
        system.run_command([package_manager, "install", "-y", "postfix", "dovecot"])
    print_success("Postfix and Dovecot installed.")

    cert_dir = paths.certificate_dir(hostname)
    has_cert = (cert_dir / "fullchain.pem").is_file()

    print_step("Configuring Postfix...")
    apply_postfix_settings(postfix_settings(domain, hostname, cert_dir))
    if not has_cert:
        print_warning(
            f"No SSL certificate found for {hostname}. Postfix will use "
            "opportunistic TLS without a certificate."
        )
    edit_file(paths.postfix_master_cf, enable_submission)
    print_success("Postfix configured.")

    print_step("Configuring Dovecot...")
    conf = paths.dovecot_conf_dir
    edit_file(conf / "10-mail.conf", set_mail_location)
    edit_file(conf / "10-master.conf", enable_postfix_auth_socket)
    edit_file(conf / "10-auth.conf", enable_login_mechanism)
    if has_cert:
        edit_file(conf / "10-ssl.conf", lambda text: configure_ssl(text, cert_dir))
    else:
        print_warning(f"No SSL certificate for {hostname}. Dovecot keeps self-signed certs.")
    print_success("Dovecot configured.")

    if system.command_exists("ufw"):
        for port in MAIL_PORTS:
            system.run_command(["ufw", "allow", port])
        print_success("Mail ports opened.")

    system.run_command(["systemctl", "restart", "postfix"])
    system.run_command(["systemctl", "restart", "dovecot"])
    print_success("Mail server setup is complete.")


# ----------------------------------------------------------------
# Mail Accounts
# ----------------------------------------------------------------
def list_mail_users(passwd_file: Path) -> List[str]:
    """Accounts with uid >= 1000 and a home directory under /home."""
    users = []
    if not passwd_file.is_file():
        return users
    for line in passwd_file.read_text().splitlines():
        parts = line.split(":")
        if len(parts) < 7:
            continue
        try:
            uid = int(parts[2])
        except ValueError:
            continue
        if uid >= 1000 and parts[5].startswith("/home") and parts[0] != "nobody":
            users.append(parts[0])
    return users


def add_mail_user(name: str, password: str) -> None:
    name = validate_username(name)
    if not password:
        raise ValidationError("Password cannot be empty.")
    system.run_command(["useradd", "-m", "-s", "/usr/sbin/nologin", name])
    system.set_password(name, password)
    print_success(f"Email account '{name}' created. The user can now log in via IMAP.")


def delete_mail_user(name: str, confirmation: str) -> None:
    if confirmation != name:
        raise ConfirmationError("Confirmation failed. Deletion cancelled.")
    if not system.user_exists(name):
        raise ValidationError(f"User '{name}' does not exist.")
    system.run_command(["userdel", "-r", name])
    print_success(f"Email account '{name}' and all associated data have been deleted.")
