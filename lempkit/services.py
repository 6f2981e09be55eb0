"""
Service groups (web, mail, all): start/stop/restart/status, resource
usage, log tailing and auto-heal.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from lempkit import notify, system
from lempkit.config import Paths
from lempkit.errors import ValidationError
from lempkit.ui import console, print_error, print_section, print_step, print_success, print_warning

logger = logging.getLogger(__name__)

ACTIONS = ("start", "stop", "restart", "status")
GROUPS = ("web", "mail", "all")
MAIL_FALLBACK_SERVICES: List[str] = ["postfix", "dovecot"]


def web_services(php_service: Optional[str] = None) -> List[str]:
    return ["nginx", php_service or system.detect_php_fpm_service(), "mariadb"]


def has_miab_daemon(paths: Paths) -> bool:
    return paths.miab_daemon.is_file()


def _validate(action: str, group: str) -> None:
    if action not in ACTIONS:
        raise ValidationError(f"Invalid command: '{action}'. Use one of {', '.join(ACTIONS)}.")
    if group not in GROUPS:
        raise ValidationError(f"Invalid service group: '{group}'. Use 'web', 'mail', or 'all'.")


def systemctl(action: str, services: List[str]) -> Dict[str, bool]:
    """Run ``systemctl <action>`` per service; failures are reported, not raised."""
    results: Dict[str, bool] = {}
    logger.info(f"Executing '{action}' on services: {' '.join(services)}")
    for service in services:
        console.print(f"[dim]--- {action} {service} ---[/dim]")
        result = system.run_command(
            ["systemctl", action, service], check=False, capture_output=(action != "status")
        )
        results[service] = result.returncode == 0
        if result.returncode != 0 and action != "status":
            print_error(f"Command '{action}' failed for service '{service}'.")
    return results


def _manage_mail(action: str, paths: Paths) -> Dict[str, bool]:
    if not has_miab_daemon(paths):
        print_warning("mailinabox-daemon not found. Using fallback service list.")
        return systemctl(action, MAIL_FALLBACK_SERVICES)
    if action == "status":
        print_warning("'status' for the mail group is not supported by mailinabox-daemon.")
        print_step("Check the Mail-in-a-Box admin panel for a detailed status.")
        return systemctl(action, MAIL_FALLBACK_SERVICES)
    print_step("Using mailinabox-daemon to manage mail services...")
    result = system.run_command([str(paths.miab_daemon), action], check=False)
    if result.returncode != 0:
        print_error("Mail-in-a-Box daemon command failed.")
    return {"mailinabox-daemon": result.returncode == 0}


def manage(
    action: str,
    group: str,
    paths: Optional[Paths] = None,
    php_service: Optional[str] = None,
) -> Dict[str, bool]:
    """Apply ``action`` to a service group; returns success per service."""
    _validate(action, group)
    paths = paths or Paths()
    results: Dict[str, bool] = {}
    if group in ("web", "all"):
        results.update(systemctl(action, web_services(php_service)))
    if group in ("mail", "all"):
        results.update(_manage_mail(action, paths))
    print_success(f"Command '{action}' executed for service group '{group}'.")
    return results


# ----------------------------------------------------------------
# Usage & Logs
# ----------------------------------------------------------------
def usage_report() -> str:
    """Disk, memory and CPU snapshot as one block of text."""
    sections = []
    disk = system.run_command(["df", "-h"], check=False).stdout or ""
    disk_lines = [
        line for line in disk.splitlines() if line.startswith("/dev/") or line.startswith("Filesystem")
    ]
    sections.append("Disk Usage:\n" + "\n".join(disk_lines))
    sections.append("Memory Usage:\n" + (system.run_command(["free", "-h"], check=False).stdout or "").rstrip())
    top = system.run_command(["top", "-b", "-n", "1"], check=False).stdout or ""
    sections.append("CPU Usage and Load:\n" + "\n".join(top.splitlines()[:5]))
    return "\n\n".join(sections) + "\n"


def log_files(group: str, paths: Optional[Paths] = None) -> List[Path]:
    """Existing log files for a group. Raises when none exist."""
    if group not in GROUPS:
        raise ValidationError(f"Invalid service group for logs: '{group}'. Use 'web', 'mail', or 'all'.")
    paths = paths or Paths()
    log_dir = paths.log_dir
    candidates: List[Path] = []
    if group == "web":
        candidates.extend([log_dir / "nginx" / "error.log", log_dir / "nginx" / "access.log"])
        php_logs = sorted(log_dir.rglob("*php*-fpm.log")) if log_dir.is_dir() else []
        if php_logs:
            candidates.append(php_logs[0])
        candidates.append(log_dir / "mariadb" / "error.log")
    elif group == "mail":
        candidates.append(log_dir / "mail.log")
    else:
        # Mail log and nginx errors only; the full set is too noisy.
        candidates.extend([log_dir / "mail.log", log_dir / "nginx" / "error.log"])

    existing = []
    for candidate in candidates:
        if candidate.is_file():
            existing.append(candidate)
        else:
            print_warning(f"Log file not found: {candidate}")
    if not existing:
        raise ValidationError("No log files found for this group.")
    return existing


def tail_logs(group: str, paths: Optional[Paths] = None) -> None:
    files = log_files(group, paths)
    print_step(f"Tailing logs for '{group}'. Press Ctrl+C to exit.")
    system.run_command(
        ["tail", "-n", "50", "-f"] + [str(f) for f in files],
        check=False,
        capture_output=False,
        timeout=None,
    )


# ----------------------------------------------------------------
# Auto-heal
# ----------------------------------------------------------------
def is_active(service: str) -> bool:
    return system.run_command(["systemctl", "is-active", "--quiet", service], check=False).returncode == 0


def autoheal(
    services: Optional[List[str]] = None, notify_email: Optional[str] = None
) -> Dict[str, str]:
    """
    Restart inactive services and verify them.

    Returns a map of service name to ``active``, ``restarted`` or ``failed``.
    """
    if services is None:
        services = web_services() + MAIL_FALLBACK_SERVICES
    host = notify.hostname()
    report: Dict[str, str] = {}
    print_section("Auto-heal check")
    for service in services:
        if is_active(service):
            report[service] = "active"
            continue
        print_warning(f"Service '{service}' is INACTIVE. Attempting restart...")
        system.run_command(["systemctl", "restart", service], check=False)
        if is_active(service):
            report[service] = "restarted"
            print_success(f"Service '{service}' has been restarted successfully.")
            notify.send_notification(
                f"[Auto-Heal] Service '{service}' was restarted on {host}",
                f"The service '{service}' was found to be inactive and has been automatically restarted.",
                notify_email,
            )
        else:
            report[service] = "failed"
            print_error(f"Failed to restart service '{service}'.")
            notify.send_notification(
                f"[CRITICAL] Failed to restart service '{service}' on {host}",
                f"The service '{service}' was found to be inactive and the attempt to restart it FAILED. "
                "Manual intervention is required.",
                notify_email,
            )
    print_step("Auto-heal check finished.")
    return report
