"""
Command execution and host facts.

Every external program lempkit drives goes through ``run_command`` so failures
are reported the same way and tests can replace it with a recorder.
"""

import logging
import os
import re
import secrets
import shutil
import string
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Union

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
)

from lempkit.errors import PrivilegeError, UnsupportedSystemError
from lempkit.ui import console

logger = logging.getLogger(__name__)

OPERATION_TIMEOUT: int = 1800  # package installs can be slow
PUBLIC_IP_URL: str = "https://ifconfig.me"

APT_FAMILY = ("debian", "ubuntu")
RHEL_FAMILY = ("centos", "rhel", "fedora", "almalinux", "rocky")

_TEMP_DIRS: Set[str] = set()


# ----------------------------------------------------------------
# Command Execution
# ----------------------------------------------------------------
def run_command(
    cmd: List[str],
    check: bool = True,
    capture_output: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[int] = OPERATION_TIMEOUT,
) -> subprocess.CompletedProcess:
    """Execute a system command with consistent error reporting."""
    logger.debug(f"Running command: {' '.join(cmd)}")
    run_env = None
    if env:
        run_env = os.environ.copy()
        run_env.update(env)
    try:
        return subprocess.run(
            cmd,
            check=check,
            text=True,
            capture_output=capture_output,
            input=input_text,
            env=run_env,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed ({e.returncode}): {' '.join(cmd)}")
        if e.stdout:
            console.print(f"[dim]Stdout: {e.stdout.strip()}[/dim]")
        if e.stderr:
            console.print(f"[error]Stderr: {e.stderr.strip()}[/error]")
            logger.error(e.stderr.strip())
        raise
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")
        raise


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def require_root() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError("This command must be run as root or with sudo.")


# ----------------------------------------------------------------
# Host Facts
# ----------------------------------------------------------------
@dataclass
class OSInfo:
    os_id: str
    version: str
    package_manager: str

    @property
    def is_debian(self) -> bool:
        return self.package_manager == "apt-get"

    @property
    def major_version(self) -> int:
        match = re.match(r"\d+", self.version)
        return int(match.group(0)) if match else 0


def parse_os_release(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key] = value.strip().strip('"').strip("'")
    return values


def detect_os(os_release: Union[str, Path] = "/etc/os-release") -> OSInfo:
    """Detect the distribution and the package manager to drive."""
    path = Path(os_release)
    if not path.is_file():
        raise UnsupportedSystemError(f"Cannot detect operating system from {path}.")
    info = parse_os_release(path.read_text())
    os_id = info.get("ID", "").lower()
    version = info.get("VERSION_ID", "")

    if os_id in APT_FAMILY:
        manager = "apt-get"
    elif os_id in RHEL_FAMILY:
        if command_exists("dnf"):
            manager = "dnf"
        elif command_exists("yum"):
            manager = "yum"
        else:
            raise UnsupportedSystemError(
                "Cannot find 'dnf' or 'yum' package manager on this system."
            )
    else:
        raise UnsupportedSystemError(
            f"Unsupported operating system: {os_id or 'unknown'}. "
            "Supported: Debian, Ubuntu, CentOS, RHEL, Fedora, AlmaLinux, Rocky."
        )
    logger.info(f"Detected {os_id} {version} using {manager}")
    return OSInfo(os_id=os_id, version=version, package_manager=manager)


def _version_key(version: str) -> List[int]:
    return [int(part) for part in version.split(".")]


def latest_php_version(apt_cache_output: str) -> Optional[str]:
    """Return the highest X.Y among ``phpX.Y-fpm`` package names."""
    versions = set(re.findall(r"^php(\d+\.\d+)-fpm\b", apt_cache_output, re.MULTILINE))
    if not versions:
        return None
    return max(versions, key=_version_key)


def find_latest_php_version() -> Optional[str]:
    result = run_command(
        ["apt-cache", "search", "--names-only", r"^php[0-9]+\.[0-9]+-fpm$"],
        check=False,
    )
    return latest_php_version(result.stdout or "")


def php_fpm_unit(systemctl_output: str) -> str:
    """First ``phpX.Y-fpm`` unit in systemctl output, else ``php-fpm``."""
    match = re.search(r"php\d+\.\d+-fpm(?=\.service)", systemctl_output)
    return match.group(0) if match else "php-fpm"


def detect_php_fpm_service() -> str:
    result = run_command(
        ["systemctl", "list-units", "--type=service", "--state=running"],
        check=False,
    )
    service = php_fpm_unit(result.stdout or "")
    if service == "php-fpm":
        logger.warning("Could not detect a running PHP-FPM service; using 'php-fpm'.")
    return service


def generate_password(length: int = 20) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# ----------------------------------------------------------------
# Filesystem Ownership
# ----------------------------------------------------------------
def chown(path: Union[str, Path], owner: str, group: str, recursive: bool = False) -> None:
    cmd = ["chown"]
    if recursive:
        cmd.append("-R")
    cmd.extend([f"{owner}:{group}", str(path)])
    run_command(cmd)


def path_owner(path: Union[str, Path]) -> str:
    return Path(path).owner()


def set_password(user: str, password: str) -> None:
    """Set a system password through chpasswd (stdin, never argv)."""
    run_command(["chpasswd"], input_text=f"{user}:{password}\n")


def user_exists(user: str) -> bool:
    return run_command(["id", user], check=False).returncode == 0


# ----------------------------------------------------------------
# Network Helpers
# ----------------------------------------------------------------
def public_ip(timeout: int = 10) -> str:
    try:
        response = requests.get(PUBLIC_IP_URL, timeout=timeout)
        response.raise_for_status()
        return response.text.strip()
    except requests.RequestException as e:
        logger.warning(f"Could not determine public IP: {e}")
        return "127.0.0.1"


def download_file(url: str, destination: Union[str, Path], timeout: int = 60) -> Path:
    """Download ``url`` to ``destination`` with a Rich progress bar."""
    destination = Path(destination)
    logger.info(f"Downloading {url} to {destination}")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total_length = int(response.headers.get("content-length", 0))
            with open(destination, "wb") as out, Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TimeRemainingColumn(),
                console=console,
                transient=True,
            ) as progress:
                task = progress.add_task("Downloading", total=total_length or None)
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        out.write(chunk)
                        progress.update(task, advance=len(chunk))
    except requests.RequestException:
        if destination.exists():
            destination.unlink()
        raise
    return destination


# ----------------------------------------------------------------
# Temporary Work Directories
# ----------------------------------------------------------------
@contextmanager
def work_dir(prefix: str = "lempkit_") -> Iterator[Path]:
    """A temp directory removed on exit, even when the body raises."""
    path = tempfile.mkdtemp(prefix=prefix)
    _TEMP_DIRS.add(path)
    try:
        yield Path(path)
    finally:
        shutil.rmtree(path, ignore_errors=True)
        _TEMP_DIRS.discard(path)


def cleanup_temp_dirs() -> None:
    """Remove work directories left behind by an interrupted operation."""
    for path in list(_TEMP_DIRS):
        logger.info(f"Removing temporary directory {path}")
        shutil.rmtree(path, ignore_errors=True)
        _TEMP_DIRS.discard(path)


def format_size(num_bytes: float) -> str:
    """Convert bytes to a human-readable string."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if num_bytes < 1024:
            return f"{num_bytes:.1f} {unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f} PB"
