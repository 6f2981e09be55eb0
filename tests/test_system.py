import os

import pytest

from lempkit import system
from lempkit.errors import PrivilegeError, UnsupportedSystemError

APT_CACHE = """php8.1-fpm - server-side, HTML-embedded scripting language (FPM-CGI binary)
php8.3-fpm - server-side, HTML-embedded scripting language (FPM-CGI binary)
php8.10-fpm - hypothetical
php-fpm - server-side (default)
"""


def test_latest_php_version_sorts_numerically():
    assert system.latest_php_version(APT_CACHE) == "8.10"
    assert system.latest_php_version("") is None


def test_php_fpm_unit():
    out = "  php8.2-fpm.service loaded active running The PHP 8.2 FastCGI Process Manager\n"
    assert system.php_fpm_unit(out) == "php8.2-fpm"
    assert system.php_fpm_unit("nginx.service loaded active running\n") == "php-fpm"


@pytest.mark.parametrize(
    "os_id,manager",
    [("ubuntu", "apt-get"), ("debian", "apt-get"), ("rocky", "dnf")],
)
def test_detect_os(tmp_path, monkeypatch, os_id, manager):
    monkeypatch.setattr(system, "command_exists", lambda name: name == "dnf")
    release = tmp_path / "os-release"
    release.write_text(f'NAME="Some Linux"\nID={os_id}\nVERSION_ID="9.4"\n')
    info = system.detect_os(release)
    assert info.os_id == os_id
    assert info.package_manager == manager
    assert info.major_version == 9


def test_detect_os_unsupported(tmp_path):
    release = tmp_path / "os-release"
    release.write_text("ID=arch\n")
    with pytest.raises(UnsupportedSystemError):
        system.detect_os(release)
    with pytest.raises(UnsupportedSystemError):
        system.detect_os(tmp_path / "missing")


def test_require_root(monkeypatch):
    monkeypatch.setattr(os, "geteuid", lambda: 1000)
    with pytest.raises(PrivilegeError):
        system.require_root()
    monkeypatch.setattr(os, "geteuid", lambda: 0)
    system.require_root()


def test_generate_password():
    password = system.generate_password(32)
    assert len(password) == 32
    assert password.isalnum()
    assert system.generate_password() != system.generate_password()


def test_set_password_uses_stdin(runner):
    system.set_password("alice", "pw")
    assert runner.calls == [["chpasswd"]]
    assert runner.inputs == ["alice:pw\n"]


def test_chown_recursive(runner):
    system.chown("/var/www/x", "www-data", "www-data", recursive=True)
    assert runner.calls == [["chown", "-R", "www-data:www-data", "/var/www/x"]]


def test_work_dir_is_removed_on_error():
    with pytest.raises(RuntimeError):
        with system.work_dir() as work:
            (work / "file").write_text("x")
            raise RuntimeError("boom")
    assert not work.exists()
    assert str(work) not in system._TEMP_DIRS


def test_cleanup_temp_dirs(tmp_path):
    leftover = tmp_path / "leftover"
    leftover.mkdir()
    system._TEMP_DIRS.add(str(leftover))
    system.cleanup_temp_dirs()
    assert not leftover.exists()
    assert not system._TEMP_DIRS


def test_format_size():
    assert system.format_size(512) == "512.0 B"
    assert system.format_size(1536) == "1.5 KB"
    assert system.format_size(5 * 1024 ** 3) == "5.0 GB"


def test_run_command_reports_failure():
    with pytest.raises(system.subprocess.CalledProcessError):
        system.run_command(["false"])
    assert system.run_command(["false"], check=False).returncode != 0
