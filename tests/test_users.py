import pytest

from lempkit import system, users
from lempkit.errors import ConfirmationError, ValidationError

SSHD = "Port 22\nSubsystem sftp internal-sftp\n"


@pytest.fixture
def jail(paths, monkeypatch):
    paths.sshd_config.write_text(SSHD)
    monkeypatch.setattr(system, "path_owner", lambda path: "root")
    monkeypatch.setattr(system, "command_exists", lambda name: False)
    directory = paths.web_root("example.com")
    directory.mkdir()
    return directory


def test_create_sftp_user(paths, runner, jail):
    writable = users.create_sftp_user("alice", "pw", jail, paths)
    assert writable == jail / "public_html"
    assert writable.is_dir()
    assert runner.calls[0] == [
        "useradd", "--home", str(jail), "--shell", "/usr/sbin/nologin", "--gid", "www-data", "alice",
    ]
    assert "alice:pw\n" in runner.inputs
    assert ["chown", "alice:www-data", str(writable)] in runner.calls
    assert ["chmod", "755", str(jail)] in runner.calls
    assert ["chmod", "755", str(writable)] in runner.calls
    assert runner.ran("systemctl", "restart", "sshd")
    assert f"ChrootDirectory {jail}" in paths.sshd_config.read_text()


def test_create_sftp_user_twice_keeps_single_block(paths, runner, jail):
    runner.respond(["useradd"], returncode=9)
    users.create_sftp_user("alice", "pw", jail, paths)
    users.create_sftp_user("alice", "pw2", jail, paths)
    assert paths.sshd_config.read_text().count("Match User alice") == 1
    assert users.list_sftp_users(paths) == ["alice"]


def test_create_sftp_user_requires_root_owned_jail(paths, runner, jail, monkeypatch):
    monkeypatch.setattr(system, "path_owner", lambda path: "www-data")
    with pytest.raises(ValidationError, match="must be owned by 'root'"):
        users.create_sftp_user("alice", "pw", jail, paths)
    assert runner.calls == []
    assert paths.sshd_config.read_text() == SSHD


def test_create_sftp_user_missing_dir(paths, runner, jail):
    with pytest.raises(ValidationError):
        users.create_sftp_user("alice", "pw", jail / "nope", paths)


def test_restart_sshd_falls_back_to_ssh_unit(runner):
    runner.respond(["systemctl", "restart", "sshd"], returncode=5)
    users.restart_sshd()
    assert runner.calls[-1] == ["systemctl", "restart", "ssh"]


def test_change_sftp_password(paths, runner, jail):
    with pytest.raises(ValidationError):
        users.change_sftp_password("alice", "pw", paths)
    users.create_sftp_user("alice", "pw", jail, paths)
    users.change_sftp_password("alice", "new", paths)
    assert runner.inputs[-1] == "alice:new\n"


def test_delete_sftp_user(paths, runner, jail):
    users.create_sftp_user("alice", "pw", jail, paths)
    with pytest.raises(ConfirmationError):
        users.delete_sftp_user("alice", "alcie", paths)
    assert users.list_sftp_users(paths) == ["alice"]

    users.delete_sftp_user("alice", "alice", paths)
    assert ["userdel", "alice"] in runner.calls
    assert users.list_sftp_users(paths) == []
    assert paths.sshd_config.read_text().startswith(SSHD)


def test_delete_unknown_sftp_user(paths, runner, jail):
    with pytest.raises(ValidationError):
        users.delete_sftp_user("ghost", "ghost", paths)
    assert runner.calls == []


def test_setup_site_sftp_user(paths, runner, jail):
    users.setup_site_sftp_user("example.com", "sftp-user-example-com", "pw", paths)
    assert ["chmod", "-R", "g+w", str(jail)] in runner.calls
    text = paths.sshd_config.read_text()
    assert "Match User sftp-user-example-com" in text
    assert "ChrootDirectory" not in text
