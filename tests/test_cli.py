import pytest
from click.testing import CliRunner

from lempkit import VERSION, system
from lempkit.cli import CliState, cli
from lempkit.errors import PrivilegeError


@pytest.fixture
def invoke(paths, tmp_path, monkeypatch):
    monkeypatch.setattr(system, "require_root", lambda: None)
    log_file = tmp_path / "logs" / "lempkit.log"

    def _invoke(*args, input=None):
        state = CliState(paths=paths, log_file=str(log_file))
        base = ["--config", str(tmp_path / "absent.ini")]
        return CliRunner().invoke(cli, base + list(args), obj=state, input=input)

    return _invoke


def test_version():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert VERSION in result.output


def test_site_list(invoke, paths):
    (paths.nginx_available / "example.com.conf").write_text("server {}\n")
    result = invoke("site", "list")
    assert result.exit_code == 0
    assert "example.com.conf" in result.output


def test_site_delete_wrong_confirmation(invoke, paths, runner):
    (paths.nginx_available / "example.com.conf").write_text("server {}\n")
    result = invoke("site", "delete", "example.com.conf", "--confirm", "nope")
    assert result.exit_code == 1
    assert "Confirmation failed" in result.output
    assert (paths.nginx_available / "example.com.conf").exists()


def test_site_delete_prompts_for_confirmation(invoke, paths, runner, no_binaries):
    (paths.nginx_available / "example.com.conf").write_text("server {}\n")
    result = invoke("site", "delete", "example.com.conf", input="example.com\n")
    assert result.exit_code == 0, result.output
    assert not (paths.nginx_available / "example.com.conf").exists()


def test_sftp_list_empty(invoke, paths):
    paths.sshd_config.write_text("Port 22\n")
    result = invoke("sftp", "list")
    assert result.exit_code == 0
    assert "No SFTP users" in result.output


def test_mail_delete_requires_typed_name(invoke, runner):
    result = invoke("mail", "delete", "carol", "--confirm", "bob")
    assert result.exit_code == 1
    assert not runner.ran("userdel")


def test_services_restart(invoke, runner):
    runner.respond(["systemctl", "list-units"], stdout="php8.3-fpm.service loaded active running\n")
    result = invoke("services", "restart", "web")
    assert result.exit_code == 0, result.output
    assert ["systemctl", "restart", "php8.3-fpm"] in runner.calls


def test_services_failure_exit_code(invoke, runner):
    runner.respond(["systemctl", "start", "nginx"], returncode=1)
    result = invoke("services", "start", "web")
    assert result.exit_code == 1


def test_backup_instructions(invoke):
    result = invoke("backup", "instructions")
    assert result.exit_code == 0
    assert "wordpress_files.tar.gz" in result.output


def test_wp_requires_wp_cli(invoke, no_binaries):
    result = invoke("wp", "update")
    assert result.exit_code == 1
    assert "wp-cli is not installed" in result.output


def test_setup_full_non_interactive_requires_domain(invoke, runner):
    result = invoke("setup", "full", "--non-interactive")
    assert result.exit_code == 1
    assert "required" in result.output
    assert runner.calls == []


def test_command_failure_is_reported(invoke, runner):
    runner.respond(["fail2ban-client"], returncode=255)
    result = invoke("fail2ban", "unban", "sshd", "203.0.113.5")
    assert result.exit_code == 1
    assert "exit code 255" in result.output


def test_root_is_required(paths, tmp_path, monkeypatch):
    def not_root():
        raise PrivilegeError("This command must be run as root or with sudo.")

    monkeypatch.setattr(system, "require_root", not_root)
    state = CliState(paths=paths, log_file=str(tmp_path / "x.log"))
    result = CliRunner().invoke(cli, ["site", "enable", "a.conf"], obj=state)
    assert result.exit_code == 1
    assert "must be run as root" in result.output
