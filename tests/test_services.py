import pytest

from lempkit import notify, services
from lempkit.errors import ValidationError


def test_manage_web_group(paths, runner):
    results = services.manage("restart", "web", paths, php_service="php8.3-fpm")
    assert runner.calls == [
        ["systemctl", "restart", "nginx"],
        ["systemctl", "restart", "php8.3-fpm"],
        ["systemctl", "restart", "mariadb"],
    ]
    assert results == {"nginx": True, "php8.3-fpm": True, "mariadb": True}


def test_manage_reports_failures(paths, runner):
    runner.respond(["systemctl", "start", "mariadb"], returncode=1)
    results = services.manage("start", "web", paths, php_service="php8.3-fpm")
    assert results["mariadb"] is False
    assert results["nginx"] is True


def test_manage_mail_uses_daemon_when_installed(paths, runner):
    paths.miab_daemon.parent.mkdir(parents=True, exist_ok=True)
    paths.miab_daemon.write_text("#!/bin/sh\n")
    services.manage("stop", "mail", paths)
    assert runner.calls == [[str(paths.miab_daemon), "stop"]]


def test_manage_mail_status_falls_back_to_systemctl(paths, runner):
    paths.miab_daemon.parent.mkdir(parents=True, exist_ok=True)
    paths.miab_daemon.write_text("#!/bin/sh\n")
    services.manage("status", "mail", paths)
    assert runner.calls == [["systemctl", "status", "postfix"], ["systemctl", "status", "dovecot"]]


def test_manage_mail_without_daemon(paths, runner):
    services.manage("start", "mail", paths)
    assert runner.calls == [["systemctl", "start", "postfix"], ["systemctl", "start", "dovecot"]]


@pytest.mark.parametrize("action,group", [("reload", "web"), ("start", "db")])
def test_manage_validates(paths, runner, action, group):
    with pytest.raises(ValidationError):
        services.manage(action, group, paths)
    assert runner.calls == []


def test_usage_report(runner):
    runner.respond(["df"], stdout="Filesystem Size\n/dev/sda1 10G\ntmpfs 1G\n")
    runner.respond(["free"], stdout="Mem: 1G\n")
    runner.respond(["top"], stdout="\n".join(f"line{i}" for i in range(10)))
    report = services.usage_report()
    assert "/dev/sda1 10G" in report
    assert "tmpfs" not in report
    assert "line4" in report and "line5" not in report


def test_log_files(paths):
    (paths.log_dir / "nginx").mkdir()
    (paths.log_dir / "nginx" / "error.log").write_text("")
    (paths.log_dir / "php8.3-fpm.log").write_text("")
    assert services.log_files("web", paths) == [
        paths.log_dir / "nginx" / "error.log",
        paths.log_dir / "php8.3-fpm.log",
    ]
    with pytest.raises(ValidationError):
        services.log_files("mail", paths)


def test_tail_logs(paths, runner):
    (paths.log_dir / "mail.log").write_text("")
    services.tail_logs("mail", paths)
    assert runner.calls == [["tail", "-n", "50", "-f", str(paths.log_dir / "mail.log")]]


def test_autoheal(runner, monkeypatch):
    sent = []
    monkeypatch.setattr(notify, "send_notification", lambda *args: sent.append(args) or True)
    state = {"nginx": [0], "mariadb": [3, 0], "dovecot": [3, 3]}

    def is_active(cmd):
        codes = state[cmd[-1]]
        return (codes.pop(0) if len(codes) > 1 else codes[0], "")

    runner.respond_with(["systemctl", "is-active"], is_active)
    report = services.autoheal(["nginx", "mariadb", "dovecot"], "ops@example.com")
    assert report == {"nginx": "active", "mariadb": "restarted", "dovecot": "failed"}
    assert ["systemctl", "restart", "mariadb"] in runner.calls
    assert ["systemctl", "restart", "nginx"] not in runner.calls
    assert sent[0][0].startswith("[Auto-Heal]")
    assert sent[1][0].startswith("[CRITICAL]")


def test_send_notification(runner, all_binaries):
    assert not notify.send_notification("s", "b", None)
    assert notify.send_notification("Subject line", "Body", "ops@example.com")
    assert runner.calls == [["sendmail", "-t"]]
    assert runner.inputs[0] == "Subject: Subject line\nTo: ops@example.com\n\nBody"
