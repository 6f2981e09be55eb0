from lempkit import fail2ban

STATUS = """Status
|- Number of jail:\t2
`- Jail list:\tsshd, nginx-http-auth
"""

SSHD_STATUS = """Status for the jail: sshd
|- Filter
|  |- Currently failed:\t1
`- Actions
   |- Currently banned:\t2
   `- Banned IP list:\t203.0.113.5 198.51.100.7
"""


def test_jail_local():
    text = fail2ban.jail_local(ssh_port=2222)
    assert "[sshd]\nenabled = true\nport = 2222\n" in text
    assert "[nginx-botsearch]" in text
    assert "[postfix]" not in text
    assert "[dovecot]" in fail2ban.jail_local(with_mail=True)


def test_configure_fail2ban_writes_once(paths, runner, all_binaries):
    assert fail2ban.configure_fail2ban(paths, with_mail=True)
    assert "[postfix]" in paths.fail2ban_jail.read_text()
    assert runner.ran("systemctl", "restart", "fail2ban")
    runner.calls.clear()
    assert not fail2ban.configure_fail2ban(paths, with_mail=True)
    assert runner.calls == []


def test_configure_fail2ban_installs_package(paths, runner, no_binaries):
    fail2ban.configure_fail2ban(paths, package_manager="dnf")
    assert runner.calls[0] == ["dnf", "install", "-y", "fail2ban"]


def test_parsers():
    assert fail2ban.parse_jail_list(STATUS) == ["sshd", "nginx-http-auth"]
    assert fail2ban.parse_banned_ips(SSHD_STATUS) == ["203.0.113.5", "198.51.100.7"]
    assert fail2ban.parse_jail_list("") == []


def test_list_jails(runner):
    runner.respond(["fail2ban-client", "status"], stdout=STATUS)
    runner.respond(["fail2ban-client", "status", "sshd"], stdout=SSHD_STATUS)
    jails = fail2ban.list_jails()
    assert [j.name for j in jails] == ["sshd", "nginx-http-auth"]
    assert jails[0].banned_ips == ["203.0.113.5", "198.51.100.7"]
    assert jails[1].banned_ips == []


def test_unban_ip(runner):
    fail2ban.unban_ip("sshd", "203.0.113.5")
    assert runner.calls == [["fail2ban-client", "set", "sshd", "unbanip", "203.0.113.5"]]
