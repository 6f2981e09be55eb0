from pathlib import Path

from lempkit.config import Paths, SetupOptions, load_options, parse_config_text

CONFIG_INI = """# Full setup answers
DOMAIN="example.com"
EMAIL=admin@example.com
NON_INTERACTIVE=true
SETUP_SFTP=no
WP_DB_NAME='blog_db'
RCLONE_REMOTE=b2
not a setting
"""


def test_parse_config_text():
    values = parse_config_text(CONFIG_INI)
    assert values["DOMAIN"] == "example.com"
    assert values["WP_DB_NAME"] == "blog_db"
    assert "NOT A SETTING" not in values


def test_load_options(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(CONFIG_INI)
    options = load_options(path)
    assert options.domain == "example.com"
    assert options.email == "admin@example.com"
    assert options.non_interactive is True
    assert options.setup_sftp is False
    assert options.wp_db_name == "blog_db"
    assert options.extra == {"RCLONE_REMOTE": "b2"}


def test_load_options_missing_file(tmp_path):
    assert load_options(tmp_path / "absent.ini") == SetupOptions()
    assert load_options(None) == SetupOptions()


def test_update_ignores_unset_flags():
    options = SetupOptions(domain="example.com")
    options.update(domain=None, email="a@example.com", bogus="x")
    assert options.domain == "example.com"
    assert options.email == "a@example.com"
    assert not hasattr(options, "bogus")


def test_assign_defaults_generates_secrets():
    options = SetupOptions(domain="example.com", wp_db_password="keep")
    options.assign_defaults()
    assert options.wp_db_password == "keep"
    assert len(options.wp_admin_password) == 20
    assert options.sftp_user == "sftp-user-example-com"
    assert options.mail_hostname == "box.example.com"


def test_paths_under_reroots_everything(tmp_path):
    paths = Paths.under(tmp_path)
    assert paths.sshd_config == tmp_path / "etc" / "ssh" / "sshd_config"
    assert paths.web_root("example.com") == tmp_path / "var" / "www" / "example.com"
    assert paths.miab_backup_dir == tmp_path / "home" / "user-data" / "backup"
    assert Paths().site_config("a.conf") == Path("/etc/nginx/sites-available/a.conf")
