import stat

import pytest

from lempkit import database
from lempkit.database import Credentials
from lempkit.errors import MissingCredentialsError, ValidationError

WP_CONFIG = """<?php
define( 'DB_NAME', 'wordpress_db' );
define( 'DB_USER', 'wp_user' );
define( 'DB_PASSWORD', 'p@ss"word' );
define('DB_HOST', "localhost");
$table_prefix = 'wp_';
"""


def test_credentials_use_environment_not_argv():
    creds = Credentials(user="root", password="pw")
    assert creds.env() == {"MYSQL_PWD": "pw"}
    assert "pw" not in creds.client_args()
    assert Credentials(host="db.internal").client_args() == ["-u", "root", "-h", "db.internal"]


@pytest.mark.parametrize("name", ["wp; DROP", "", "a-b", "x" * 65, "`x`"])
def test_validate_identifier_rejects(name):
    with pytest.raises(ValidationError):
        database.validate_identifier(name)


def test_root_password_file_round_trip(tmp_path):
    path = tmp_path / "root" / ".mysql_root_password"
    database.save_root_password(path, "secret")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert database.load_root_password(path) == Credentials("root", "secret")


def test_load_root_password_missing(tmp_path):
    with pytest.raises(MissingCredentialsError):
        database.load_root_password(tmp_path / "none")


def test_secure_mariadb(tmp_path, runner):
    path = tmp_path / "pw"
    password = database.secure_mariadb(path, "r00t'pw")
    assert password == "r00t'pw"
    assert runner.calls == [["mysql", "-u", "root"]]
    sql = runner.inputs[0]
    assert "IDENTIFIED BY 'r00t\\'pw'" in sql
    assert "DROP DATABASE IF EXISTS test;" in sql
    assert path.read_text().strip() == "r00t'pw"


def test_create_database_with_user(runner):
    database.create_database("site_db", "site_user", "pw", Credentials(password="root"))
    sql = runner.inputs[0]
    assert "CREATE DATABASE IF NOT EXISTS `site_db`" in sql
    assert "GRANT ALL PRIVILEGES ON `site_db`.* TO 'site_user'@'localhost'" in sql
    assert runner.envs[0] == {"MYSQL_PWD": "root"}


def test_dump_database_writes_stdout(tmp_path, runner):
    runner.respond(["mysqldump"], stdout="-- dump\n")
    dest = database.dump_database("site_db", tmp_path / "dump.sql", Credentials(password="pw"))
    assert dest.read_text() == "-- dump\n"
    assert runner.calls[0][-1] == "site_db"
    assert "--single-transaction" in runner.calls[0]


def test_import_database_recreate(tmp_path, runner):
    dump = tmp_path / "dump.sql"
    dump.write_text("CREATE TABLE t (id int);\n")
    database.import_database("site_db", dump, Credentials(password="pw"), recreate=True)
    assert "DROP DATABASE IF EXISTS `site_db`" in runner.inputs[0]
    assert runner.calls[1] == ["mysql", "-u", "root", "site_db"]
    assert runner.inputs[1] == "CREATE TABLE t (id int);\n"


def test_read_wp_config(tmp_path):
    path = tmp_path / "wp-config.php"
    path.write_text(WP_CONFIG)
    values = database.read_wp_config(path)
    assert values["DB_NAME"] == "wordpress_db"
    assert values["DB_PASSWORD"] == 'p@ss"word'
    assert values["DB_HOST"] == "localhost"
    assert database.wp_credentials(path) == Credentials("wp_user", 'p@ss"word', "localhost")


def test_read_wp_config_missing_keys(tmp_path):
    path = tmp_path / "wp-config.php"
    path.write_text("<?php\n")
    with pytest.raises(ValidationError):
        database.read_wp_config(path)
