import io
import subprocess
import tarfile

import pytest

from lempkit import backup
from lempkit.errors import ConfirmationError, RestoreError, ValidationError

WP_CONFIG = """<?php
define( 'DB_NAME', 'wordpress_db' );
define( 'DB_USER', 'wp_user' );
define( 'DB_PASSWORD', 'wp_pass' );
define( 'DB_HOST', 'localhost' );
"""


def _tar_with(path, member, data=b""):
    with tarfile.open(path, "w:gz") as tar:
        tar.addfile(member, io.BytesIO(data))
    return path


@pytest.fixture
def site(paths):
    root = paths.web_root("example.com")
    root.mkdir()
    (root / "index.php").write_text("<?php echo 'v1';")
    (root / ".htaccess").write_text("# hidden")
    (root / "wp-content").mkdir()
    (root / "wp-content" / "upload.txt").write_text("upload")
    return root


@pytest.fixture
def wp_site(site):
    (site / "wp-config.php").write_text(WP_CONFIG)
    return site


def test_archive_round_trip_keeps_hidden_files(tmp_path, site):
    archive = backup.create_archive(site, tmp_path / "out" / "site.tar.gz")
    dest = tmp_path / "restored"
    backup.extract_archive(archive, dest)
    assert (dest / ".htaccess").read_text() == "# hidden"
    assert (dest / "wp-content" / "upload.txt").read_text() == "upload"
    with tarfile.open(archive) as tar:
        assert all(not name.startswith("/") for name in tar.getnames())


def test_extract_rejects_parent_traversal(tmp_path):
    archive = _tar_with(tmp_path / "evil.tar.gz", tarfile.TarInfo("../evil.txt"))
    with pytest.raises(RestoreError):
        backup.extract_archive(archive, tmp_path / "dest")
    assert not (tmp_path / "evil.txt").exists()


def test_extract_rejects_escaping_symlink(tmp_path):
    link = tarfile.TarInfo("passwd")
    link.type = tarfile.SYMTYPE
    link.linkname = "../../etc/passwd"
    archive = _tar_with(tmp_path / "link.tar.gz", link)
    with pytest.raises(RestoreError):
        backup.extract_archive(archive, tmp_path / "dest")


def test_extract_missing_archive(tmp_path):
    with pytest.raises(ValidationError):
        backup.extract_archive(tmp_path / "nope.tar.gz", tmp_path / "dest")


def test_detect_wordpress_domain(paths):
    assert backup.detect_wordpress_domain(paths.www_root) is None
    (paths.www_root / "html").mkdir()
    (paths.www_root / "example.com").mkdir()
    assert backup.detect_wordpress_domain(paths.www_root) == "example.com"


def test_backup_website(paths, runner, site, root_password):
    runner.respond(["mysqldump"], stdout="-- site dump\n")
    result = backup.backup_website("example.com", "site_db", paths)
    assert result.archive.parent == paths.backup_dir
    assert result.archive.name.startswith("backup-example.com-")
    assert result.size > 0
    with tarfile.open(result.archive) as tar:
        names = tar.getnames()
    assert "site_db.sql" in names
    assert f"{backup.WEB_CONTENT_DIR}/.htaccess" in names
    assert runner.envs[0] == {"MYSQL_PWD": "s3cret"}


def test_backup_website_requires_web_root(paths, runner, root_password):
    with pytest.raises(ValidationError):
        backup.backup_website("missing.com", "site_db", paths)
    assert runner.calls == []


def test_restore_website_moves_old_root_aside(paths, runner, site, root_password):
    runner.respond(["mysqldump"], stdout="-- site dump\n")
    archive = backup.backup_website("example.com", "site_db", paths).archive
    (site / "index.php").write_text("<?php echo 'v2';")

    moved = backup.restore_website(archive, "example.com", "site_db", "example.com", paths)
    assert moved is not None and moved.name.startswith("example.com.bak-")
    assert (moved / "index.php").read_text() == "<?php echo 'v2';"
    assert (site / "index.php").read_text() == "<?php echo 'v1';"
    assert (site / ".htaccess").exists()
    assert "-- site dump\n" in runner.inputs
    assert runner.ran("chown", "-R", "www-data:www-data", str(site))


def test_restore_website_requires_confirmation(paths, runner, site, root_password):
    runner.respond(["mysqldump"], stdout="-- dump\n")
    archive = backup.backup_website("example.com", "site_db", paths).archive
    calls = len(runner.calls)
    with pytest.raises(ConfirmationError):
        backup.restore_website(archive, "example.com", "site_db", "yes", paths)
    assert len(runner.calls) == calls
    assert (site / "index.php").exists()
    assert not list(paths.www_root.glob("example.com.bak-*"))


def test_restore_website_ignores_sql_files_inside_web_root(paths, runner, site, root_password):
    (site / "wp-content" / "old-export.sql").write_text("-- plugin export\n")
    runner.respond(["mysqldump"], stdout="-- real dump\n")
    archive = backup.backup_website("example.com", "wp_site", paths).archive

    backup.restore_website(archive, "example.com", "wp_site", "example.com", paths)
    assert "-- real dump\n" in runner.inputs
    assert "-- plugin export\n" not in runner.inputs
    assert (site / "wp-content" / "old-export.sql").exists()


def test_failed_copy_puts_original_root_back(tmp_path, site, monkeypatch):
    content = tmp_path / "content"
    content.mkdir()
    (content / "index.php").write_text("new")

    def broken_copy(source, dest):
        dest.mkdir(parents=True)
        (dest / "partial").write_text("x")
        raise OSError("disk full")

    monkeypatch.setattr(backup, "copy_contents", broken_copy)
    with pytest.raises(RestoreError):
        backup._swap_in_web_root(content, site)
    assert (site / "index.php").read_text() == "<?php echo 'v1';"
    assert not (site / "partial").exists()
    assert not list(site.parent.glob("example.com.bak-*"))


def test_backup_server(paths, runner, wp_site, no_binaries):
    runner.respond(["mysqldump"], stdout="-- wp dump\n")
    result = backup.backup_server(paths=paths)
    assert result.archive.parent == paths.server_backup_dir
    with tarfile.open(result.archive) as tar:
        names = tar.getnames()
    assert backup.SERVER_DB_DUMP in names
    assert backup.SERVER_FILES_ARCHIVE in names
    assert backup.SERVER_MAIL_DIR not in names
    dump_call = runner.commands_starting("mysqldump")[0]
    assert dump_call[-1] == "wordpress_db"
    assert ["-u", "wp_user"] == dump_call[1:3]


def test_backup_server_failure_notifies(paths, runner, monkeypatch):
    sent = []
    monkeypatch.setattr(backup.notify, "send_notification", lambda *args: sent.append(args))
    with pytest.raises(ValidationError):
        backup.backup_server(notify_email="ops@example.com", paths=paths)
    assert sent and sent[0][0].startswith("[FAIL]")


def test_restore_server(paths, runner, wp_site, no_binaries):
    runner.respond(["mysqldump"], stdout="-- wp dump\n")
    archive = backup.backup_server(paths=paths).archive
    (wp_site / "index.php").write_text("changed")

    old = backup.restore_server(archive, "example.com", paths=paths)
    assert old.name.startswith("example.com_backup_")
    assert (old / "index.php").read_text() == "changed"
    assert (wp_site / "index.php").read_text() == "<?php echo 'v1';"
    assert "DROP DATABASE IF EXISTS `wordpress_db`; CREATE DATABASE `wordpress_db`;\n" in runner.inputs
    assert "-- wp dump\n" in runner.inputs
    stops = [i for i, c in enumerate(runner.calls) if c[:2] == ["systemctl", "stop"]]
    starts = [i for i, c in enumerate(runner.calls) if c[:2] == ["systemctl", "start"]]
    assert stops and starts and max(stops) < min(starts)


def test_restore_server_restarts_services_on_failure(paths, runner, wp_site, no_binaries):
    runner.respond(["mysqldump"], stdout="-- wp dump\n")
    archive = backup.backup_server(paths=paths).archive
    runner.respond(["mysql"], returncode=1)
    with pytest.raises(subprocess.CalledProcessError):
        backup.restore_server(archive, "example.com", paths=paths)
    assert runner.ran("systemctl", "start", "nginx")


def test_restore_server_wrong_confirmation(paths, runner, wp_site, no_binaries):
    runner.respond(["mysqldump"], stdout="-- wp dump\n")
    archive = backup.backup_server(paths=paths).archive
    with pytest.raises(ConfirmationError):
        backup.restore_server(archive, "example.org", paths=paths)
    assert not runner.ran("systemctl", "stop")
