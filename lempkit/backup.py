"""
Website and server backup/restore.

Archives are built in a temporary work directory which is always removed.
Restores move the current web root aside first and move it back if copying
the archived files fails, so a failed restore leaves the site as it was.
"""

import logging
import os
import shutil
import tarfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from lempkit import database, notify, services, system
from lempkit.config import WEB_GROUP, WEB_USER, Paths
from lempkit.errors import ConfirmationError, RestoreError, ValidationError
from lempkit.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

WEB_CONTENT_DIR: str = "web_root_content"
SERVER_DB_DUMP: str = "wordpress_db.sql"
SERVER_FILES_ARCHIVE: str = "wordpress_files.tar.gz"
SERVER_MAIL_DIR: str = "mail_backup"

RESTORE_INSTRUCTIONS = """\
Restoring is a manual process to prevent accidental data loss.
1. Uncompress the backup file: tar -xzvf server-backup-YYYY-MM-DD-HHMMSS.tar.gz
2. Restore WordPress Files:
   - Move the current /var/www/<domain> to a backup location.
   - Extract 'wordpress_files.tar.gz' into /var/www/<domain>.
   - Ensure file permissions are correct: chown -R www-data:www-data /var/www/<domain>
3. Restore WordPress Database:
   - Drop all tables from your current WordPress database.
   - Import the backup: mysql -u <db_user> -p <db_name> < wordpress_db.sql
     (You can find credentials in your wp-config.php)
4. Restore Mail-in-a-Box:
   - Follow the official Mail-in-a-Box guide for moving to a new machine.
   - The 'mail_backup' directory contains your mail data.
   - See: https://mailinabox.email/maintenance.html#moving-to-a-new-box
"""


@dataclass
class BackupResult:
    archive: Path
    size: int

    @property
    def human_size(self) -> str:
        return system.format_size(self.size)


def timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d-%H%M%S")


def restore_instructions() -> str:
    return RESTORE_INSTRUCTIONS


# ----------------------------------------------------------------
# Archive Helpers
# ----------------------------------------------------------------
def create_archive(source_dir: Path, archive: Path) -> Path:
    """Pack the contents of ``source_dir`` (not the directory itself)."""
    archive.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "w:gz") as tar:
        for entry in sorted(source_dir.iterdir()):
            tar.add(str(entry), arcname=entry.name)
    logger.info(f"Created archive {archive}")
    return archive


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.relative_to(base)
        return True
    except ValueError:
        return False


def safe_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    """Members of ``tar``, rejecting absolute paths, '..' and escaping links."""
    base = dest.resolve()
    members = []
    for member in tar.getmembers():
        name = member.name
        if os.path.isabs(name) or ".." in Path(name).parts:
            raise RestoreError(f"Unsafe path in archive: {name}")
        if member.isdev():
            raise RestoreError(f"Device file in archive: {name}")
        if member.issym() or member.islnk():
            link_base = base / Path(name).parent if member.issym() else base
            target = (link_base / member.linkname).resolve()
            if os.path.isabs(member.linkname) or not _is_within(base, target):
                raise RestoreError(f"Link escapes the extraction directory: {name} -> {member.linkname}")
        members.append(member)
    return members


def extract_archive(archive: Path, dest: Path) -> None:
    if not archive.is_file():
        raise ValidationError(f"Backup file not found at '{archive}'.")
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as tar:
        members = safe_members(tar, dest)
        tar.extractall(str(dest), members=members, filter="tar")


def copy_contents(source: Path, dest: Path) -> None:
    """Copy everything in ``source`` (hidden files too) into ``dest``."""
    dest.mkdir(parents=True, exist_ok=True)
    for entry in source.iterdir():
        target = dest / entry.name
        if entry.is_dir() and not entry.is_symlink():
            shutil.copytree(str(entry), str(target), symlinks=True)
        else:
            shutil.copy2(str(entry), str(target), follow_symlinks=False)


def detect_wordpress_domain(www_root: Path) -> Optional[str]:
    """First directory under ``www_root`` that is not ``html``."""
    if not www_root.is_dir():
        return None
    for entry in sorted(www_root.iterdir()):
        if entry.is_dir() and entry.name != "html":
            return entry.name
    return None


# ----------------------------------------------------------------
# Website Backup & Restore
# ----------------------------------------------------------------
def backup_website(domain: str, db_name: str, paths: Optional[Paths] = None) -> BackupResult:
    """Archive a site's web root and database into the backup directory."""
    paths = paths or Paths()
    web_root = paths.web_root(domain)
    if not domain or not web_root.is_dir():
        raise ValidationError(f"Web root '{web_root}' does not exist.")
    database.validate_identifier(db_name)
    credentials = database.load_root_password(paths.mysql_root_password_file)

    archive = paths.backup_dir / f"backup-{domain}-{timestamp()}.tar.gz"
    print_step(f"Starting backup for '{domain}'...")
    with system.work_dir("lempkit_backup_") as work:
        print_step(f"Dumping database '{db_name}'...")
        database.dump_database(db_name, work / f"{db_name}.sql", credentials)
        print_success("Database dumped successfully.")

        print_step(f"Archiving web root contents from '{web_root}'...")
        copy_contents(web_root, work / WEB_CONTENT_DIR)

        print_step(f"Creating final backup file at '{archive}'...")
        create_archive(work, archive)

    result = BackupResult(archive=archive, size=archive.stat().st_size)
    print_success(f"Backup complete! File saved to: {archive} ({result.human_size})")
    return result


def _swap_in_web_root(content: Path, web_root: Path) -> Optional[Path]:
    """
    Replace ``web_root`` with a copy of ``content``.

    The old root is kept at ``<root>.bak-<timestamp>``; if the copy fails the
    partial root is removed and the old one renamed back before re-raising.
    """
    moved: Optional[Path] = None
    if web_root.exists():
        moved = web_root.with_name(f"{web_root.name}.bak-{datetime.now().strftime('%Y%m%d%H%M%S')}")
        web_root.rename(moved)
        print_step(f"Existing web root moved to '{moved}'.")
    try:
        copy_contents(content, web_root)
    except OSError as e:
        shutil.rmtree(web_root, ignore_errors=True)
        if moved is not None:
            moved.rename(web_root)
            print_warning(f"File restore failed; original web root put back at '{web_root}'.")
        raise RestoreError(f"Could not restore files into '{web_root}': {e}") from e
    return moved


def restore_website(
    archive: Union[str, Path],
    domain: str,
    db_name: str,
    confirmation: str,
    paths: Optional[Paths] = None,
) -> Optional[Path]:
    """
    Restore a site from a ``backup_website`` archive.

    Returns the path the previous web root was moved to, if there was one.
    """
    paths = paths or Paths()
    archive = Path(archive)
    if not archive.is_file():
        raise ValidationError(f"Backup file not found at '{archive}'.")
    if not domain or not db_name:
        raise ValidationError("Domain and database name are required.")
    database.validate_identifier(db_name)
    if confirmation != domain:
        raise ConfirmationError("Confirmation failed. Restore operation cancelled.")

    web_root = paths.web_root(domain)
    moved: Optional[Path] = None
    with system.work_dir("lempkit_restore_") as work:
        print_step("Extracting backup file...")
        extract_archive(archive, work)

        content = work / WEB_CONTENT_DIR
        if content.is_dir():
            print_step(f"Restoring files to '{web_root}'...")
            moved = _swap_in_web_root(content, web_root)
            system.chown(web_root, WEB_USER, WEB_GROUP, recursive=True)
            print_success("Files restored.")
        else:
            print_warning(f"No '{WEB_CONTENT_DIR}' directory found in backup archive. Skipping file restore.")

        sql_file = work / f"{db_name}.sql"
        if not sql_file.is_file():
            sql_files = sorted(work.glob("*.sql"))
            sql_file = sql_files[0] if sql_files else None
        if sql_file is not None:
            print_step(f"Restoring database '{db_name}' from '{sql_file.name}'...")
            credentials = database.load_root_password(paths.mysql_root_password_file)
            database.import_database(db_name, sql_file, credentials)
            print_success("Database restored.")
        else:
            print_warning("No .sql file found in backup archive. Skipping database restore.")

    print_success(f"Restore complete for '{domain}'.")
    return moved


# ----------------------------------------------------------------
# Server (WordPress + Mail-in-a-Box) Backup & Restore
# ----------------------------------------------------------------
def _resolve_domain(domain: Optional[str], paths: Paths) -> str:
    if domain:
        return domain
    detected = detect_wordpress_domain(paths.www_root)
    if not detected:
        raise ValidationError("Could not auto-detect the WordPress domain. Please specify it.")
    print_step(f"Auto-detected WordPress domain: {detected}")
    return detected


def _cloud_copy(archive: Path, remote: str) -> bool:
    if not system.command_exists("rclone"):
        print_warning("An rclone remote is set, but rclone is not installed. Skipping cloud backup.")
        return False
    print_step(f"Starting cloud backup to rclone remote: {remote}...")
    result = system.run_command(["rclone", "copy", str(archive), f"{remote}:"], check=False)
    if result.returncode != 0:
        print_warning("Cloud backup failed. Please check your rclone configuration.")
        return False
    print_success("Cloud backup completed successfully.")
    return True


def backup_server(
    domain: Optional[str] = None,
    rclone_remote: Optional[str] = None,
    notify_email: Optional[str] = None,
    paths: Optional[Paths] = None,
) -> BackupResult:
    """Back up the WordPress site, its database and Mail-in-a-Box data."""
    paths = paths or Paths()
    try:
        result = _backup_server(domain, rclone_remote, paths)
    except Exception as e:
        notify.send_notification(
            f"[FAIL] Server Backup Failed on {notify.hostname()}",
            f"The server backup failed: {e}",
            notify_email,
        )
        raise
    notify.send_notification(
        f"[SUCCESS] Server Backup Completed on {notify.hostname()}",
        "The server backup was created successfully.\n\n"
        f"File: {result.archive}\nSize: {result.human_size}\n",
        notify_email,
    )
    return result


def _backup_server(domain: Optional[str], rclone_remote: Optional[str], paths: Paths) -> BackupResult:
    print_step("Starting server backup process...")
    domain = _resolve_domain(domain, paths)
    wp_path = paths.web_root(domain)
    wp_config = wp_path / "wp-config.php"
    values = database.read_wp_config(wp_config)
    credentials = database.wp_credentials(wp_config)

    archive = paths.server_backup_dir / f"server-backup-{timestamp()}.tar.gz"
    with system.work_dir("lempkit_server_backup_") as work:
        print_step("Backing up WordPress database...")
        database.dump_database(values["DB_NAME"], work / SERVER_DB_DUMP, credentials)
        print_success("WordPress database backed up.")

        print_step("Backing up WordPress files...")
        create_archive(wp_path, work / SERVER_FILES_ARCHIVE)
        print_success("WordPress files backed up.")

        if (paths.miab_backup_dir / "encrypted").is_dir():
            print_step("Running Mail-in-a-Box backup command...")
            system.run_command([str(paths.miab_daemon)])
            shutil.copytree(str(paths.miab_backup_dir), str(work / SERVER_MAIL_DIR), symlinks=True)
            print_success("Mail-in-a-Box data copied.")
        else:
            print_warning("Mail-in-a-Box backup directory not found. Skipping.")

        print_step("Creating final compressed backup archive...")
        create_archive(work, archive)

    result = BackupResult(archive=archive, size=archive.stat().st_size)
    print_success(f"Backup created successfully at: {archive}")
    if rclone_remote:
        _cloud_copy(archive, rclone_remote)
    return result


def restore_server(
    archive: Union[str, Path],
    confirmation: str,
    domain: Optional[str] = None,
    paths: Optional[Paths] = None,
) -> Path:
    """
    Restore WordPress files, database and Mail-in-a-Box data from a
    ``backup_server`` archive. Returns where the old WordPress dir was moved.
    """
    paths = paths or Paths()
    archive = Path(archive)
    if not archive.is_file():
        raise ValidationError(f"Restore file not found: {archive}")
    domain = _resolve_domain(domain, paths)
    if confirmation != domain:
        raise ConfirmationError("Confirmation failed. Aborting restore.")

    wp_path = paths.web_root(domain)
    old_path = wp_path.with_name(f"{domain}_backup_{int(time.time())}")

    with system.work_dir("lempkit_server_restore_") as work:
        print_step("Extracting backup archive...")
        extract_archive(archive, work)
        files_archive = work / SERVER_FILES_ARCHIVE
        dump = work / SERVER_DB_DUMP
        if not files_archive.is_file() or not dump.is_file():
            raise RestoreError(f"{archive} is not a server backup (missing {SERVER_FILES_ARCHIVE} or {SERVER_DB_DUMP}).")

        print_step("Stopping services...")
        services.manage("stop", "all", paths)
        try:
            print_step("Restoring WordPress files...")
            if wp_path.exists():
                wp_path.rename(old_path)
                print_step(f"Moved existing WordPress directory to {old_path}")
            try:
                extract_archive(files_archive, wp_path)
            except (OSError, tarfile.TarError, RestoreError):
                shutil.rmtree(wp_path, ignore_errors=True)
                if old_path.exists():
                    old_path.rename(wp_path)
                raise
            system.chown(wp_path, WEB_USER, WEB_GROUP, recursive=True)
            print_success("WordPress files restored.")

            print_step("Restoring WordPress database...")
            wp_config = wp_path / "wp-config.php"
            values = database.read_wp_config(wp_config)
            database.import_database(
                values["DB_NAME"], dump, database.wp_credentials(wp_config), recreate=True
            )
            print_success("WordPress database restored.")

            print_step("Restoring Mail-in-a-Box data...")
            mail_dir = work / SERVER_MAIL_DIR
            if mail_dir.is_dir():
                paths.miab_backup_dir.mkdir(parents=True, exist_ok=True)
                system.run_command(
                    ["rsync", "-a", "--delete", f"{mail_dir}/", f"{paths.miab_backup_dir}/"]
                )
                print_success("Mail-in-a-Box data restored.")
            else:
                print_warning("No mail backup found in archive. Skipping.")
        finally:
            print_step("Starting services...")
            services.manage("start", "all", paths)

    print_success("Restore process complete.")
    return old_path
