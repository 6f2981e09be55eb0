"""
Idempotent editing of sshd_config for jailed SFTP users.

The text transforms are pure functions so they can be applied repeatedly:
adding a ``Match User`` block for a user that already has one is a no-op and
removal touches only the named user's block. ``SshdConfig`` wraps them with a
``.bak`` copy, atomic replacement and ``sshd -t`` validation.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from lempkit import system
from lempkit.errors import ConfigEditError

logger = logging.getLogger(__name__)

SFTP_SUBSYSTEM_LINE: str = "Subsystem sftp internal-sftp"

_MATCH_RE = re.compile(r"^\s*Match\s+(\S+)(?:\s+(.*?))?\s*$", re.IGNORECASE)
_SUBSYSTEM_RE = re.compile(r"^\s*#?\s*Subsystem\s+sftp\s+(\S+).*$", re.IGNORECASE)


@dataclass
class MatchBlock:
    user: str
    directives: List[Tuple[str, str]] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"Match User {self.user}"]
        lines.extend(f"    {key} {value}" for key, value in self.directives)
        return "\n".join(lines) + "\n"


def sftp_jail_block(user: str, chroot_dir: Optional[str] = None) -> MatchBlock:
    directives = [
        ("ForceCommand", "internal-sftp"),
        ("PasswordAuthentication", "yes"),
    ]
    if chroot_dir:
        directives.append(("ChrootDirectory", str(chroot_dir)))
    directives.extend([("AllowTcpForwarding", "no"), ("X11Forwarding", "no")])
    return MatchBlock(user=user, directives=directives)


def _match_user(line: str) -> Optional[str]:
    """Username of a ``Match User <name>`` line, or None."""
    match = _MATCH_RE.match(line)
    if not match or match.group(1).lower() != "user" or not match.group(2):
        return None
    return match.group(2).split()[0]


def _is_match_line(line: str) -> bool:
    return _MATCH_RE.match(line) is not None


def list_match_users(text: str) -> List[str]:
    users = []
    for line in text.splitlines():
        user = _match_user(line)
        if user and user not in users:
            users.append(user)
    return users


def has_match_user(text: str, user: str) -> bool:
    return user in list_match_users(text)


def _ensure_trailing_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else text + "\n"


def ensure_sftp_subsystem(text: str) -> str:
    """Point the sftp subsystem at internal-sftp, adding the line if missing."""
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        match = _SUBSYSTEM_RE.match(line)
        if not match or line.lstrip().startswith("#"):
            continue
        if match.group(1) == "internal-sftp":
            return text
        lines[i] = SFTP_SUBSYSTEM_LINE + "\n"
        return "".join(lines)

    # Global directives must precede any Match block.
    for i, line in enumerate(lines):
        if _is_match_line(line):
            lines.insert(i, SFTP_SUBSYSTEM_LINE + "\n\n")
            return "".join(lines)
    return _ensure_trailing_newline(text) + SFTP_SUBSYSTEM_LINE + "\n"


def add_match_user(text: str, user: str, chroot_dir: Optional[str] = None) -> str:
    if has_match_user(text, user):
        logger.info(f"SFTP configuration for '{user}' already exists.")
        return text
    block = sftp_jail_block(user, chroot_dir).render()
    return _ensure_trailing_newline(text) + "\n" + block


def remove_match_user(text: str, user: str) -> str:
    """Remove the user's Match block, up to the next Match line or EOF."""
    lines = text.splitlines(keepends=True)
    kept: List[str] = []
    in_block = False
    for line in lines:
        if _is_match_line(line):
            in_block = _match_user(line) == user
            if in_block:
                # Drop the blank separator written in front of the block.
                while kept and not kept[-1].strip():
                    kept.pop()
                continue
        if not in_block:
            kept.append(line)
    result = "".join(kept)
    if result and not result.endswith("\n"):
        result += "\n"
    return result


def find_match_block(text: str, user: str) -> Optional[MatchBlock]:
    block: Optional[MatchBlock] = None
    for line in text.splitlines():
        if _is_match_line(line):
            if block is not None:
                break
            if _match_user(line) == user:
                block = MatchBlock(user=user)
            continue
        if block is not None and line.strip() and not line.lstrip().startswith("#"):
            parts = line.split(None, 1)
            block.directives.append((parts[0], parts[1].strip() if len(parts) > 1 else ""))
    return block


class SshdConfig:
    """sshd_config on disk with guarded writes."""

    def __init__(self, path: Union[str, Path] = "/etc/ssh/sshd_config"):
        self.path = Path(path)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".bak")

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text()

    def write(self, text: str) -> bool:
        """
        Replace the file with ``text``. Returns False when nothing changed.

        The previous content is kept at ``<path>.bak`` and the new content is
        written to a temp file in the same directory, then moved into place.
        """
        if not text.strip():
            raise ConfigEditError(
                f"Refusing to write an empty {self.path}. Aborting change."
            )
        current = self.read()
        if text == current:
            return False

        if self.path.exists():
            shutil.copy2(self.path, self.backup_path)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".sshd_config.")
        try:
            with os.fdopen(fd, "w") as tmp:
                tmp.write(text)
            if self.path.exists():
                shutil.copymode(self.path, tmp_name)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.info(f"Updated {self.path}")
        return True

    def validate(self) -> None:
        """Run ``sshd -t`` and roll back to ``.bak`` if the config is rejected."""
        if not system.command_exists("sshd"):
            logger.debug("sshd binary not found; skipping config test.")
            return
        result = system.run_command(["sshd", "-t", "-f", str(self.path)], check=False)
        if result.returncode == 0:
            return
        if self.backup_path.exists():
            shutil.copy2(self.backup_path, self.path)
        raise ConfigEditError(
            f"sshd rejected the new configuration; restored {self.backup_path}. "
            f"{(result.stderr or '').strip()}"
        )

    def users(self) -> List[str]:
        return list_match_users(self.read())

    def has_user(self, user: str) -> bool:
        return has_match_user(self.read(), user)

    def add_sftp_user(self, user: str, chroot_dir: Optional[str] = None) -> bool:
        text = ensure_sftp_subsystem(self.read())
        text = add_match_user(text, user, chroot_dir)
        changed = self.write(text)
        if changed:
            self.validate()
        return changed

    def remove_user(self, user: str) -> bool:
        current = self.read()
        if not has_match_user(current, user):
            return False
        changed = self.write(remove_match_user(current, user))
        if changed:
            self.validate()
        return changed
