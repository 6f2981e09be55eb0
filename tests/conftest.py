import subprocess
from typing import Callable, Dict, List, Optional

import pytest

from lempkit import system
from lempkit.config import Paths


class FakeRunner:
    """Records commands instead of running them.

    ``responses`` maps a command prefix (tuple) to ``(returncode, stdout)`` or
    to a callable taking the command list.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.envs: List[Optional[Dict[str, str]]] = []
        self.responses: Dict[tuple, object] = {}

    def respond(self, prefix, returncode: int = 0, stdout: str = "") -> None:
        self.responses[tuple(prefix)] = (returncode, stdout)

    def respond_with(self, prefix, func: Callable) -> None:
        self.responses[tuple(prefix)] = func

    def _lookup(self, cmd: List[str]):
        best = None
        for prefix, response in self.responses.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best[0]):
                    best = (prefix, response)
        return best[1] if best else (0, "")

    def __call__(self, cmd, check=True, capture_output=True, input_text=None, env=None, timeout=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self.inputs.append(input_text)
        self.envs.append(env)
        response = self._lookup(cmd)
        if callable(response):
            response = response(cmd)
        returncode, stdout = response
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, output=stdout, stderr="")
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def commands_starting(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    def ran(self, *prefix: str) -> bool:
        return bool(self.commands_starting(*prefix))


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner()
    monkeypatch.setattr(system, "run_command", fake)
    return fake


@pytest.fixture
def no_binaries(monkeypatch):
    """Pretend optional tools (sshd, certbot, ufw, ...) are not installed."""
    monkeypatch.setattr(system, "command_exists", lambda name: False)


@pytest.fixture
def all_binaries(monkeypatch):
    monkeypatch.setattr(system, "command_exists", lambda name: True)


@pytest.fixture
def paths(tmp_path):
    p = Paths.under(tmp_path / "root")
    for directory in (
        p.sshd_config.parent,
        p.nginx_available,
        p.nginx_enabled,
        p.www_root,
        p.backup_dir,
        p.server_backup_dir,
        p.dovecot_conf_dir,
        p.log_dir,
    ):
        directory.mkdir(parents=True, exist_ok=True)
    return p


@pytest.fixture
def root_password(paths):
    paths.mysql_root_password_file.parent.mkdir(parents=True, exist_ok=True)
    paths.mysql_root_password_file.write_text("s3cret\n")
    return "s3cret"
