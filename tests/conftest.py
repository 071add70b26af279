import io
import os
from pathlib import Path

import pytest

from rootspawn.config import Settings
from rootspawn.privileged import Executor
from rootspawn.types import Backend, ResolvedUser, SpawnRequest

PASSWD = """\
root:x:0:0:root:/root:/bin/bash
# comment line
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
alice:x:1000:1000:Alice,,,:/home/alice:/bin/bash
broken:x:1001:1001
badid:x:abc:1002::/home/badid:/bin/sh
"""


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings that never escalate and point X11 at a temp location"""
    return Settings(escalation_command=(), x11_socket_dir=str(tmp_path / "x11-unix"))


@pytest.fixture
def dry_executor(settings: Settings) -> Executor:
    return Executor(settings, dry_run=True, out=io.StringIO(), euid=1000)


@pytest.fixture
def real_executor(settings: Settings) -> Executor:
    """Runs commands for real, without any escalation prefix"""
    return Executor(settings, out=io.StringIO(), euid=0)


@pytest.fixture
def root_dir(tmp_path: Path) -> Path:
    """Minimal root directory with a passwd file"""
    root = tmp_path / "roots" / "debian"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "passwd").write_text(PASSWD)
    return root


@pytest.fixture
def runtime_base(tmp_path: Path) -> Path:
    path = tmp_path / "run"
    path.mkdir()
    return path


@pytest.fixture
def environ(runtime_base: Path) -> dict:
    return {"XDG_RUNTIME_DIR": str(runtime_base), "TERM": "xterm"}


@pytest.fixture
def alice() -> ResolvedUser:
    return ResolvedUser("alice", "/home/alice", "/bin/bash", 1000, 1000)


@pytest.fixture
def invoker() -> ResolvedUser:
    return ResolvedUser("alice", "/home/alice", "/bin/bash", 1000, 1000)


@pytest.fixture
def make_request(root_dir: Path):
    def _make(**kwargs) -> SpawnRequest:
        kwargs.setdefault("backend", Backend.CHROOT)
        kwargs.setdefault("root", str(root_dir))
        kwargs.setdefault("user", "alice")
        return SpawnRequest(**kwargs)

    return _make


@pytest.fixture
def no_mounts(monkeypatch):
    monkeypatch.setattr("rootspawn.cleanup.list_mounts", lambda: [])


@pytest.fixture
def fixed_fuuid(monkeypatch):
    monkeypatch.setattr("rootspawn.bridge.b58_fuuid", lambda: "session")


@pytest.fixture
def current_ids(settings: Settings) -> Settings:
    """Settings whose default docker user is the user running the tests"""
    return Settings(
        escalation_command=(),
        x11_socket_dir=settings.x11_socket_dir,
        default_uid=os.geteuid(),
        default_gid=os.getegid(),
    )
