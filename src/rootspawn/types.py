"""Core type definitions"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from rootspawn.errors import UnsupportedFieldForManagedContainer


class Backend(Enum):
    CHROOT = "chroot"
    NSPAWN = "nspawn"
    DOCKER = "docker"

    @property
    def uses_root_dir(self) -> bool:
        return self is not Backend.DOCKER


@dataclass(frozen=True)
class SpawnRequest:
    """Validated request to run a command inside a root"""

    backend: Backend
    root: str
    user: str
    arch: Optional[str] = None
    bind_home: Optional[Path] = None
    ssh_agent: bool = False
    x11: bool = False
    pulseaudio: bool = False
    share_devices: bool = False
    to_stderr: bool = False
    dry_run: bool = False
    backend_args: tuple[str, ...] = ()
    command: tuple[str, ...] = ()

    @property
    def root_dir(self) -> Optional[Path]:
        """Symlink-free root directory, None for image-based backends."""
        if not self.backend.uses_root_dir:
            return None
        return Path(self.root).resolve()

    @property
    def interactive(self) -> bool:
        return not self.command


@dataclass(frozen=True)
class ResolvedUser:
    """Identity of the user the command runs as"""

    name: str
    home: str
    shell: str
    _uid: Optional[int] = None
    _gid: Optional[int] = None

    @property
    def uid(self) -> int:
        if self._uid is None:
            raise UnsupportedFieldForManagedContainer(self.name, "uid")
        return self._uid

    @property
    def gid(self) -> int:
        if self._gid is None:
            raise UnsupportedFieldForManagedContainer(self.name, "gid")
        return self._gid

    @property
    def has_ids(self) -> bool:
        return self._uid is not None and self._gid is not None

    @property
    def is_root(self) -> bool:
        return self._uid == 0 or self.name == "root"


@dataclass(frozen=True)
class EnvVar:
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class BindDeclaration:
    """Make host ``source`` visible at ``dest`` inside the root"""

    source: Path
    dest: str


@dataclass(frozen=True)
class TemporaryRuntimeDir:
    """Session runtime directory on the host and where it appears in the root"""

    host_path: Path
    root_path: str

    def in_root(self, name: str) -> str:
        return f"{self.root_path}/{name}"


@dataclass
class EnvironmentBuildResult:
    """Environment entries and binds accumulated by the bridge steps"""

    runtime_dir: TemporaryRuntimeDir
    env: list[EnvVar] = field(default_factory=list)
    binds: list[BindDeclaration] = field(default_factory=list)

    def setenv(self, key: str, value: str) -> None:
        for i, e in enumerate(self.env):
            if e.key == key:
                self.env[i] = EnvVar(key, value)
                return
        self.env.append(EnvVar(key, value))

    def bind(self, source: Path, dest: str) -> None:
        self.binds.append(BindDeclaration(source, dest))

    def getenv(self, key: str) -> Optional[str]:
        for e in self.env:
            if e.key == key:
                return e.value
        return None

    @property
    def env_dict(self) -> dict[str, str]:
        return {e.key: e.value for e in self.env}


@dataclass(frozen=True)
class Command:
    """Argument vector for a single program invocation"""

    argv: tuple[str, ...]

    def __init__(self, *argv: str):
        object.__setattr__(self, "argv", tuple(str(a) for a in argv))

    def __iter__(self):
        return iter(self.argv)

    def wrap(self, *prefix: str) -> "Command":
        return Command(*prefix, *self.argv)
