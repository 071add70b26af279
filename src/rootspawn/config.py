"""Settings loaded from defaults, the user config file and the environment."""
import os
import shlex
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import appdirs
import tomli

from rootspawn.errors import ConfigurationError
from rootspawn.logging import get_logger

logger = get_logger(__name__)

PROGRAM = "rootspawn"
ENV_PREFIX = "ROOTSPAWN_"

ROOT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
USER_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/local/games:/usr/games"


@dataclass(frozen=True)
class Settings:
    """Tunable tool names and defaults"""

    program: str = PROGRAM
    escalation_command: tuple[str, ...] = ("sudo",)
    unshare_command: str = "unshare"
    chroot_command: str = "chroot"
    nspawn_command: str = "systemd-nspawn"
    docker_command: str = "docker"
    setarch_command: str = "setarch"
    default_user: str = "user"
    default_uid: int = 1000
    default_gid: int = 1000
    x11_socket_dir: str = "/tmp/.X11-unix"
    log_level: str = "WARNING"


def config_path() -> Path:
    """Location of the user config file."""
    return Path(appdirs.user_config_dir(PROGRAM)) / "config.toml"


def _coerce(name: str, value: Any) -> Any:
    """Convert raw config/env values to the field's type."""
    default = getattr(Settings, name)
    try:
        if isinstance(default, tuple):
            if isinstance(value, str):
                return tuple(shlex.split(value))
            return tuple(str(v) for v in value)
        if isinstance(default, int):
            return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


def _load_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            data = tomli.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}") from e
    logger.debug("config_file_loaded", path=str(path), keys=sorted(data))
    return data


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build settings: defaults < config file < ROOTSPAWN_* variables."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    overrides: Dict[str, Any] = {}

    for key, value in _load_file(path or config_path()).items():
        if key not in known:
            logger.warning("unknown_config_key", key=key)
            continue
        overrides[key] = _coerce(key, value)

    for name in known:
        env_key = ENV_PREFIX + name.upper()
        if env_key in environ:
            overrides[name] = _coerce(name, environ[env_key])

    return replace(Settings(), **overrides)
