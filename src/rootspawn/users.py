"""User identity lookup inside a root or from a built-in table."""
import os
import pwd
from pathlib import Path
from typing import Optional

from rootspawn.config import Settings
from rootspawn.errors import MissingPasswdField, MissingPasswdRecord, UnknownUser
from rootspawn.logging import get_logger
from rootspawn.types import ResolvedUser

logger = get_logger(__name__)

PASSWD_FIELDS = ("name", "password", "uid", "gid", "gecos", "home", "shell")


def _builtin_users(settings: Settings) -> dict[str, ResolvedUser]:
    default = settings.default_user
    return {
        "root": ResolvedUser("root", "/root", "/bin/sh", 0, 0),
        default: ResolvedUser(
            default,
            f"/home/{default}",
            "/bin/sh",
            settings.default_uid,
            settings.default_gid,
        ),
    }


def _parse_entry(line: str, user: str) -> ResolvedUser:
    parts = line.rstrip("\n").split(":")
    if len(parts) < len(PASSWD_FIELDS):
        raise MissingPasswdField(user, PASSWD_FIELDS[len(parts)])
    record = dict(zip(PASSWD_FIELDS, parts))

    ids = {}
    for key in ("uid", "gid"):
        try:
            ids[key] = int(record[key])
        except ValueError as e:
            raise MissingPasswdField(user, key) from e
    for key in ("home", "shell"):
        if not record[key]:
            raise MissingPasswdField(user, key)

    return ResolvedUser(user, record["home"], record["shell"], ids["uid"], ids["gid"])


def lookup_in_root(root: Path, user: str) -> ResolvedUser:
    """Read ``user`` from ``<root>/etc/passwd``."""
    passwd = root / "etc" / "passwd"
    if not passwd.is_file():
        raise MissingPasswdRecord(str(passwd))

    with open(passwd, encoding="utf-8", errors="replace") as f:
        for line in f:
            if line.startswith("#") or not line.strip():
                continue
            if line.split(":", 1)[0] == user:
                return _parse_entry(line, user)

    raise UnknownUser(user, str(root))


def resolve(root: Optional[Path], user: str, settings: Settings) -> ResolvedUser:
    """Resolve the target user.

    Without a root only the well-known users carry uid/gid; anything else is
    left for the container engine to resolve when the container starts.
    """
    if root is not None:
        resolved = lookup_in_root(root, user)
    else:
        resolved = _builtin_users(settings).get(user) or ResolvedUser(
            user, f"/home/{user}", "/bin/sh"
        )

    logger.debug(
        "user_resolved",
        user=user,
        root=str(root) if root else None,
        uid=resolved._uid,
        gid=resolved._gid,
        home=resolved.home,
    )
    return resolved


def invoking_user() -> ResolvedUser:
    """The user running rootspawn, looked up on the host."""
    uid = os.geteuid()
    gid = os.getegid()
    try:
        entry = pwd.getpwuid(uid)
        name, home, shell = entry.pw_name, entry.pw_dir, entry.pw_shell
    except KeyError:
        name = os.environ.get("USER", str(uid))
        home = os.environ.get("HOME", "/")
        shell = "/bin/sh"
    return ResolvedUser(name, os.environ.get("HOME", home), shell, uid, gid)


def default_user_name() -> str:
    """Name of the real user behind the invocation, even under sudo."""
    return os.environ.get("SUDO_USER") or invoking_user().name
