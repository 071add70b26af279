"""Architecture personality mapping."""
from typing import NamedTuple, Optional

from rootspawn.errors import UnknownArchitecture


class Personality(NamedTuple):
    """Backend-specific spellings of one personality."""

    setarch: str
    nspawn: Optional[str]
    docker: str


_X86 = Personality(setarch="linux32", nspawn="x86", docker="linux/386")
_X86_64 = Personality(setarch="linux64", nspawn="x86-64", docker="linux/amd64")
_ARM = Personality(setarch="linux32", nspawn=None, docker="linux/arm/v7")
_ARM64 = Personality(setarch="linux64", nspawn=None, docker="linux/arm64")

ARCH_ALIASES = {
    "i386": _X86,
    "i486": _X86,
    "i586": _X86,
    "i686": _X86,
    "x86": _X86,
    "x86_32": _X86,
    "x86_64": _X86_64,
    "amd64": _X86_64,
    "x64": _X86_64,
    "arm": _ARM,
    "armhf": _ARM,
    "armv7": _ARM,
    "armv7l": _ARM,
    "aarch64": _ARM64,
    "arm64": _ARM64,
}


def get_personality(arch: Optional[str]) -> Optional[Personality]:
    """Look up ``arch``; None means no personality change."""
    if arch is None:
        return None
    try:
        return ARCH_ALIASES[arch.lower()]
    except KeyError:
        raise UnknownArchitecture(arch) from None
