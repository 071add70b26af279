"""Minimal /dev tree for roots that do not share the host devices."""
from typing import NamedTuple

from rootspawn.types import Command


class DeviceNode(NamedTuple):
    name: str
    type: str
    major: int
    minor: int
    mode: int


MINIMAL_DEVICES = (
    DeviceNode("null", "c", 1, 3, 0o666),
    DeviceNode("zero", "c", 1, 5, 0o666),
    DeviceNode("random", "c", 1, 8, 0o666),
    DeviceNode("urandom", "c", 1, 9, 0o666),
    DeviceNode("tty", "c", 5, 0, 0o666),
    DeviceNode("console", "c", 5, 1, 0o600),
)

# link name -> target
DEVICE_SYMLINKS = {
    "ptmx": "pts/ptmx",
    "fd": "/proc/self/fd",
    "stdin": "/proc/self/fd/0",
    "stdout": "/proc/self/fd/1",
    "stderr": "/proc/self/fd/2",
}

DEVPTS_OPTIONS = "newinstance,ptmxmode=0666,mode=0620,gid=5"


def minimal_dev_commands(dev: str) -> list[Command]:
    """Commands populating ``dev`` (the root's /dev) from scratch."""
    cmds = [
        Command("mount", "-t", "tmpfs", "-o", "mode=0755,nosuid", "tmpfs", dev),
        Command("mkdir", "-p", f"{dev}/shm", f"{dev}/pts"),
        Command("mount", "-t", "tmpfs", "-o", "mode=1777,nosuid,nodev", "tmpfs", f"{dev}/shm"),
        Command("mount", "-t", "devpts", "-o", DEVPTS_OPTIONS, "devpts", f"{dev}/pts"),
    ]
    for link, target in DEVICE_SYMLINKS.items():
        cmds.append(Command("ln", "-s", target, f"{dev}/{link}"))
    for node in MINIMAL_DEVICES:
        cmds.append(
            Command(
                "mknod",
                "-m",
                f"{node.mode:o}",
                f"{dev}/{node.name}",
                node.type,
                str(node.major),
                str(node.minor),
            )
        )
    return cmds


def shared_dev_commands(root: str) -> list[Command]:
    """Commands exposing the host /dev and /sys inside ``root``."""
    cmds = []
    for path in ("/dev", "/sys"):
        target = f"{root}{path}"
        cmds.append(Command("mount", "--rbind", path, target))
        cmds.append(Command("mount", "--make-rslave", target))
    return cmds
