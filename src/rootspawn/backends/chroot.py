"""Chroot backend.

The root filesystem is assembled by a single shell script that runs inside a
private mount and PID namespace (``unshare``), so none of its mounts leak to
the host. The script mounts /proc, /dev and /sys, binds the session runtime
directory and the shared sockets, and finally execs ``chroot``.
"""
import shlex
from pathlib import Path

from rootspawn.backends.base import BackendAdapter, user_command
from rootspawn.devices import minimal_dev_commands, shared_dev_commands
from rootspawn.errors import MountError
from rootspawn.logging import get_logger
from rootspawn.types import BindDeclaration, Command, EnvironmentBuildResult, EnvVar

logger = get_logger(__name__)

# Host files bound read-through so name resolution and local time work
HOST_FILES = ("/etc/resolv.conf", "/etc/localtime")

# chroot(1) also exits 125 when it cannot enter the root
SETUP_FAILED = 125


class ChrootAdapter(BackendAdapter):
    supports_shared_devices = True

    @property
    def root(self) -> str:
        return str(self.request.root_dir)

    def required_tools(self) -> list[str]:
        tools = [self.settings.unshare_command, self.settings.chroot_command]
        if self.personality is not None:
            tools.append(self.settings.setarch_command)
        return tools

    def translate_env(self, env: list[EnvVar]) -> list[str]:
        return [str(e) for e in env]

    def host_target(self, dest: str, result: EnvironmentBuildResult) -> str:
        """Where a bind destination lives as seen from outside the root.

        Paths under the in-root runtime directory are served by the host
        temporary directory that gets bound there.
        """
        runtime = result.runtime_dir
        if dest == runtime.root_path or dest.startswith(runtime.root_path + "/"):
            return str(runtime.host_path) + dest[len(runtime.root_path):]
        return self.root + dest

    def translate_bind(self, bind: BindDeclaration, result: EnvironmentBuildResult) -> list[Command]:
        target = self.host_target(bind.dest, result)
        if Path(bind.source).is_dir():
            prepare = [Command("mkdir", "-p", target)]
        else:
            prepare = [
                Command("mkdir", "-p", str(Path(target).parent)),
                Command("touch", target),
            ]
        return prepare + [Command("mount", "--bind", str(bind.source), target)]

    def _is_runtime_bind(self, bind: BindDeclaration, result: EnvironmentBuildResult) -> bool:
        return self.host_target(bind.dest, result).startswith(
            str(result.runtime_dir.host_path)
        )

    def host_file_commands(self) -> list[Command]:
        cmds = []
        for host_file in HOST_FILES:
            if not Path(host_file).exists():
                continue
            target = Path(self.root + host_file)
            if target.is_symlink():
                # a symlink would resolve against the host filesystem
                logger.debug("host_file_skipped", path=str(target), reason="symlink")
                continue
            cmds.append(Command("mkdir", "-p", str(target.parent)))
            if not target.exists():
                cmds.append(Command("touch", str(target)))
            cmds.append(Command("mount", "--bind", host_file, str(target)))
        return cmds

    def namespace_script(self, result: EnvironmentBuildResult) -> list[Command]:
        """Ordered commands building the root inside the new namespace."""
        root = self.root
        runtime_binds = [b for b in result.binds if self._is_runtime_bind(b, result)]
        other_binds = [b for b in result.binds if not self._is_runtime_bind(b, result)]

        cmds: list[Command] = []
        # Sockets are bound onto files in the host tmp dir. These binds only
        # touch the host side, so they must exist before the --rbind below,
        # which carries them into the root. Their place relative to /proc and
        # /dev does not matter.
        for bind in runtime_binds:
            cmds.extend(self.translate_bind(bind, result))

        cmds.append(Command("mkdir", "-p", f"{root}/proc", f"{root}/dev", f"{root}/sys"))
        cmds.append(Command("mount", "-t", "proc", "proc", f"{root}/proc"))
        if self.request.share_devices:
            cmds.extend(shared_dev_commands(root))
        else:
            cmds.extend(minimal_dev_commands(f"{root}/dev"))
            cmds.append(Command("mount", "-t", "sysfs", "-o", "ro", "sysfs", f"{root}/sys"))

        runtime_target = root + result.runtime_dir.root_path
        cmds.append(Command("mkdir", "-p", runtime_target))
        cmds.append(Command("mount", "--rbind", str(result.runtime_dir.host_path), runtime_target))

        for bind in other_binds:
            cmds.extend(self.translate_bind(bind, result))
        cmds.extend(self.host_file_commands())
        return cmds

    def chroot_command(self, result: EnvironmentBuildResult) -> Command:
        return Command(
            self.settings.chroot_command,
            f"--userspec={self.user.uid}:{self.user.gid}",
            *self.request.backend_args,
            self.root,
            "/usr/bin/env",
            "-i",
            *self.translate_env(result.env),
            *user_command(self.request),
        )

    def build_command(self, result: EnvironmentBuildResult) -> Command:
        lines = [
            f"{shlex.join(cmd)} || exit {SETUP_FAILED}"
            for cmd in self.namespace_script(result)
        ]
        lines.append("exec " + shlex.join(self.chroot_command(result)))
        script = "\n".join(lines)

        cmd = Command(
            self.settings.unshare_command,
            "--mount",
            "--pid",
            "--fork",
            "--propagation",
            "private",
            "sh",
            "-e",
            "-c",
            script,
        )
        if self.personality is not None:
            cmd = cmd.wrap(self.settings.setarch_command, self.personality.setarch)
        return cmd

    async def run(self, result: EnvironmentBuildResult) -> int:
        status = await super().run(result)
        if status == SETUP_FAILED:
            raise MountError(
                f"Building the root filesystem under {self.root} failed",
                status=SETUP_FAILED,
                details={"root": self.root},
            )
        return status
