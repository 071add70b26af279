"""Single escalation point for every mutating action.

All commands that change the host or the root go through :class:`Executor`.
It prefixes the escalation command when needed and, in dry-run mode, prints the
command line instead of running it. Every invocation is recorded in
``history`` so the exact sequence of actions can be inspected.
"""
import asyncio
import os
import shlex
import shutil
import sys
from dataclasses import dataclass
from typing import IO, Optional, Sequence

from rootspawn.config import Settings
from rootspawn.errors import MissingTool, PrivilegeError
from rootspawn.logging import get_logger
from rootspawn.types import Command

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""


def exit_status(returncode: int) -> int:
    """Shell-style status: a child killed by signal N reports 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def require_tool(name: str) -> str:
    """Return the full path of ``name`` or raise MissingTool."""
    path = shutil.which(name)
    if not path:
        raise MissingTool(name)
    return path


async def probe(*argv: str, input: Optional[bytes] = None) -> ExecResult:
    """Run a read-only query directly, even in dry-run mode."""
    logger.debug("probe_exec", argv=list(argv))
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise MissingTool(argv[0]) from e
    stdout, stderr = await proc.communicate(input)
    return ExecResult(proc.returncode, stdout, stderr)


class Executor:
    """Runs (or prints) commands, escalating privileges when required."""

    def __init__(
        self,
        settings: Settings,
        dry_run: bool = False,
        out: Optional[IO[str]] = None,
        euid: Optional[int] = None,
    ):
        self.settings = settings
        self.dry_run = dry_run
        self.out = out or sys.stdout
        self.euid = os.geteuid() if euid is None else euid
        self.history: list[list[str]] = []

    @property
    def is_privileged(self) -> bool:
        return self.euid == 0

    def argv_for(self, cmd: Command | Sequence[str], privileged: bool = True) -> list[str]:
        argv = list(cmd)
        if privileged and not self.is_privileged:
            argv = list(self.settings.escalation_command) + argv
        return argv

    async def run(
        self,
        cmd: Command | Sequence[str],
        *,
        privileged: bool = True,
        input: Optional[bytes] = None,
        capture: bool = True,
        check: bool = True,
        stdout: Optional[IO] = None,
    ) -> ExecResult:
        """Execute ``cmd``; raise PrivilegeError on failure when ``check`` is set.

        With ``capture=False`` the child inherits the terminal (or writes its
        stdout to ``stdout``), which is how the spawned command itself runs.
        """
        argv = self.argv_for(cmd, privileged)
        self.history.append(argv)

        if self.dry_run:
            print(shlex.join(argv), file=self.out)
            return ExecResult(0)

        logger.debug("exec", argv=argv, privileged=privileged)
        pipe = asyncio.subprocess.PIPE
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=pipe if input is not None else None,
                stdout=pipe if capture else stdout,
                stderr=pipe if capture else None,
            )
        except FileNotFoundError as e:
            raise MissingTool(argv[0]) from e

        try:
            out, err = await proc.communicate(input)
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            raise

        result = ExecResult(proc.returncode, out or b"", err or b"")
        logger.debug("exec_complete", argv=argv, returncode=proc.returncode)

        if check and result.returncode != 0:
            raise PrivilegeError(
                argv,
                exit_status(result.returncode),
                result.stderr.decode(errors="replace"),
            )
        return result
