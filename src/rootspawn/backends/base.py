"""Common interface of the backend adapters."""
import sys
from abc import ABC, abstractmethod
from typing import Optional

from rootspawn.errors import ConflictingOptions
from rootspawn.logging import get_logger
from rootspawn.personality import Personality, get_personality
from rootspawn.privileged import Executor, exit_status, require_tool
from rootspawn.types import (
    BindDeclaration,
    Command,
    EnvironmentBuildResult,
    EnvVar,
    ResolvedUser,
    SpawnRequest,
)

logger = get_logger(__name__)

LOGIN_SHELL_SCRIPT = 'cd "$HOME" 2>/dev/null; exec "$SHELL" -l'
IN_HOME_SCRIPT = 'cd "$HOME" 2>/dev/null; exec "$@"'


def login_shell() -> Command:
    """Interactive login shell starting in the user's home directory."""
    return Command("/bin/sh", "-c", LOGIN_SHELL_SCRIPT)


def user_command(request: SpawnRequest) -> Command:
    """The requested command, or a login shell, starting in the user's home directory."""
    if request.command:
        return Command("/bin/sh", "-c", IN_HOME_SCRIPT, "sh", *request.command)
    return login_shell()


class BackendAdapter(ABC):
    """Translate bridge declarations into one backend's invocation and run it."""

    supports_shared_devices = False

    def __init__(self, request: SpawnRequest, user: ResolvedUser, executor: Executor):
        self.request = request
        self.user = user
        self.executor = executor
        self.settings = executor.settings

    @property
    def personality(self) -> Optional[Personality]:
        return get_personality(self.request.arch)

    def required_tools(self) -> list[str]:
        return []

    async def validate(self) -> None:
        """Reject requests this backend cannot honour, before any mutation."""
        if self.request.share_devices and not self.supports_shared_devices:
            raise ConflictingOptions(
                f"Sharing devices is not supported by the {self.request.backend.value} backend"
            )
        get_personality(self.request.arch)
        if not self.executor.dry_run:
            for tool in self.required_tools():
                require_tool(tool)

    @abstractmethod
    def translate_env(self, env: list[EnvVar]) -> list[str]:
        ...

    @abstractmethod
    def translate_bind(self, bind: BindDeclaration, result: EnvironmentBuildResult) -> list:
        ...

    @abstractmethod
    def build_command(self, result: EnvironmentBuildResult) -> Command:
        ...

    async def run(self, result: EnvironmentBuildResult) -> int:
        """Run the command and return its exit status (128 + N when killed by signal N)."""
        cmd = self.build_command(result)
        logger.info("spawn", backend=self.request.backend.value, root=self.request.root)
        proc = await self.executor.run(
            cmd,
            capture=False,
            check=False,
            stdout=sys.stderr if self.request.to_stderr else None,
        )
        return exit_status(proc.returncode)
