"""Advisory lock sentinel guarding a root directory."""
from pathlib import Path

from rootspawn.errors import PrivilegeError, RootLocked
from rootspawn.logging import get_logger
from rootspawn.privileged import Executor
from rootspawn.types import Command

logger = get_logger(__name__)

# noclobber makes the shell open the sentinel with O_EXCL
_EXCLUSIVE_CREATE = 'set -C; : > "$1"'


class LockManager:
    def __init__(self, executor: Executor):
        self.executor = executor

    def lock_path(self, root: Path) -> Path:
        program = self.executor.settings.program
        return root.parent / f".{program}.{root.name}.lock"

    def is_locked(self, root: Path) -> bool:
        return self.lock_path(root).exists()

    async def lock(self, root: Path) -> None:
        path = self.lock_path(root)
        if self.is_locked(root):
            raise RootLocked(str(root), str(path))

        try:
            await self.executor.run(Command("sh", "-c", _EXCLUSIVE_CREATE, "sh", str(path)))
        except PrivilegeError:
            if path.exists():
                raise RootLocked(str(root), str(path))
            raise
        logger.debug("root_locked", root=str(root), lock=str(path))

    async def unlock(self, root: Path) -> None:
        path = self.lock_path(root)
        await self.executor.run(Command("rm", "-f", str(path)))
        logger.debug("root_unlocked", root=str(root), lock=str(path))
