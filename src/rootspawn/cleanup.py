"""Teardown of everything a spawn created.

Teardown never raises: by the time it runs, reporting the original failure
matters more than secondary teardown errors, which are logged as warnings.
It also cannot be interrupted: a cancellation that arrives while it runs is
held back until the lock is released, then re-raised.
"""
import asyncio
import os
from pathlib import Path
from typing import Iterable, Optional

import psutil

from rootspawn.bridge import host_runtime_base, runtime_dir_prefix
from rootspawn.errors import UnsafeRoot
from rootspawn.locking import LockManager
from rootspawn.logging import get_logger
from rootspawn.privileged import Executor
from rootspawn.types import Command, SpawnRequest

logger = get_logger(__name__)


def list_mounts() -> list[str]:
    """Mount points currently in the mount table."""
    return [p.mountpoint for p in psutil.disk_partitions(all=True)]


def mounts_under(base: Path, mounts: Iterable[str]) -> list[str]:
    """Mount points strictly below ``base``, deepest first."""
    if Path(base) == Path("/"):
        raise UnsafeRoot(str(base))
    prefix = str(base).rstrip("/") + "/"
    found = {m for m in mounts if m.startswith(prefix)}
    return sorted(found, key=lambda m: (len(m), m), reverse=True)


async def unmount_all(executor: Executor, base: Path) -> list[str]:
    """Unmount everything below ``base``; returns the mount points that failed."""
    failed = []
    for mountpoint in mounts_under(base, list_mounts()):
        try:
            await executor.run(Command("umount", mountpoint))
        except Exception as e:
            logger.warning("umount_failed", mountpoint=mountpoint, error=str(e))
            failed.append(mountpoint)
    return failed


async def teardown(
    request: SpawnRequest,
    executor: Executor,
    runtime_dirs: Iterable[Path] = (),
    locked: bool = False,
) -> None:
    """Reverse every mount, drop the runtime dirs, release the lock, sync."""
    task = asyncio.ensure_future(_teardown(request, executor, list(runtime_dirs), locked))
    cancelled = False
    while True:
        try:
            await asyncio.shield(task)
            break
        except asyncio.CancelledError:
            if task.done():
                raise
            cancelled = True
            logger.warning("teardown_cancel_deferred", root=request.root)
    if cancelled:
        raise asyncio.CancelledError()


async def _teardown(
    request: SpawnRequest,
    executor: Executor,
    runtime_dirs: list[Path],
    locked: bool,
) -> None:
    root = request.root_dir

    if root is not None:
        await _best_effort("unmount_root", unmount_all(executor, root))

    for runtime_dir in runtime_dirs:
        busy = await _best_effort("unmount_runtime_dir", unmount_all(executor, runtime_dir))
        if busy is None or busy:
            # removing would descend into whatever is still bound there
            logger.warning("runtime_dir_kept", path=str(runtime_dir), busy=busy)
            continue
        await _best_effort(
            "remove_runtime_dir",
            executor.run(Command("rm", "-rf", "--one-file-system", str(runtime_dir))),
        )

    if locked and root is not None:
        await _best_effort("unlock", LockManager(executor).unlock(root))
    await _best_effort("sync", executor.run(Command("sync"), privileged=False))

    logger.debug("teardown_complete", root=str(root) if root else request.root)


async def _best_effort(step: str, coro):
    try:
        return await coro
    except Exception as e:
        logger.warning("teardown_step_failed", step=step, error=str(e))
        return None


def stale_runtime_dirs(
    request: SpawnRequest, program: str, environ: Optional[dict] = None
) -> list[Path]:
    """Runtime directories left behind by earlier sessions on this root."""
    environ = os.environ if environ is None else environ
    base = host_runtime_base(environ)
    prefix = runtime_dir_prefix(request, program)
    if not base.is_dir():
        return []
    return sorted(p for p in base.iterdir() if p.name.startswith(prefix))


async def cleanup(request: SpawnRequest, executor: Executor, environ: Optional[dict] = None) -> None:
    """Explicit cleanup of a root after an interrupted session."""
    dirs = stale_runtime_dirs(request, executor.settings.program, environ)
    logger.info("cleanup", root=request.root, runtime_dirs=[str(d) for d in dirs])
    await teardown(request, executor, runtime_dirs=dirs, locked=request.backend.uses_root_dir)
