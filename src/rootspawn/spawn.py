"""Spawn lifecycle: validate, lock, build, run, tear down."""
import os
from pathlib import Path
from typing import IO, Mapping, Optional

from rootspawn import bridge, cleanup, users
from rootspawn.backends import BackendAdapter, get_adapter
from rootspawn.config import Settings
from rootspawn.errors import CommandFailed, MissingRoot, UnsafeRoot
from rootspawn.locking import LockManager
from rootspawn.logging import get_logger
from rootspawn.privileged import Executor
from rootspawn.types import ResolvedUser, SpawnRequest

logger = get_logger(__name__)


def check_root(request: SpawnRequest) -> Optional[Path]:
    """The resolved root directory, refused when it is missing or the host /."""
    root = request.root_dir
    if root is None:
        return None
    if root == Path("/"):
        # every host mount would count as being below it
        raise UnsafeRoot(request.root)
    if not root.is_dir():
        raise MissingRoot(request.root)
    return root


async def validate(
    request: SpawnRequest,
    executor: Executor,
    environ: Mapping[str, str],
) -> tuple[ResolvedUser, ResolvedUser, BackendAdapter]:
    """Check everything that can be checked without touching the host."""
    root = check_root(request)
    user = users.resolve(root, request.user, executor.settings)
    invoker = users.invoking_user()
    adapter = get_adapter(request, user, executor)
    await adapter.validate()

    await bridge.preflight(
        bridge.BridgeContext(
            request=request,
            user=user,
            invoker=invoker,
            executor=executor,
            environ=environ,
        )
    )
    return user, invoker, adapter


async def spawn(
    request: SpawnRequest,
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
    executor: Optional[Executor] = None,
    out: Optional[IO[str]] = None,
) -> int:
    """Run ``request`` and return 0, or raise a SpawnError."""
    environ = os.environ if environ is None else environ
    executor = executor or Executor(settings, dry_run=request.dry_run, out=out)

    user, invoker, adapter = await validate(request, executor, environ)

    root = request.root_dir
    if root is not None:
        await LockManager(executor).lock(root)

    runtime_dir = bridge.allocate_runtime_dir(request, user, settings.program, environ)
    try:
        result = await bridge.build(
            request, user, invoker, executor, environ, runtime_dir=runtime_dir
        )
        status = await adapter.run(result)
    finally:
        await cleanup.teardown(
            request,
            executor,
            runtime_dirs=[runtime_dir.host_path],
            locked=root is not None,
        )

    logger.info("spawn_complete", status=status)
    if status != 0:
        raise CommandFailed(status)
    return 0


async def cleanup_root(
    request: SpawnRequest,
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
    executor: Optional[Executor] = None,
    out: Optional[IO[str]] = None,
) -> int:
    """Tear down whatever an interrupted session left on the root."""
    executor = executor or Executor(settings, dry_run=request.dry_run, out=out)
    check_root(request)
    await cleanup.cleanup(request, executor, environ)
    return 0
