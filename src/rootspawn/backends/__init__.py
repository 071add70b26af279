"""Backend adapters, one per :class:`~rootspawn.types.Backend` variant."""
from typing import Dict, Type

from rootspawn.backends.base import BackendAdapter
from rootspawn.backends.chroot import ChrootAdapter
from rootspawn.backends.docker import DockerAdapter
from rootspawn.backends.nspawn import NspawnAdapter
from rootspawn.privileged import Executor
from rootspawn.types import Backend, ResolvedUser, SpawnRequest

ADAPTERS: Dict[Backend, Type[BackendAdapter]] = {
    Backend.CHROOT: ChrootAdapter,
    Backend.NSPAWN: NspawnAdapter,
    Backend.DOCKER: DockerAdapter,
}


def get_adapter(
    request: SpawnRequest, user: ResolvedUser, executor: Executor
) -> BackendAdapter:
    return ADAPTERS[request.backend](request, user, executor)


__all__ = [
    "ADAPTERS",
    "BackendAdapter",
    "ChrootAdapter",
    "DockerAdapter",
    "NspawnAdapter",
    "get_adapter",
]
