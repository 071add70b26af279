"""Bridge the invoking user's session (runtime dir, ssh agent, X11,
PulseAudio, home directory) into a root.

Each step receives the :class:`EnvironmentBuildResult` produced so far and
returns it with its own environment entries and binds added. Binds are
backend-agnostic; the backend adapters translate them.
"""
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from fuuid import b58_fuuid

from rootspawn.config import ROOT_PATH, USER_PATH
from rootspawn.errors import (
    MissingDisplay,
    MissingHomeSource,
    MissingPulseCookie,
    MissingPulseSocket,
    MissingSshAgent,
    MissingX11Socket,
    NotASocket,
)
from rootspawn.logging import get_logger
from rootspawn.privileged import Executor, probe
from rootspawn.types import (
    Backend,
    Command,
    EnvironmentBuildResult,
    ResolvedUser,
    SpawnRequest,
    TemporaryRuntimeDir,
)

logger = get_logger(__name__)

SSH_AGENT_NAME = "ssh-agent"
XAUTHORITY_NAME = "Xauthority"
PULSE_SOCKET_NAME = "pulse-native"
PULSE_COOKIE_NAME = "pulse-cookie"

# xauth nlist output starts with the 4-hex-digit address family
_FAMILY_WILD = "ffff"
_PULSE_SERVER_RE = re.compile(r"^Server String:\s*(?:unix:)?(\S+)", re.MULTILINE)


@dataclass(frozen=True)
class BridgeContext:
    request: SpawnRequest
    user: ResolvedUser
    invoker: ResolvedUser
    executor: Executor
    environ: Mapping[str, str]

    @property
    def program(self) -> str:
        return self.executor.settings.program

    @property
    def uid_differs(self) -> bool:
        """Whether files handed to the target user need wider permissions."""
        return not self.user.has_ids or self.user.uid != self.invoker.uid


def root_label(request: SpawnRequest) -> str:
    """File-name friendly identifier of the root or image."""
    if request.root_dir is not None:
        return request.root_dir.name
    return re.sub(r"[^A-Za-z0-9_.-]", "_", request.root)


def runtime_dir_prefix(request: SpawnRequest, program: str) -> str:
    return f"{program}-{root_label(request)}-"


def host_runtime_base(environ: Mapping[str, str]) -> Path:
    return Path(environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir())


def in_root_runtime_path(user: ResolvedUser, program: str) -> str:
    if user.has_ids:
        return f"/run/user/{user.uid}"
    return f"/tmp/{program}-runtime-{user.name}"


def default_path(user: ResolvedUser) -> str:
    return ROOT_PATH if user.is_root else USER_PATH


# Checks. These never touch the filesystem.


def check_ssh_agent(environ: Mapping[str, str]) -> Path:
    sock = environ.get("SSH_AUTH_SOCK")
    if not sock:
        raise MissingSshAgent()
    try:
        mode = os.stat(sock).st_mode
    except OSError:
        raise NotASocket(sock) from None
    if not stat.S_ISSOCK(mode):
        raise NotASocket(sock)
    return Path(sock)


def check_x11(environ: Mapping[str, str], socket_dir: str) -> tuple[str, Path]:
    display = environ.get("DISPLAY")
    if not display:
        raise MissingDisplay()
    x11_dir = Path(socket_dir)
    if not x11_dir.is_dir():
        raise MissingX11Socket(str(x11_dir))
    return display, x11_dir


def pulse_cookie_path(invoker: ResolvedUser, environ: Mapping[str, str]) -> Path:
    config_home = environ.get("XDG_CONFIG_HOME") or f"{invoker.home}/.config"
    return Path(config_home) / "pulse" / "cookie"


async def find_pulse_socket() -> Optional[Path]:
    """Ask the audio server where its native socket lives."""
    result = await probe("pactl", "info")
    if result.returncode != 0:
        logger.debug("pactl_failed", stderr=result.stderr.decode(errors="replace"))
        return None
    match = _PULSE_SERVER_RE.search(result.stdout.decode(errors="replace"))
    return Path(match.group(1)) if match else None


async def check_pulseaudio(
    invoker: ResolvedUser, environ: Mapping[str, str]
) -> tuple[Path, Path]:
    sock = await find_pulse_socket()
    if sock is None or not sock.exists():
        raise MissingPulseSocket(str(sock) if sock else None)
    cookie = pulse_cookie_path(invoker, environ)
    if not cookie.is_file():
        raise MissingPulseCookie(str(cookie))
    return sock, cookie


def check_home(request: SpawnRequest) -> Path:
    source = request.bind_home
    if source is None or not Path(source).is_dir():
        raise MissingHomeSource(str(source))
    return Path(source)


async def preflight(ctx: BridgeContext) -> None:
    """Fail on any missing precondition before anything is created."""
    request = ctx.request
    if request.ssh_agent:
        check_ssh_agent(ctx.environ)
    if request.x11:
        check_x11(ctx.environ, ctx.executor.settings.x11_socket_dir)
    if request.pulseaudio:
        await check_pulseaudio(ctx.invoker, ctx.environ)
    if request.bind_home is not None:
        check_home(request)


# Steps


def allocate_runtime_dir(
    request: SpawnRequest,
    user: ResolvedUser,
    program: str,
    environ: Optional[Mapping[str, str]] = None,
) -> TemporaryRuntimeDir:
    """Pick a unique session runtime directory without creating it."""
    environ = os.environ if environ is None else environ
    name = runtime_dir_prefix(request, program) + b58_fuuid()
    return TemporaryRuntimeDir(
        host_path=host_runtime_base(environ) / name,
        root_path=in_root_runtime_path(user, program),
    )


async def setup_runtime_dir(
    ctx: BridgeContext, runtime_dir: TemporaryRuntimeDir
) -> EnvironmentBuildResult:
    """Create the session runtime directory and export XDG paths."""
    request, user, executor = ctx.request, ctx.user, ctx.executor
    await executor.run(
        Command("mkdir", "-m", "0700", str(runtime_dir.host_path)), privileged=False
    )

    result = EnvironmentBuildResult(runtime_dir=runtime_dir)
    if request.backend is Backend.CHROOT:
        target = str(request.root_dir) + runtime_dir.root_path
        await executor.run(Command("mkdir", "-p", target))
        await executor.run(Command("chown", f"{user.uid}:{user.gid}", target))
        await executor.run(Command("chmod", "0700", target))
    else:
        result.bind(runtime_dir.host_path, runtime_dir.root_path)

    result.setenv("XDG_RUNTIME_DIR", runtime_dir.root_path)
    result.setenv("XDG_CONFIG_HOME", f"{user.home}/.config")

    logger.debug(
        "runtime_dir_created",
        host_path=str(runtime_dir.host_path),
        root_path=runtime_dir.root_path,
    )
    return result


def setup_base_env(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    user = ctx.user
    result.setenv("HOME", user.home)
    result.setenv("USER", user.name)
    result.setenv("LOGNAME", user.name)
    result.setenv("SHELL", user.shell)
    result.setenv("PATH", default_path(user))
    if term := ctx.environ.get("TERM"):
        result.setenv("TERM", term)
    return result


async def setup_ssh_agent(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    sock = check_ssh_agent(ctx.environ)

    if ctx.uid_differs:
        logger.warning(
            "ssh_agent_socket_widened",
            socket=str(sock),
            mode="0666",
            reason="target user differs from the invoking user",
        )
        await ctx.executor.run(Command("chmod", "0666", str(sock)), privileged=False)

    target = result.runtime_dir.in_root(SSH_AGENT_NAME)
    result.bind(sock, target)
    result.setenv("SSH_AUTH_SOCK", target)
    return result


async def read_xauth_entries(display: str) -> bytes:
    """Current authority entries for ``display`` with a wildcard family.

    The hostname inside the root may differ from the host's, so the entry
    must match any host.
    """
    result = await probe("xauth", "nlist", display)
    if result.returncode != 0:
        logger.debug("xauth_nlist_failed", stderr=result.stderr.decode(errors="replace"))
        return b""
    lines = [
        _FAMILY_WILD + line[4:]
        for line in result.stdout.decode(errors="replace").splitlines()
        if len(line) > 4
    ]
    return "".join(f"{line}\n" for line in lines).encode()


async def setup_x11(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    display, x11_dir = check_x11(ctx.environ, ctx.executor.settings.x11_socket_dir)

    entries = await read_xauth_entries(display)
    if entries:
        xauthority = result.runtime_dir.host_path / XAUTHORITY_NAME
        await ctx.executor.run(
            Command("xauth", "-f", str(xauthority), "nmerge", "-"),
            privileged=False,
            input=entries,
        )
        if ctx.uid_differs:
            await ctx.executor.run(Command("chmod", "0644", str(xauthority)), privileged=False)
        result.setenv("XAUTHORITY", result.runtime_dir.in_root(XAUTHORITY_NAME))
    else:
        logger.warning("xauth_no_entries", display=display)

    result.setenv("DISPLAY", display)
    result.setenv("QT_X11_NO_MITSHM", "1")
    result.bind(x11_dir, str(x11_dir))
    return result


async def setup_pulseaudio(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    sock, cookie = await check_pulseaudio(ctx.invoker, ctx.environ)

    cookie_copy = result.runtime_dir.host_path / PULSE_COOKIE_NAME
    await ctx.executor.run(Command("cp", str(cookie), str(cookie_copy)), privileged=False)
    await ctx.executor.run(Command("chmod", "0644", str(cookie_copy)), privileged=False)

    socket_target = result.runtime_dir.in_root(PULSE_SOCKET_NAME)
    result.bind(sock, socket_target)
    result.setenv("PULSE_SERVER", f"unix:{socket_target}")
    result.setenv("PULSE_COOKIE", result.runtime_dir.in_root(PULSE_COOKIE_NAME))
    return result


async def setup_home(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    source = check_home(ctx.request)
    user = ctx.user

    if ctx.request.backend is Backend.CHROOT:
        target = str(ctx.request.root_dir) + user.home
        await ctx.executor.run(Command("mkdir", "-p", target))
        await ctx.executor.run(Command("chown", f"{user.uid}:{user.gid}", target))

    result.bind(source, user.home)
    return result


async def finalize_runtime_dir(
    result: EnvironmentBuildResult, ctx: BridgeContext
) -> EnvironmentBuildResult:
    """Hand the populated runtime directory over to the target user."""
    host_path = str(result.runtime_dir.host_path)
    if not ctx.uid_differs:
        return result
    if ctx.user.has_ids:
        await ctx.executor.run(
            Command("chown", "-R", f"{ctx.user.uid}:{ctx.user.gid}", host_path)
        )
    else:
        await ctx.executor.run(Command("chmod", "0755", host_path), privileged=False)
    return result


async def build(
    request: SpawnRequest,
    user: ResolvedUser,
    invoker: ResolvedUser,
    executor: Executor,
    environ: Optional[Mapping[str, str]] = None,
    runtime_dir: Optional[TemporaryRuntimeDir] = None,
) -> EnvironmentBuildResult:
    """Build environment entries, binds and the temporary runtime directory.

    ``runtime_dir`` lets the caller know the directory before it is created,
    so that it can be torn down even if a later step fails.
    """
    ctx = BridgeContext(
        request=request,
        user=user,
        invoker=invoker,
        executor=executor,
        environ=os.environ if environ is None else environ,
    )
    await preflight(ctx)

    if runtime_dir is None:
        runtime_dir = allocate_runtime_dir(request, user, ctx.program, ctx.environ)
    result = await setup_runtime_dir(ctx, runtime_dir)
    result = setup_base_env(result, ctx)
    if request.ssh_agent:
        result = await setup_ssh_agent(result, ctx)
    if request.x11:
        result = await setup_x11(result, ctx)
    if request.pulseaudio:
        result = await setup_pulseaudio(result, ctx)
    if request.bind_home is not None:
        result = await setup_home(result, ctx)
    result = await finalize_runtime_dir(result, ctx)

    logger.info(
        "environment_built",
        env=[e.key for e in result.env],
        binds=[f"{b.source}:{b.dest}" for b in result.binds],
    )
    return result
