"""Command line interface."""
import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

from rootspawn import __version__, users
from rootspawn.config import PROGRAM, Settings, load_settings
from rootspawn.errors import GENERIC_FAILURE, SpawnError, log_error
from rootspawn.logging import configure_logging, get_logger
from rootspawn.spawn import cleanup_root, spawn
from rootspawn.types import Backend, SpawnRequest

logger = get_logger("cli")

CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM,
        description="Run a command inside a chroot, systemd-nspawn container or "
        "docker image with the current session (X11, PulseAudio, ssh agent) bridged in.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    backend = parser.add_argument_group("backend (last one wins)")
    backend.add_argument(
        "--chroot", dest="backend", action="store_const", const=Backend.CHROOT,
        help="Use a chroot directory (default)",
    )
    backend.add_argument(
        "--nspawn", dest="backend", action="store_const", const=Backend.NSPAWN,
        help="Use systemd-nspawn on a container directory",
    )
    backend.add_argument(
        "--docker", dest="backend", action="store_const", const=Backend.DOCKER,
        help="Use a docker image; ROOT is the image name",
    )

    features = parser.add_argument_group("features")
    features.add_argument("--with-ssh-agent", dest="ssh_agent", action="store_true",
                          help="Share the ssh agent socket")
    features.add_argument("--with-x11", dest="x11", action="store_true",
                          help="Share the X11 display")
    features.add_argument("--with-pulseaudio", dest="pulseaudio", action="store_true",
                          help="Share the PulseAudio server")
    features.add_argument("--bind-home", metavar="DIR",
                          help="Bind DIR as the user's home directory")
    features.add_argument("--share-devices", action="store_true",
                          help="Bind the host /dev and /sys (chroot only)")

    parser.add_argument("--to-stderr", action="store_true",
                        help="Send the command's stdout to stderr")
    who = parser.add_mutually_exclusive_group()
    who.add_argument("--as-root", action="store_true", help="Run as root")
    who.add_argument("--user", metavar="NAME", help="Run as NAME")
    parser.add_argument("--arch", metavar="NAME", help="Architecture personality, e.g. i686")
    parser.add_argument("--backend-arg", dest="backend_args", metavar="ARG",
                        action="append", default=[],
                        help="Extra argument passed to the backend (repeatable)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print privileged commands instead of running them")
    parser.add_argument("--cleanup", action="store_true",
                        help="Clean up after an interrupted session and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    parser.add_argument("root", metavar="ROOT", help="Root directory or image name")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Command to run (default: login shell)")
    return parser


def build_request(args: argparse.Namespace, settings: Settings) -> SpawnRequest:
    backend = args.backend or Backend.CHROOT

    if args.as_root:
        user = "root"
    elif args.user:
        user = args.user
    elif backend is Backend.DOCKER:
        user = settings.default_user
    else:
        user = users.default_user_name()

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]

    return SpawnRequest(
        backend=backend,
        root=args.root,
        user=user,
        arch=args.arch,
        bind_home=Path(args.bind_home).absolute() if args.bind_home else None,
        ssh_agent=args.ssh_agent,
        x11=args.x11,
        pulseaudio=args.pulseaudio,
        share_devices=args.share_devices,
        to_stderr=args.to_stderr,
        dry_run=args.dry_run,
        backend_args=tuple(args.backend_args),
        command=tuple(command),
    )


async def run(request: SpawnRequest, settings: Settings, cleanup_only: bool = False) -> int:
    """Run the request, turning termination signals into cancellation."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in CANCEL_SIGNALS:
        loop.add_signal_handler(sig, task.cancel)
    # the spawned command owns the terminal and handles ^C itself
    loop.add_signal_handler(signal.SIGINT, lambda: logger.debug("sigint_ignored"))

    out = sys.stderr if request.to_stderr else sys.stdout
    try:
        if cleanup_only:
            return await cleanup_root(request, settings, out=out)
        return await spawn(request, settings, out=out)
    finally:
        for sig in CANCEL_SIGNALS + (signal.SIGINT,):
            loop.remove_signal_handler(sig)


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        settings = load_settings()
        configure_logging("DEBUG" if args.verbose else settings.log_level)
        request = build_request(args, settings)
        return asyncio.run(run(request, settings, cleanup_only=args.cleanup))
    except SpawnError as e:
        log_error(e)
        print(f"{PROGRAM}: error: {e}", file=sys.stderr)
        return e.status
    except asyncio.CancelledError:
        print(f"{PROGRAM}: interrupted", file=sys.stderr)
        return GENERIC_FAILURE
    except Exception:
        logger.exception("fatal_error")
        return GENERIC_FAILURE


def entrypoint() -> None:
    sys.exit(main())
