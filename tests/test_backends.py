import shlex
from pathlib import Path

import pytest

from rootspawn.backends import ChrootAdapter, DockerAdapter, NspawnAdapter, get_adapter
from rootspawn.backends.base import IN_HOME_SCRIPT, LOGIN_SHELL_SCRIPT
from rootspawn.devices import MINIMAL_DEVICES
from rootspawn.errors import ConflictingOptions, MissingImage, MountError, UnknownArchitecture
from rootspawn.privileged import ExecResult, Executor
from rootspawn.types import (
    Backend,
    BindDeclaration,
    EnvironmentBuildResult,
    ResolvedUser,
    TemporaryRuntimeDir,
)


@pytest.fixture
def result(runtime_base):
    result = EnvironmentBuildResult(
        runtime_dir=TemporaryRuntimeDir(runtime_base / "session", "/run/user/1000")
    )
    result.setenv("HOME", "/home/alice")
    result.setenv("XDG_RUNTIME_DIR", "/run/user/1000")
    return result


def script_lines(cmd) -> list[list[str]]:
    """Commands of the namespace script embedded in an unshare invocation"""
    argv = list(cmd)
    script = argv[argv.index("-c") + 1]
    lines = [shlex.split(line) for line in script.splitlines()]
    return [l[:-3] if l[-3:] == ["||", "exit", "125"] else l for l in lines]


def test_get_adapter(make_request, alice, dry_executor):
    assert isinstance(get_adapter(make_request(), alice, dry_executor), ChrootAdapter)
    request = make_request(backend=Backend.NSPAWN)
    assert isinstance(get_adapter(request, alice, dry_executor), NspawnAdapter)
    request = make_request(backend=Backend.DOCKER, root="debian")
    assert isinstance(get_adapter(request, alice, dry_executor), DockerAdapter)


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", [Backend.NSPAWN, Backend.DOCKER])
async def test_shared_devices_only_for_chroot(make_request, alice, dry_executor, backend):
    request = make_request(backend=backend, share_devices=True)
    with pytest.raises(ConflictingOptions):
        await get_adapter(request, alice, dry_executor).validate()
    assert dry_executor.history == []


@pytest.mark.asyncio
async def test_unknown_arch_rejected(make_request, alice, dry_executor):
    request = make_request(arch="sparc")
    with pytest.raises(UnknownArchitecture):
        await get_adapter(request, alice, dry_executor).validate()


@pytest.mark.asyncio
async def test_chroot_validation_in_dry_run(make_request, alice, dry_executor):
    request = make_request(share_devices=True, arch="i686")
    await get_adapter(request, alice, dry_executor).validate()


def test_chroot_command_structure(make_request, alice, dry_executor, result, root_dir):
    adapter = ChrootAdapter(make_request(command=("id", "-u")), alice, dry_executor)
    argv = list(adapter.build_command(result))
    assert argv[:9] == [
        "unshare",
        "--mount",
        "--pid",
        "--fork",
        "--propagation",
        "private",
        "sh",
        "-e",
        "-c",
    ]

    lines = script_lines(argv)
    root = str(root_dir.resolve())
    assert lines[-1] == [
        "exec",
        "chroot",
        "--userspec=1000:1000",
        root,
        "/usr/bin/env",
        "-i",
        "HOME=/home/alice",
        "XDG_RUNTIME_DIR=/run/user/1000",
        "/bin/sh",
        "-c",
        IN_HOME_SCRIPT,
        "sh",
        "id",
        "-u",
    ]


def test_chroot_mount_order(make_request, alice, dry_executor, result, root_dir, tmp_path):
    """Test proc comes before dev and binds land after the runtime dir"""
    agent = tmp_path / "agent.sock"
    agent.write_text("")
    result.bind(agent, "/run/user/1000/ssh-agent")
    x11 = tmp_path / "x11"
    x11.mkdir()
    result.bind(x11, "/tmp/.X11-unix")

    lines = script_lines(ChrootAdapter(make_request(), alice, dry_executor).build_command(result))
    root = str(root_dir.resolve())

    def index(predicate):
        return next(i for i, line in enumerate(lines) if predicate(line))

    proc = index(lambda l: l[:4] == ["mount", "-t", "proc", "proc"])
    dev = index(lambda l: l[-1] == f"{root}/dev" and l[0] == "mount")
    sysfs = index(lambda l: l[-1] == f"{root}/sys" and l[0] == "mount")
    runtime = index(lambda l: l[:2] == ["mount", "--rbind"])
    agent_bind = index(lambda l: l[:3] == ["mount", "--bind", str(agent)])
    x11_bind = index(lambda l: l[:3] == ["mount", "--bind", str(x11)])

    assert agent_bind < proc < dev < sysfs < runtime < x11_bind
    # the agent socket goes into the host side of the runtime dir
    assert lines[agent_bind][-1] == str(result.runtime_dir.host_path / "ssh-agent")
    assert lines[runtime][-2:] == [str(result.runtime_dir.host_path), f"{root}/run/user/1000"]
    assert lines[x11_bind][-1] == f"{root}/tmp/.X11-unix"


def test_chroot_minimal_devices(make_request, alice, dry_executor, result, root_dir):
    lines = script_lines(ChrootAdapter(make_request(), alice, dry_executor).build_command(result))
    dev = f"{root_dir.resolve()}/dev"

    nodes = {l[3]: l for l in lines if l[0] == "mknod"}
    assert set(nodes) == {f"{dev}/{n.name}" for n in MINIMAL_DEVICES}
    assert nodes[f"{dev}/null"] == ["mknod", "-m", "666", f"{dev}/null", "c", "1", "3"]
    assert nodes[f"{dev}/console"][2] == "600"
    assert ["ln", "-s", "pts/ptmx", f"{dev}/ptmx"] in lines
    assert ["ln", "-s", "/proc/self/fd/2", f"{dev}/stderr"] in lines
    assert any(l[:3] == ["mount", "-t", "devpts"] for l in lines)
    assert not any(l[:2] == ["mount", "--rbind"] and l[2] == "/dev" for l in lines)


def test_chroot_shared_devices(make_request, alice, dry_executor, result, root_dir):
    adapter = ChrootAdapter(make_request(share_devices=True), alice, dry_executor)
    lines = script_lines(adapter.build_command(result))
    root = str(root_dir.resolve())

    assert ["mount", "--rbind", "/dev", f"{root}/dev"] in lines
    assert ["mount", "--make-rslave", f"{root}/sys"] in lines
    assert not any(l[0] == "mknod" for l in lines)


def test_chroot_personality(make_request, alice, dry_executor, result):
    adapter = ChrootAdapter(make_request(arch="i686"), alice, dry_executor)
    argv = list(adapter.build_command(result))
    assert argv[:3] == ["setarch", "linux32", "unshare"]
    assert "setarch" in adapter.required_tools()


def test_chroot_interactive_login_shell(make_request, alice, dry_executor, result):
    adapter = ChrootAdapter(make_request(backend_args=("--groups=audio",)), alice, dry_executor)
    exec_line = script_lines(adapter.build_command(result))[-1]
    assert exec_line[-3:] == ["/bin/sh", "-c", LOGIN_SHELL_SCRIPT]
    assert exec_line.index("--groups=audio") < exec_line.index("/usr/bin/env")


def test_chroot_file_bind_prepares_target(make_request, alice, dry_executor, result, tmp_path):
    adapter = ChrootAdapter(make_request(), alice, dry_executor)
    source = tmp_path / "cookie"
    source.write_text("")
    target = f"{adapter.root}/etc/cookie"
    bind = BindDeclaration(source, "/etc/cookie")
    cmds = [list(c) for c in adapter.translate_bind(bind, result)]
    assert cmds == [
        ["mkdir", "-p", f"{adapter.root}/etc"],
        ["touch", target],
        ["mount", "--bind", str(source), target],
    ]


def test_chroot_setup_steps_exit_with_setup_status(make_request, alice, dry_executor, result):
    argv = list(ChrootAdapter(make_request(), alice, dry_executor).build_command(result))
    script = argv[argv.index("-c") + 1].splitlines()
    assert all(line.endswith(" || exit 125") for line in script[:-1])
    assert script[-1].startswith("exec chroot")


@pytest.mark.asyncio
async def test_chroot_setup_failure_is_mount_error(
    make_request, alice, dry_executor, result, monkeypatch
):
    async def failed_setup(cmd, **kwargs):
        return ExecResult(125)

    monkeypatch.setattr(dry_executor, "run", failed_setup)
    with pytest.raises(MountError) as exc:
        await ChrootAdapter(make_request(), alice, dry_executor).run(result)
    assert exc.value.status == 125


def test_nspawn_command(make_request, alice, dry_executor, result, root_dir, tmp_path):
    result.bind(Path("/tmp/a:b"), "/mnt/a:b")
    request = make_request(backend=Backend.NSPAWN, backend_args=("--private-network",))
    argv = list(NspawnAdapter(request, alice, dry_executor).build_command(result))

    assert argv == [
        "systemd-nspawn",
        "--quiet",
        f"--directory={root_dir.resolve()}",
        "--user=alice",
        "--setenv=HOME=/home/alice",
        "--setenv=XDG_RUNTIME_DIR=/run/user/1000",
        "--bind=/tmp/a\\:b:/mnt/a\\:b",
        "--chdir=/home/alice",
        "--private-network",
        "--",
        "/bin/sh",
        "-c",
        LOGIN_SHELL_SCRIPT,
    ]


def test_nspawn_personality(make_request, alice, dry_executor, result):
    request = make_request(backend=Backend.NSPAWN, arch="x86", command=("uname", "-m"))
    argv = list(NspawnAdapter(request, alice, dry_executor).build_command(result))
    assert "--personality=x86" in argv
    assert "--chdir=/home/alice" not in argv
    assert argv[-3:] == ["--", "uname", "-m"]


def test_nspawn_personality_without_native_flag(make_request, alice, dry_executor, result):
    request = make_request(backend=Backend.NSPAWN, arch="armhf")
    argv = list(NspawnAdapter(request, alice, dry_executor).build_command(result))
    assert argv[:3] == ["setarch", "linux32", "systemd-nspawn"]
    assert not any(a.startswith("--personality") for a in argv)


def test_docker_interactive(make_request, alice, dry_executor, result, tmp_path):
    result.bind(tmp_path, "/home/alice")
    request = make_request(backend=Backend.DOCKER, root="debian:stable", arch="arm64")
    argv = list(DockerAdapter(request, alice, dry_executor).build_command(result))

    assert argv == [
        "docker",
        "run",
        "--rm",
        "-i",
        "-t",
        "--user=1000:1000",
        "--workdir=/home/alice",
        "--env=HOME=/home/alice",
        "--env=XDG_RUNTIME_DIR=/run/user/1000",
        f"--volume={tmp_path}:/home/alice",
        "--platform=linux/arm64",
        "debian:stable",
        "/bin/sh",
        "-c",
        LOGIN_SHELL_SCRIPT,
    ]


def test_docker_with_command(make_request, dry_executor, result):
    bob = ResolvedUser("bob", "/home/bob", "/bin/sh")
    request = make_request(
        backend=Backend.DOCKER,
        root="alpine",
        user="bob",
        command=("ls", "/"),
        backend_args=("--network=none",),
    )
    argv = list(DockerAdapter(request, bob, dry_executor).build_command(result))

    assert "-i" not in argv and "-t" not in argv
    assert not any(a.startswith("--workdir") for a in argv)
    assert "--user=bob" in argv
    assert argv[-4:] == ["--network=none", "alpine", "ls", "/"]


@pytest.mark.asyncio
async def test_docker_missing_image(make_request, alice, settings, monkeypatch):
    executor = Executor(settings, euid=0)
    adapter = DockerAdapter(make_request(backend=Backend.DOCKER, root="nope"), alice, executor)
    monkeypatch.setattr("rootspawn.backends.base.require_tool", lambda name: name)

    async def missing():
        return False

    monkeypatch.setattr(adapter, "image_exists", missing)
    with pytest.raises(MissingImage):
        await adapter.validate()
