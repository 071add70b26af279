"""systemd-nspawn backend."""
from rootspawn.backends.base import BackendAdapter, login_shell
from rootspawn.types import BindDeclaration, Command, EnvironmentBuildResult, EnvVar


def _escape_bind_path(path: str) -> str:
    # nspawn splits --bind on colons
    return path.replace(":", "\\:")


class NspawnAdapter(BackendAdapter):
    def required_tools(self) -> list[str]:
        tools = [self.settings.nspawn_command]
        if self.personality is not None and self.personality.nspawn is None:
            tools.append(self.settings.setarch_command)
        return tools

    def translate_env(self, env: list[EnvVar]) -> list[str]:
        return [f"--setenv={e}" for e in env]

    def translate_bind(self, bind: BindDeclaration, result: EnvironmentBuildResult) -> list[str]:
        return [f"--bind={_escape_bind_path(str(bind.source))}:{_escape_bind_path(bind.dest)}"]

    def build_command(self, result: EnvironmentBuildResult) -> Command:
        args = [
            self.settings.nspawn_command,
            "--quiet",
            f"--directory={self.request.root_dir}",
            f"--user={self.user.name}",
        ]
        args.extend(self.translate_env(result.env))
        for bind in result.binds:
            args.extend(self.translate_bind(bind, result))

        personality = self.personality
        if personality is not None and personality.nspawn is not None:
            args.append(f"--personality={personality.nspawn}")
        if self.request.interactive:
            args.append(f"--chdir={self.user.home}")

        args.extend(self.request.backend_args)
        args.append("--")
        args.extend(self.request.command or login_shell())

        cmd = Command(*args)
        if personality is not None and personality.nspawn is None:
            cmd = cmd.wrap(self.settings.setarch_command, personality.setarch)
        return cmd
