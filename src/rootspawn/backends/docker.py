"""Docker backend."""
from rootspawn.backends.base import BackendAdapter, login_shell
from rootspawn.errors import MissingImage
from rootspawn.logging import get_logger
from rootspawn.privileged import probe
from rootspawn.types import BindDeclaration, Command, EnvironmentBuildResult, EnvVar

logger = get_logger(__name__)


class DockerAdapter(BackendAdapter):
    def required_tools(self) -> list[str]:
        return [self.settings.docker_command]

    async def image_exists(self) -> bool:
        result = await probe(
            *self.executor.argv_for([self.settings.docker_command, "image", "inspect", self.request.root]),
        )
        return result.returncode == 0

    async def validate(self) -> None:
        await super().validate()
        if not self.executor.dry_run and not await self.image_exists():
            raise MissingImage(self.request.root)

    def user_spec(self) -> str:
        # unknown users are resolved by the engine when the container starts
        if self.user.has_ids:
            return f"{self.user.uid}:{self.user.gid}"
        return self.user.name

    def translate_env(self, env: list[EnvVar]) -> list[str]:
        return [f"--env={e}" for e in env]

    def translate_bind(self, bind: BindDeclaration, result: EnvironmentBuildResult) -> list[str]:
        return [f"--volume={bind.source}:{bind.dest}"]

    def build_command(self, result: EnvironmentBuildResult) -> Command:
        args = [self.settings.docker_command, "run", "--rm"]
        if self.request.interactive:
            args.extend(["-i", "-t"])
        args.append(f"--user={self.user_spec()}")
        if self.request.interactive:
            args.append(f"--workdir={self.user.home}")
        args.extend(self.translate_env(result.env))
        for bind in result.binds:
            args.extend(self.translate_bind(bind, result))
        if self.personality is not None:
            args.append(f"--platform={self.personality.docker}")
        args.extend(self.request.backend_args)
        args.append(self.request.root)
        args.extend(self.request.command or login_shell())
        return Command(*args)
