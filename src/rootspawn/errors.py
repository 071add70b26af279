"""Error types for rootspawn."""
from typing import Any, Dict, Optional

from rootspawn.logging import get_logger

logger = get_logger(__name__)

GENERIC_FAILURE = 2


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
) -> None:
    """Log an error with context."""
    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, SpawnError):
        error_info["status"] = error.status
        error_info["details"] = error.details

    logger.debug("spawn_error", **error_info)


class SpawnError(Exception):
    """Base error class for rootspawn."""

    def __init__(
        self,
        message: str,
        status: int = GENERIC_FAILURE,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.details = details or {}


# Configuration errors


class ConfigurationError(SpawnError):
    """Invalid combination of options or missing host tooling."""


class UnknownArchitecture(ConfigurationError):
    def __init__(self, arch: str):
        super().__init__(f"Unknown architecture: {arch}", details={"arch": arch})


class MissingTool(ConfigurationError):
    def __init__(self, tool: str):
        super().__init__(f"Required tool {tool} not found in PATH", details={"tool": tool})


class ConflictingOptions(ConfigurationError):
    pass


# Validation errors


class ValidationError(SpawnError):
    """The request refers to something that does not exist or has the wrong type."""


class MissingRoot(ValidationError):
    def __init__(self, root: str):
        super().__init__(f"Root directory {root} does not exist", details={"root": root})


class UnsafeRoot(ValidationError):
    def __init__(self, root: str):
        super().__init__(
            f"Refusing to use {root} as a root: it resolves to the host root directory",
            details={"root": root},
        )


class MissingImage(ValidationError):
    def __init__(self, image: str):
        super().__init__(f"Container image {image} not found", details={"image": image})


class MissingPasswdRecord(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"No passwd file at {path}", details={"path": path})


class UnknownUser(ValidationError):
    def __init__(self, user: str, root: Optional[str] = None):
        where = f" in {root}" if root else ""
        super().__init__(f"Unknown user {user}{where}", details={"user": user, "root": root})


class MissingPasswdField(ValidationError):
    def __init__(self, user: str, field: str):
        super().__init__(
            f"passwd entry for {user} has no usable {field} field",
            details={"user": user, "field": field},
        )


class UnsupportedFieldForManagedContainer(ValidationError):
    def __init__(self, user: str, field: str):
        super().__init__(
            f"Cannot determine {field} of {user} before the container starts",
            details={"user": user, "field": field},
        )


class MissingSshAgent(ValidationError):
    def __init__(self):
        super().__init__("SSH_AUTH_SOCK is not set, no ssh agent to share")


class NotASocket(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"{path} is not a socket", details={"path": path})


class MissingDisplay(ValidationError):
    def __init__(self):
        super().__init__("DISPLAY is not set, no X server to share")


class MissingX11Socket(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"X11 socket directory {path} does not exist", details={"path": path})


class MissingPulseSocket(ValidationError):
    def __init__(self, path: Optional[str]):
        msg = (
            f"PulseAudio socket {path} does not exist"
            if path
            else "Could not determine the PulseAudio socket"
        )
        super().__init__(msg, details={"path": path})


class MissingPulseCookie(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"PulseAudio cookie {path} does not exist", details={"path": path})


class MissingHomeSource(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"Home directory {path} does not exist", details={"path": path})


# Execution errors


class PrivilegeError(SpawnError):
    """A command run through the escalation point failed."""

    def __init__(self, argv: list[str], status: int, stderr: str = ""):
        message = f"Command failed with status {status}: {' '.join(argv)}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(
            message,
            status=status or GENERIC_FAILURE,
            details={"argv": argv, "stderr": stderr},
        )


class MountError(SpawnError):
    """Building the root filesystem failed."""


class LockError(SpawnError):
    pass


class RootLocked(LockError):
    def __init__(self, root: str, lock_path: str):
        super().__init__(
            f"{root} is locked by another instance (remove {lock_path} if stale)",
            details={"root": root, "lock_path": lock_path},
        )


class CommandFailed(SpawnError):
    """The spawned command exited with a non-zero status."""

    def __init__(self, status: int):
        super().__init__(f"Command exited with status {status}", status=status)
