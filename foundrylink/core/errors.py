"""Error types for foundrylink.

Every failure this package reports derives from `FoundryError`, so host
applications can turn any of them into a user-facing message with `str()`.
"""

from typing import Optional, Sequence


class FoundryError(Exception):
    """Base exception for all foundrylink errors."""

    def __str__(self) -> str:
        return self.args[0] if self.args else "An error occurred in the Foundry integration"


class NotInstalledError(FoundryError):
    """Raised when Foundry Local is not installed."""


class CommandFailedError(FoundryError):
    """Raised when a `foundry` invocation fails."""

    def __init__(
        self,
        message: str,
        args: Sequence[str] = (),
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr


class CommandNotFoundError(CommandFailedError):
    """Raised when the executable cannot be spawned at all."""


class CommandTimeoutError(CommandFailedError):
    """Raised when a process exceeds its timeout and is killed."""

    def __init__(self, message: str, args: Sequence[str] = (), timeout: float = 0.0):
        super().__init__(message, args=args)
        self.timeout = timeout


class InstallError(FoundryError):
    """Raised when the platform installer fails."""


class StartError(FoundryError):
    """Raised when `foundry service start` fails."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class StartTimeoutError(StartError):
    """Raised when the service never became ready after starting."""


class ModelLoadError(FoundryError):
    """Raised when `foundry model run` fails. Callers may log and continue."""

    soft = True


class ParseError(FoundryError):
    """Raised when CLI output does not contain the expected information."""


class EndpointNotFoundError(ParseError):
    pass


class ModelIdNotFoundError(ParseError):
    pass


class ConfigError(FoundryError):
    """Raised when the shared settings document cannot be synchronized."""


class ConfigReadError(ConfigError):
    pass


class ConfigSchemaError(ConfigError):
    pass


class ConfigWriteError(ConfigError):
    pass


__all__ = [
    "FoundryError",
    "NotInstalledError",
    "CommandFailedError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "InstallError",
    "StartError",
    "StartTimeoutError",
    "ModelLoadError",
    "ParseError",
    "EndpointNotFoundError",
    "ModelIdNotFoundError",
    "ConfigError",
    "ConfigReadError",
    "ConfigSchemaError",
    "ConfigWriteError",
]
