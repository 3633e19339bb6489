"""Point-in-time status of the Foundry Local service."""

from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

from foundrylink.core.errors import CommandFailedError, CommandNotFoundError, ParseError
from foundrylink.core.parser import ParsedServiceInfo, extract_endpoint, extract_model_id, parse_service_info
from foundrylink.utils.log import get_logger
from foundrylink.utils.process import CommandResult, CommandRunner, describe_failure, run_command


logger = get_logger()

_RUNNING_MARKERS = ("localhost:", "Service running")
_NOT_RUNNING_MARKERS = ("service is not running", "not responding")


class ServiceStatus(BaseModel):
    """Snapshot produced by every probe; replaced wholesale, never mutated."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    installed: bool = False
    running: bool = False
    endpoint_url: Optional[str] = None
    model_id: Optional[str] = None
    model_cached: bool = False

    @model_validator(mode="after")
    def _check_consistency(self) -> "ServiceStatus":
        if not self.running and (self.endpoint_url is not None or self.model_id is not None):
            raise ValueError("endpoint_url and model_id require running=True")
        if self.running and not self.installed:
            raise ValueError("running requires installed=True")
        if self.model_cached and not self.installed:
            raise ValueError("model_cached requires installed=True")
        return self

    @classmethod
    def conservative(cls) -> "ServiceStatus":
        return cls()


class StatusProbe:
    """Determines installed/running/model-cached state by invoking the CLI."""

    def __init__(
        self,
        executable: str,
        default_model: str,
        *,
        timeout: float = 30.0,
        runner: CommandRunner = run_command,
    ) -> None:
        self.executable = executable
        self.default_model = default_model
        self.timeout = timeout
        self._run = runner

    async def _invoke(self, *args: str) -> CommandResult:
        return await self._run([self.executable, *args], self.timeout)

    async def is_installed(self) -> bool:
        try:
            result = await self._invoke("--help")
        except CommandNotFoundError as exc:
            logger.debug("[status] Foundry executable not found: %s", exc)
            return False
        except CommandFailedError as exc:
            logger.warning("[status] Foundry install check failed: %s", exc)
            return False
        return result.ok

    async def is_running(self) -> Tuple[bool, str]:
        """Return (running, service list output). Never raises."""
        try:
            result = await self._invoke("service", "list")
        except CommandFailedError as exc:
            logger.warning("[status] Failed to check Foundry service running status: %s", exc)
            return False, ""

        if not result.ok:
            if any(marker in result.stderr for marker in _NOT_RUNNING_MARKERS):
                return False, result.stdout
            logger.warning(
                "[status] Foundry 'service list' command failed: %s",
                describe_failure(result),
                extra={"returncode": result.returncode},
            )
            return False, result.stdout

        running = any(marker in result.stdout for marker in _RUNNING_MARKERS)
        return running, result.stdout

    async def is_model_cached(self, model_id: Optional[str] = None) -> bool:
        target = model_id or self.default_model
        try:
            result = await self._invoke("model", "list")
        except CommandFailedError as exc:
            logger.warning("[status] Failed to list Foundry models: %s", exc)
            return False
        if not result.ok:
            logger.warning(
                "[status] Foundry 'model list' command failed: %s",
                describe_failure(result),
            )
            return False
        return target in result.stdout

    async def get_endpoint_info(self) -> ParsedServiceInfo:
        """Discover endpoint and model id from `foundry service list`.

        Raises:
            CommandFailedError: the command failed, timed out or could not run.
            ParseError: the output lacked an endpoint or model id.
        """
        result = await self._invoke("service", "list")
        if not result.ok:
            raise CommandFailedError(
                f"Foundry 'service list' command failed: {describe_failure(result)}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.debug("[status] Foundry service list output", extra={"stdout": result.stdout})
        return parse_service_info(result.stdout)

    async def probe(self) -> ServiceStatus:
        """Build a fresh ServiceStatus. Errors collapse to the conservative answer."""
        if not await self.is_installed():
            return ServiceStatus.conservative()

        running, output = await self.is_running()
        endpoint_url: Optional[str] = None
        model_id: Optional[str] = None
        if running:
            try:
                endpoint_url = extract_endpoint(output)
            except ParseError as exc:
                logger.warning("[status] Failed to get Foundry endpoint url: %s", exc)
            try:
                model_id = extract_model_id(output)
            except ParseError as exc:
                logger.warning("[status] Failed to get Foundry model id: %s", exc)

        model_cached = await self.is_model_cached()
        status = ServiceStatus(
            installed=True,
            running=running,
            endpoint_url=endpoint_url,
            model_id=model_id,
            model_cached=model_cached,
        )
        logger.debug("[status] Probed Foundry status", extra=status.model_dump())
        return status


__all__ = ["ServiceStatus", "StatusProbe"]
