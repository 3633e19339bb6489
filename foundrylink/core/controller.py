"""Install, start and load models on Foundry Local."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx

from foundrylink.core.errors import (
    CommandFailedError,
    FoundryError,
    InstallError,
    ModelLoadError,
    ParseError,
    StartError,
    StartTimeoutError,
)
from foundrylink.core.parser import extract_endpoint, parse_model_list
from foundrylink.utils.log import get_logger
from foundrylink.utils.platform import Platform
from foundrylink.utils.process import CommandResult, CommandRunner, describe_failure, run_command


logger = get_logger()

ReadyCheck = Callable[[], Awaitable[bool]]

WINGET_INSTALL_COMMAND = [
    "winget",
    "install",
    "Microsoft.FoundryLocal",
    "--accept-source-agreements",
    "--accept-package-agreements",
]
BREW_INSTALL_COMMAND = ["brew", "install", "microsoft/foundrylocal/foundrylocal"]
UNKNOWN_VERSION = "unknown"
HTTP_PROBE_TIMEOUT_SECONDS = 2.0


def platform_installer_command() -> Optional[List[str]]:
    """Installer argv for the current OS, or None where Foundry Local has none."""
    system = Platform.get_system()
    if system == "windows":
        return list(WINGET_INSTALL_COMMAND)
    if system == "macos":
        return list(BREW_INSTALL_COMMAND)
    return None


async def http_endpoint_ready(endpoint_url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> bool:
    """True once the OpenAI-compatible listener answers `<endpoint>/models`."""
    url = endpoint_url.rstrip("/") + "/models"
    try:
        async with httpx.AsyncClient(timeout=HTTP_PROBE_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        logger.debug("[controller] Endpoint not ready yet: %s", exc, extra={"url": url})
        return False
    except Exception as exc:  # noqa: BLE001 - malformed ports surface as OverflowError/ExceptionGroup
        logger.warning(
            "[controller] Endpoint could not be probed: %s: %s",
            type(exc).__name__,
            exc,
            extra={"url": url},
        )
        return False
    return response.status_code < 500


class ServiceController:
    """Side-effecting operations on the external service.

    Each operation is idempotent on the Foundry side and may be retried.
    """

    def __init__(
        self,
        executable: str,
        *,
        command_timeout: float = 30.0,
        install_timeout: float = 900.0,
        model_load_timeout: float = 600.0,
        ready_timeout: float = 30.0,
        ready_poll_interval: float = 0.5,
        installer_command: Optional[Sequence[str]] = None,
        runner: CommandRunner = run_command,
        ready_check: Optional[ReadyCheck] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.executable = executable
        self.command_timeout = command_timeout
        self.install_timeout = install_timeout
        self.model_load_timeout = model_load_timeout
        self.ready_timeout = ready_timeout
        self.ready_poll_interval = ready_poll_interval
        self.installer_command = list(installer_command) if installer_command else None
        self._run = runner
        self._ready_check = ready_check or self._default_ready_check
        self._http_transport = http_transport

    async def _invoke(self, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        return await self._run([self.executable, *args], timeout or self.command_timeout)

    async def install(self) -> str:
        """Run the platform installer and return the installed version.

        Only call after the user explicitly confirmed the installation.
        """
        command = self.installer_command or platform_installer_command()
        if not command:
            raise InstallError(
                f"No Foundry Local installer is available for {Platform.get_system()}; "
                "install it manually."
            )

        logger.info("[controller] Installing Foundry Local", extra={"command": command})
        try:
            result = await self._run(command, self.install_timeout)
        except CommandFailedError as exc:
            raise InstallError(f"Foundry Local installer failed: {exc}") from exc
        if not result.ok:
            raise InstallError(f"Foundry Local installer failed: {describe_failure(result)}")

        version = await self.installed_version()
        logger.info("[controller] Foundry Local installed", extra={"version": version})
        return version

    async def installed_version(self) -> str:
        try:
            result = await self._invoke(["--version"])
        except CommandFailedError as exc:
            logger.warning("[controller] Could not read Foundry version: %s", exc)
            return UNKNOWN_VERSION
        if not result.ok:
            return UNKNOWN_VERSION
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return UNKNOWN_VERSION

    async def start(self) -> None:
        """Start the service and wait until its HTTP listener is ready."""
        logger.info("[controller] Attempting to start Foundry service...")
        try:
            result = await self._invoke(["service", "start"])
        except CommandFailedError as exc:
            raise StartError(f"Failed to start Foundry service: {exc}", stderr=exc.stderr) from exc
        if not result.ok:
            raise StartError(
                f"Failed to start Foundry service: {describe_failure(result)}",
                stderr=result.stderr,
            )
        logger.debug("[controller] Foundry service start output", extra={"stdout": result.stdout})
        await self.wait_until_ready()
        logger.info("[controller] Foundry service is ready")

    async def wait_until_ready(self) -> None:
        """Poll readiness until it succeeds or `ready_timeout` elapses."""
        deadline = time.monotonic() + self.ready_timeout
        attempts = 0
        while True:
            attempts += 1
            try:
                if await self._ready_check():
                    return
            except FoundryError as exc:
                logger.debug("[controller] Readiness check failed: %s", exc, extra={"attempt": attempts})
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.ready_poll_interval, remaining))
        raise StartTimeoutError(
            f"Foundry service did not become ready within {self.ready_timeout:g}s "
            f"({attempts} checks)"
        )

    async def _default_ready_check(self) -> bool:
        result = await self._invoke(["service", "list"])
        if not result.ok:
            return False
        try:
            endpoint = extract_endpoint(result.stdout)
        except ParseError:
            return False
        return await http_endpoint_ready(endpoint, transport=self._http_transport)

    async def load_model(self, model_id: str) -> None:
        """`foundry model run <model_id> --retain`; failures are soft for callers."""
        logger.info("[controller] Attempting to run Foundry model '%s'...", model_id)
        try:
            result = await self._invoke(["model", "run", model_id, "--retain"], self.model_load_timeout)
        except CommandFailedError as exc:
            raise ModelLoadError(f"Failed to run Foundry model '{model_id}': {exc}") from exc
        if not result.ok:
            raise ModelLoadError(f"Failed to run Foundry model '{model_id}': {describe_failure(result)}")
        logger.info("[controller] Foundry model '%s' run command executed", model_id)

    async def list_models(self) -> List[str]:
        result = await self._invoke(["model", "list"])
        if not result.ok:
            raise CommandFailedError(
                f"Foundry 'model list' command failed: {describe_failure(result)}",
                args=result.args,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.debug("[controller] Foundry model list output", extra={"stdout": result.stdout})
        return parse_model_list(result.stdout)


__all__ = [
    "ServiceController",
    "http_endpoint_ready",
    "platform_installer_command",
]
