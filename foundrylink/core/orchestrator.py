"""Bring Foundry Local to a synced state and expose host-facing commands.

`StartupOrchestrator.run()` is the launch-time sequence: probe, start,
load the default model, re-probe and synchronize. It never raises; outcomes
are reported through logs and `snapshot()`. The remaining public coroutines
back the user-triggered commands and do raise typed `FoundryError`s.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
import time
from enum import Enum
from typing import Any, Coroutine, List, Optional

from pydantic import BaseModel, ConfigDict

from foundrylink.core.config import IntegrationConfig
from foundrylink.core.controller import ServiceController
from foundrylink.core.errors import (
    CommandFailedError,
    ConfigError,
    FoundryError,
    InstallError,
    ModelLoadError,
    NotInstalledError,
    ParseError,
    StartError,
)
from foundrylink.core.parser import ParsedServiceInfo
from foundrylink.core.settings_sync import SettingsSynchronizer
from foundrylink.core.status import ServiceStatus, StatusProbe
from foundrylink.utils.log import get_logger
from foundrylink.utils.process import CommandRunner, run_command


logger = get_logger()


class OrchestrationState(str, Enum):
    IDLE = "idle"
    NOT_INSTALLED = "not_installed"
    INSTALLED_NOT_RUNNING = "installed_not_running"
    STARTING = "starting"
    RUNNING = "running"
    MODEL_LOADING = "model_loading"
    MODEL_READY = "model_ready"
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"


class OrchestratorActivity(str, Enum):
    """What the backend is busy with; clients project their busy state from this."""

    IDLE = "idle"
    ORCHESTRATING = "orchestrating"
    INSTALLING = "installing"
    CONFIGURING = "configuring"


class OrchestrationSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: OrchestrationState
    activity: OrchestratorActivity
    last_error: Optional[str] = None
    updated_at: float


class FoundryConfig(BaseModel):
    """Result of a successful start + configure."""

    endpoint_url: str
    model_id: str


class StartupOrchestrator:
    def __init__(
        self,
        probe: StatusProbe,
        controller: ServiceController,
        synchronizer: SettingsSynchronizer,
        default_model: str,
    ) -> None:
        self.probe = probe
        self.controller = controller
        self.synchronizer = synchronizer
        self.default_model = default_model
        self._state = OrchestrationState.IDLE
        self._activity = OrchestratorActivity.IDLE
        self._last_error: Optional[str] = None
        self._updated_at = time.time()
        # One run or user action at a time keeps probe -> start -> load -> sync strictly ordered.
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: IntegrationConfig,
        *,
        runner: CommandRunner = run_command,
    ) -> "StartupOrchestrator":
        probe = StatusProbe(
            config.executable,
            config.default_model,
            timeout=config.command_timeout_seconds,
            runner=runner,
        )
        controller = ServiceController(
            config.executable,
            command_timeout=config.command_timeout_seconds,
            install_timeout=config.install_timeout_seconds,
            model_load_timeout=config.model_load_timeout_seconds,
            ready_timeout=config.start_ready_timeout_seconds,
            ready_poll_interval=config.ready_poll_interval_seconds,
            installer_command=config.installer_command,
            runner=runner,
        )
        return cls(probe, controller, SettingsSynchronizer(config.settings_path), config.default_model)

    @property
    def state(self) -> OrchestrationState:
        return self._state

    def snapshot(self) -> OrchestrationSnapshot:
        return OrchestrationSnapshot(
            state=self._state,
            activity=self._activity,
            last_error=self._last_error,
            updated_at=self._updated_at,
        )

    def _transition(self, state: OrchestrationState) -> None:
        if state != self._state:
            logger.debug(
                "[orchestrator] State change",
                extra={"from_state": self._state.value, "to_state": state.value},
            )
        self._state = state
        self._updated_at = time.time()

    def _record_error(self, exc: BaseException) -> None:
        self._last_error = str(exc)
        self._updated_at = time.time()

    # Launch-time sequence

    def launch(self) -> "asyncio.Task[OrchestrationState]":
        """Schedule `run()` as an independent task on the running loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(self.run(), name="foundrylink-startup")
        return self._task

    async def run(self) -> OrchestrationState:
        """Run the full integration sequence. Never raises."""
        async with self._lock:
            self._activity = OrchestratorActivity.ORCHESTRATING
            self._last_error = None
            try:
                await self._run_sequence()
            except FoundryError as exc:
                logger.warning("[orchestrator] Foundry integration did not complete: %s", exc)
                self._record_error(exc)
            except Exception as exc:  # noqa: BLE001 - startup integration must not take the host down
                logger.warning(
                    "[orchestrator] Unexpected error during Foundry integration: %s: %s",
                    type(exc).__name__,
                    exc,
                    exc_info=exc,
                )
                self._record_error(exc)
            finally:
                self._activity = OrchestratorActivity.IDLE
            logger.info("[orchestrator] Foundry integration finished", extra={"state": self._state.value})
            return self._state

    async def _run_sequence(self) -> None:
        status = await self.probe.probe()
        if not status.installed:
            logger.info("[orchestrator] Foundry Local is not installed; skipping integration")
            self._transition(OrchestrationState.NOT_INSTALLED)
            return

        if not status.running:
            self._transition(OrchestrationState.INSTALLED_NOT_RUNNING)
            try:
                await self._start_service()
            except StartError as exc:
                logger.warning("[orchestrator] Failed to start Foundry service: %s", exc)
                self._record_error(exc)
                return
        self._transition(OrchestrationState.RUNNING)

        await self._load_default_model()

        try:
            info = await self.probe.get_endpoint_info()
            await self._synchronize(info)
        except (CommandFailedError, ParseError, ConfigError) as exc:
            logger.warning("[orchestrator] Foundry settings synchronization failed: %s", exc)
            self._record_error(exc)
            self._transition(OrchestrationState.SYNC_FAILED)
            return
        self._transition(OrchestrationState.SYNCED)

    async def _start_service(self) -> None:
        self._transition(OrchestrationState.STARTING)
        try:
            await self.controller.start()
        except StartError:
            self._transition(OrchestrationState.INSTALLED_NOT_RUNNING)
            raise

    async def _load_default_model(self) -> None:
        self._transition(OrchestrationState.MODEL_LOADING)
        try:
            await self.controller.load_model(self.default_model)
        except ModelLoadError as exc:
            # The model may already be loaded under another alias; keep going.
            logger.warning(
                "[orchestrator] Failed to run default Foundry model '%s': %s",
                self.default_model,
                exc,
            )
        self._transition(OrchestrationState.MODEL_READY)

    async def _synchronize(self, info: ParsedServiceInfo) -> None:
        await asyncio.to_thread(self.synchronizer.synchronize, info.endpoint_url, info.model_id)

    # Host commands

    async def get_status(self) -> ServiceStatus:
        return await self.probe.probe()

    async def install(self) -> str:
        """Install Foundry Local. The caller must have obtained user confirmation."""
        async with self._lock:
            self._activity = OrchestratorActivity.INSTALLING
            try:
                version = await self.controller.install()
            except InstallError as exc:
                self._record_error(exc)
                raise
            finally:
                self._activity = OrchestratorActivity.IDLE
            self._last_error = None
            self._transition(OrchestrationState.INSTALLED_NOT_RUNNING)
            return version

    async def start_and_configure(self) -> FoundryConfig:
        """Start the service if needed, load the default model and synchronize settings."""
        async with self._lock:
            self._activity = OrchestratorActivity.CONFIGURING
            try:
                config = await self._start_and_configure()
            except FoundryError as exc:
                self._record_error(exc)
                raise
            finally:
                self._activity = OrchestratorActivity.IDLE
            self._last_error = None
            return config

    async def _start_and_configure(self) -> FoundryConfig:
        if not await self.probe.is_installed():
            self._transition(OrchestrationState.NOT_INSTALLED)
            raise NotInstalledError("Foundry Local is not installed.")

        running, _ = await self.probe.is_running()
        if not running:
            self._transition(OrchestrationState.INSTALLED_NOT_RUNNING)
            await self._start_service()
            logger.info("[orchestrator] Foundry service started via command")
        self._transition(OrchestrationState.RUNNING)

        await self._load_default_model()

        try:
            info = await self.probe.get_endpoint_info()
            await self._synchronize(info)
        except (CommandFailedError, ParseError, ConfigError):
            self._transition(OrchestrationState.SYNC_FAILED)
            raise
        self._transition(OrchestrationState.SYNCED)
        return FoundryConfig(endpoint_url=info.endpoint_url, model_id=info.model_id)

    async def run_model(self, model_name: str) -> None:
        await self.controller.load_model(model_name)

    async def list_models(self) -> List[str]:
        return await self.controller.list_models()


class BackgroundLoop:
    """A dedicated event loop thread for hosts whose UI thread is not asyncio."""

    def __init__(self, name: str = "foundrylink-loop") -> None:
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop and self._loop.is_running():
            return self._loop

        with self._lock:
            if self._loop and self._loop.is_running():
                return self._loop

            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run_loop() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()

            thread = threading.Thread(target=_run_loop, name=self._name, daemon=True)
            thread.start()
            ready.wait()
            self._loop = loop
            self._thread = thread
            return loop

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Run a coroutine on the background loop and return a thread-safe future."""
        return asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None:
            return
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=timeout)
        if not loop.is_running():
            loop.close()


__all__ = [
    "BackgroundLoop",
    "FoundryConfig",
    "OrchestrationSnapshot",
    "OrchestrationState",
    "OrchestratorActivity",
    "StartupOrchestrator",
]
