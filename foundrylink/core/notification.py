"""Client-side state machine for the Foundry setup notification.

The machine is a projection of backend state: it polls the status query,
derives which prompt to show and offers one primary action per prompt.
Busy flags come from the pending local action and from the backend's
`OrchestrationSnapshot.activity`, so several clients agree on progress.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple, Union

from foundrylink.core.errors import FoundryError
from foundrylink.core.orchestrator import FoundryConfig, OrchestrationSnapshot, OrchestratorActivity
from foundrylink.core.status import ServiceStatus
from foundrylink.utils.log import get_logger


logger = get_logger()

MaybeAwaitable = Union[Awaitable[Any], Any]
ConfirmCallback = Callable[[], Union[Awaitable[bool], bool]]
SettingsChangedCallback = Callable[[], MaybeAwaitable]


class NotificationBackend(Protocol):
    async def get_status(self) -> ServiceStatus: ...

    async def install(self) -> str: ...

    async def start_and_configure(self) -> FoundryConfig: ...


class NotificationState(str, Enum):
    LOADING = "loading"
    NEEDS_INSTALL = "needs_install"
    NEEDS_START = "needs_start"
    NEEDS_MODEL_DOWNLOAD = "needs_model_download"
    READY = "ready"
    DISMISSED = "dismissed"


ACTION_INSTALL = "install"
ACTION_START_AND_CONFIGURE = "start_and_configure"

_PROMPTS: Dict[NotificationState, Tuple[str, str, Optional[str], str]] = {
    NotificationState.NEEDS_INSTALL: (
        "Foundry Local is not installed",
        "Install Foundry Local to post-process transcriptions with a local model.",
        ACTION_INSTALL,
        "Install Foundry Local",
    ),
    NotificationState.NEEDS_START: (
        "Foundry Local is not running",
        "Start the Foundry service and configure post-processing to use it.",
        ACTION_START_AND_CONFIGURE,
        "Start and configure",
    ),
    NotificationState.NEEDS_MODEL_DOWNLOAD: (
        "The default Foundry model is not downloaded",
        "Download and load the default model, then configure post-processing.",
        ACTION_START_AND_CONFIGURE,
        "Download and configure",
    ),
}


@dataclass(frozen=True)
class NotificationView:
    state: NotificationState
    title: str = ""
    description: str = ""
    action: Optional[str] = None
    action_label: str = ""
    busy: bool = False
    elapsed_seconds: int = 0
    status_error: Optional[str] = None

    @property
    def visible(self) -> bool:
        return self.state in _PROMPTS


@dataclass(frozen=True)
class ActionOutcome:
    success: bool
    message: str


def project_status(status: ServiceStatus) -> NotificationState:
    if not status.installed:
        return NotificationState.NEEDS_INSTALL
    if not status.running:
        return NotificationState.NEEDS_START
    if not status.model_cached:
        return NotificationState.NEEDS_MODEL_DOWNLOAD
    return NotificationState.READY


async def _resolve(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class NotificationStateMachine:
    def __init__(
        self,
        backend: NotificationBackend,
        *,
        on_settings_changed: Optional[SettingsChangedCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.on_settings_changed = on_settings_changed
        self._clock = clock
        self.status: Optional[ServiceStatus] = None
        self.status_error: Optional[str] = None
        self.is_loading = False
        self.is_installing = False
        self.is_configuring = False
        # Dismissal lasts for this instance only.
        self.dismissed = False
        self._action_started_at: Optional[float] = None

    @property
    def state(self) -> NotificationState:
        if self.dismissed:
            return NotificationState.DISMISSED
        if self.status is None or (self.is_loading and not self._action_pending):
            return NotificationState.LOADING
        return project_status(self.status)

    @property
    def _action_pending(self) -> bool:
        return self.is_installing or self.is_configuring

    def _backend_activity(self) -> OrchestratorActivity:
        snapshot_fn = getattr(self.backend, "snapshot", None)
        if snapshot_fn is None:
            return OrchestratorActivity.IDLE
        snapshot = snapshot_fn()
        if isinstance(snapshot, OrchestrationSnapshot):
            return snapshot.activity
        return OrchestratorActivity.IDLE

    @property
    def busy(self) -> bool:
        if self._action_pending:
            return True
        return self._backend_activity() in (
            OrchestratorActivity.INSTALLING,
            OrchestratorActivity.CONFIGURING,
        )

    def elapsed_seconds(self) -> int:
        if self._action_started_at is None:
            return 0
        return max(0, int(self._clock() - self._action_started_at))

    async def load_status(self) -> NotificationState:
        """Query backend status unless a query or user action is already pending."""
        if self.is_loading or self._action_pending:
            return self.state
        await self._refresh()
        return self.state

    async def _refresh(self) -> None:
        self.is_loading = True
        try:
            self.status = await self.backend.get_status()
            self.status_error = None
        except Exception as exc:  # noqa: BLE001 - the render path must never see an exception
            logger.warning(
                "[notification] Failed to check Foundry status: %s: %s",
                type(exc).__name__,
                exc,
            )
            self.status_error = str(exc) or type(exc).__name__
            self.status = ServiceStatus.conservative()
        finally:
            self.is_loading = False

    def _begin_action(self) -> None:
        self._action_started_at = self._clock()

    def _end_action(self) -> None:
        self._action_started_at = None

    async def install(self, confirm: ConfirmCallback) -> Optional[ActionOutcome]:
        """Ask for confirmation, then install. Returns None when nothing was attempted."""
        if self.state != NotificationState.NEEDS_INSTALL or self.busy:
            return None
        # Pending from the confirmation prompt on, so a second click is ignored.
        self.is_installing = True
        try:
            confirmed = await _resolve(confirm())
            if not confirmed:
                logger.debug("[notification] Foundry install declined by user")
                return None

            self._begin_action()
            try:
                version = await self.backend.install()
                await self._refresh()
                self.dismissed = False
                return ActionOutcome(True, f"Foundry Local {version} installed successfully.")
            except FoundryError as exc:
                logger.warning("[notification] Failed to install Foundry Local: %s", exc)
                return ActionOutcome(False, f"Failed to install Foundry Local: {exc}")
        finally:
            self.is_installing = False
            self._end_action()

    async def start_and_configure(self) -> Optional[ActionOutcome]:
        if self.state not in (NotificationState.NEEDS_START, NotificationState.NEEDS_MODEL_DOWNLOAD):
            return None
        if self.busy:
            return None

        self.is_configuring = True
        self._begin_action()
        try:
            config = await self.backend.start_and_configure()
            if self.on_settings_changed is not None:
                await _resolve(self.on_settings_changed())
            await self._refresh()
            self.dismissed = False
            return ActionOutcome(
                True,
                f"Post-processing now uses Foundry model {config.model_id} at {config.endpoint_url}.",
            )
        except FoundryError as exc:
            logger.warning("[notification] Failed to start and configure Foundry: %s", exc)
            return ActionOutcome(False, f"Failed to start and configure Foundry: {exc}")
        finally:
            self.is_configuring = False
            self._end_action()

    def dismiss(self) -> None:
        self.dismissed = True

    def view(self) -> NotificationView:
        state = self.state
        prompt = _PROMPTS.get(state)
        if prompt is None:
            return NotificationView(state=state, status_error=self.status_error)
        title, description, action, action_label = prompt
        return NotificationView(
            state=state,
            title=title,
            description=description,
            action=action,
            action_label=action_label,
            busy=self.busy,
            elapsed_seconds=self.elapsed_seconds(),
            status_error=self.status_error,
        )

    async def poll(
        self,
        interval: float,
        *,
        max_polls: Optional[int] = None,
        on_view: Optional[Callable[[NotificationView], Any]] = None,
    ) -> NotificationState:
        """Re-query status every `interval` seconds until ready, dismissed or `max_polls`."""
        polls = 0
        while True:
            state = await self.load_status()
            polls += 1
            if on_view is not None:
                on_view(self.view())
            if state in (NotificationState.READY, NotificationState.DISMISSED):
                return state
            if max_polls is not None and polls >= max_polls:
                return state
            await asyncio.sleep(interval)


__all__ = [
    "ACTION_INSTALL",
    "ACTION_START_AND_CONFIGURE",
    "ActionOutcome",
    "NotificationBackend",
    "NotificationState",
    "NotificationStateMachine",
    "NotificationView",
    "project_status",
]
