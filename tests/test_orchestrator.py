"""Tests for the startup integration sequence and host commands."""

import asyncio
import json

import pytest

from foundrylink.core.config import IntegrationConfig
from foundrylink.core.controller import ServiceController
from foundrylink.core.errors import (
    ConfigSchemaError,
    EndpointNotFoundError,
    InstallError,
    NotInstalledError,
    StartError,
)
from foundrylink.core.orchestrator import (
    BackgroundLoop,
    FoundryConfig,
    OrchestrationState,
    OrchestratorActivity,
    StartupOrchestrator,
)
from foundrylink.core.settings_sync import SettingsSynchronizer
from foundrylink.core.status import StatusProbe


INSTALLER = ["installer", "--quiet"]
MODEL_RUN = ("foundry", "model", "run", "phi-3.5-mini", "--retain")
SERVICE_LIST_RUNNING = (
    "Service running at http://localhost:5273/v1\n"
    "Model: phi-3.5-mini\n"
)
SERVICE_LIST_NOT_RUNNING_STDERR = "Error: service is not running\n"


async def _always_ready():
    return True


def _orchestrator(runner, settings_file, **controller_kwargs):
    probe = StatusProbe("foundry", "phi-3.5-mini", timeout=5.0, runner=runner)
    options = {
        "command_timeout": 5.0,
        "ready_timeout": 1.0,
        "ready_poll_interval": 0.01,
        "installer_command": INSTALLER,
        "runner": runner,
        "ready_check": _always_ready,
    }
    options.update(controller_kwargs)
    controller = ServiceController("foundry", **options)
    return StartupOrchestrator(probe, controller, SettingsSynchronizer(settings_file), "phi-3.5-mini")


def _not_running(runner):
    runner.on("foundry", "service", "list", returncode=1, stderr=SERVICE_LIST_NOT_RUNNING_STDERR)
    runner.on("foundry", "service", "list", stdout=SERVICE_LIST_RUNNING)
    runner.on("foundry", "service", "start", stdout="Service started")
    runner.on(*MODEL_RUN, stdout="Model loaded")
    return runner


def _running(runner):
    runner.on("foundry", "service", "list", stdout=SERVICE_LIST_RUNNING)
    runner.on(*MODEL_RUN, stdout="Model loaded")
    return runner


def _settings(path):
    return json.loads(path.read_text(encoding="utf-8"))["settings"]


@pytest.mark.asyncio
async def test_not_installed_stops_after_probe(fake_runner, settings_file):
    original = settings_file.read_bytes()
    orchestrator = _orchestrator(fake_runner, settings_file)

    state = await orchestrator.run()

    assert state == OrchestrationState.NOT_INSTALLED
    assert fake_runner.commands == [("foundry", "--help")]
    assert settings_file.read_bytes() == original


@pytest.mark.asyncio
async def test_not_running_starts_loads_and_synchronizes(installed_runner, settings_file):
    runner = _not_running(installed_runner)
    orchestrator = _orchestrator(runner, settings_file)

    state = await orchestrator.run()

    assert state == OrchestrationState.SYNCED
    assert runner.called("foundry", "service", "start")
    assert runner.called(*MODEL_RUN)
    commands = runner.commands
    assert commands.index(("foundry", "service", "start")) < commands.index(MODEL_RUN)
    settings = _settings(settings_file)
    assert settings["post_process_provider_id"] == "custom"
    assert settings["post_process_models"]["custom"] == "phi-3.5-mini"
    custom = [p for p in settings["post_process_providers"] if p["id"] == "custom"]
    assert custom[0]["base_url"] == "http://localhost:5273/v1"


@pytest.mark.asyncio
async def test_start_failure_skips_synchronize(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", returncode=1, stderr=SERVICE_LIST_NOT_RUNNING_STDERR)
    runner.on("foundry", "service", "start", returncode=1, stderr="port in use")
    original = settings_file.read_bytes()
    orchestrator = _orchestrator(runner, settings_file)

    state = await orchestrator.run()

    assert state == OrchestrationState.INSTALLED_NOT_RUNNING
    assert not runner.called(*MODEL_RUN)
    assert settings_file.read_bytes() == original
    assert "port in use" in orchestrator.snapshot().last_error


@pytest.mark.asyncio
async def test_already_running_skips_start(installed_runner, settings_file):
    runner = _running(installed_runner)

    state = await _orchestrator(runner, settings_file).run()

    assert state == OrchestrationState.SYNCED
    assert not runner.called("foundry", "service", "start")


@pytest.mark.asyncio
async def test_model_load_failure_still_synchronizes(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", stdout=SERVICE_LIST_RUNNING)
    runner.on(*MODEL_RUN, returncode=1, stderr="download failed")

    state = await _orchestrator(runner, settings_file).run()

    assert state == OrchestrationState.SYNCED
    assert _settings(settings_file)["post_process_provider_id"] == "custom"


@pytest.mark.asyncio
async def test_settings_error_is_sync_failed_not_raised(installed_runner, settings_file):
    settings_file.write_text("{broken", encoding="utf-8")
    orchestrator = _orchestrator(_running(installed_runner), settings_file)

    state = await orchestrator.run()

    assert state == OrchestrationState.SYNC_FAILED
    assert orchestrator.snapshot().last_error
    assert settings_file.read_text(encoding="utf-8") == "{broken"


@pytest.mark.asyncio
async def test_missing_endpoint_is_sync_failed(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", stdout="Service running\nModel: phi-3.5-mini\n")
    runner.on(*MODEL_RUN)

    state = await _orchestrator(runner, settings_file).run()

    assert state == OrchestrationState.SYNC_FAILED


@pytest.mark.asyncio
async def test_out_of_range_endpoint_port_leaves_service_not_running(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", returncode=1, stderr=SERVICE_LIST_NOT_RUNNING_STDERR)
    runner.on(
        "foundry",
        "service",
        "list",
        stdout="Service running at http://localhost:99999/v1\nModel: phi-3.5-mini\n",
    )
    runner.on("foundry", "service", "start", stdout="Service started")
    orchestrator = _orchestrator(runner, settings_file, ready_check=None, ready_timeout=0.1)

    state = await orchestrator.run()

    assert state == OrchestrationState.INSTALLED_NOT_RUNNING
    assert "did not become ready" in orchestrator.snapshot().last_error
    assert not runner.called(*MODEL_RUN)


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_not_raised(installed_runner, settings_file):
    async def _broken_ready_check():
        raise KeyError("endpoint")

    runner = installed_runner
    runner.on("foundry", "service", "list", returncode=1, stderr=SERVICE_LIST_NOT_RUNNING_STDERR)
    runner.on("foundry", "service", "start", stdout="Service started")
    original = settings_file.read_bytes()
    orchestrator = _orchestrator(runner, settings_file, ready_check=_broken_ready_check)

    state = await orchestrator.run()

    snapshot = orchestrator.snapshot()
    assert state != OrchestrationState.SYNCED
    assert "endpoint" in snapshot.last_error
    assert snapshot.activity == OrchestratorActivity.IDLE
    assert settings_file.read_bytes() == original


@pytest.mark.asyncio
async def test_activity_returns_to_idle_after_run(installed_runner, settings_file):
    orchestrator = _orchestrator(_running(installed_runner), settings_file)

    await orchestrator.run()

    snapshot = orchestrator.snapshot()
    assert snapshot.activity == OrchestratorActivity.IDLE
    assert snapshot.state == OrchestrationState.SYNCED
    assert snapshot.last_error is None


@pytest.mark.asyncio
async def test_launch_reuses_pending_task(installed_runner, settings_file):
    orchestrator = _orchestrator(_running(installed_runner), settings_file)

    task = orchestrator.launch()
    assert orchestrator.launch() is task
    assert await task == OrchestrationState.SYNCED


@pytest.mark.asyncio
async def test_start_and_configure_not_installed(fake_runner, settings_file):
    orchestrator = _orchestrator(fake_runner, settings_file)

    with pytest.raises(NotInstalledError):
        await orchestrator.start_and_configure()
    assert orchestrator.state == OrchestrationState.NOT_INSTALLED


@pytest.mark.asyncio
async def test_start_and_configure_returns_config(installed_runner, settings_file):
    runner = _not_running(installed_runner)

    config = await _orchestrator(runner, settings_file).start_and_configure()

    assert config == FoundryConfig(endpoint_url="http://localhost:5273/v1", model_id="phi-3.5-mini")
    assert runner.called("foundry", "service", "start")
    assert _settings(settings_file)["post_process_models"]["custom"] == "phi-3.5-mini"


@pytest.mark.asyncio
async def test_start_and_configure_start_failure(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", returncode=1, stderr=SERVICE_LIST_NOT_RUNNING_STDERR)
    runner.on("foundry", "service", "start", returncode=1, stderr="access denied")
    orchestrator = _orchestrator(runner, settings_file)

    with pytest.raises(StartError):
        await orchestrator.start_and_configure()
    assert orchestrator.snapshot().activity == OrchestratorActivity.IDLE
    assert "access denied" in orchestrator.snapshot().last_error


@pytest.mark.asyncio
async def test_start_and_configure_schema_error(installed_runner, settings_file):
    settings_file.write_text(json.dumps({"settings": {}}), encoding="utf-8")
    orchestrator = _orchestrator(_running(installed_runner), settings_file)

    with pytest.raises(ConfigSchemaError):
        await orchestrator.start_and_configure()
    assert orchestrator.state == OrchestrationState.SYNC_FAILED


@pytest.mark.asyncio
async def test_start_and_configure_missing_endpoint_is_sync_failed(installed_runner, settings_file):
    runner = installed_runner
    runner.on("foundry", "service", "list", stdout="Service running\nModel: phi-3.5-mini\n")
    runner.on(*MODEL_RUN)
    orchestrator = _orchestrator(runner, settings_file)

    with pytest.raises(EndpointNotFoundError):
        await orchestrator.start_and_configure()
    assert orchestrator.state == OrchestrationState.SYNC_FAILED
    assert orchestrator.snapshot().activity == OrchestratorActivity.IDLE


@pytest.mark.asyncio
async def test_install_reports_version_and_activity(fake_runner, settings_file):
    orchestrator = _orchestrator(fake_runner, settings_file)
    seen = []

    async def _runner(args, timeout):
        seen.append(orchestrator.snapshot().activity)
        return await fake_runner(args, timeout)

    orchestrator.controller._run = _runner
    fake_runner.on(*INSTALLER)
    fake_runner.on("foundry", "--version", stdout="0.3.9")

    version = await orchestrator.install()

    assert version == "0.3.9"
    assert seen and all(activity == OrchestratorActivity.INSTALLING for activity in seen)
    assert orchestrator.state == OrchestrationState.INSTALLED_NOT_RUNNING
    assert orchestrator.snapshot().activity == OrchestratorActivity.IDLE


@pytest.mark.asyncio
async def test_install_failure_is_recorded(fake_runner, settings_file):
    fake_runner.on(*INSTALLER, returncode=1, stderr="installer crashed")
    orchestrator = _orchestrator(fake_runner, settings_file)

    with pytest.raises(InstallError):
        await orchestrator.install()
    assert "installer crashed" in orchestrator.snapshot().last_error


@pytest.mark.asyncio
async def test_run_model_and_list_models(installed_runner, settings_file):
    runner = _running(installed_runner)
    runner.on("foundry", "model", "run", "qwen2.5-0.5b", "--retain")
    orchestrator = _orchestrator(runner, settings_file)

    await orchestrator.run_model("qwen2.5-0.5b")

    assert runner.called("foundry", "model", "run", "qwen2.5-0.5b", "--retain")
    assert await orchestrator.list_models() == ["phi-3.5-mini", "qwen2.5-0.5b"]


def test_from_config_wires_components(tmp_path):
    config = IntegrationConfig(
        executable="/opt/foundry/bin/foundry",
        default_model="phi-4-mini",
        settings_path=tmp_path / "settings.json",
        command_timeout_seconds=12,
    )

    orchestrator = StartupOrchestrator.from_config(config)

    assert orchestrator.default_model == "phi-4-mini"
    assert orchestrator.probe.executable == "/opt/foundry/bin/foundry"
    assert orchestrator.probe.timeout == 12
    assert orchestrator.controller.command_timeout == 12
    assert orchestrator.synchronizer.settings_path == tmp_path / "settings.json"


class TestBackgroundLoop:
    def test_submit_runs_coroutine_off_thread(self):
        loop = BackgroundLoop(name="test-loop")

        async def _answer():
            await asyncio.sleep(0)
            return 42

        try:
            assert loop.submit(_answer()).result(timeout=5) == 42
        finally:
            loop.shutdown()

    def test_shutdown_without_start_is_noop(self):
        BackgroundLoop().shutdown()

    def test_orchestrator_runs_on_background_loop(self, installed_runner, settings_file):
        loop = BackgroundLoop(name="test-orchestrator-loop")
        orchestrator = _orchestrator(_running(installed_runner), settings_file)
        try:
            state = loop.submit(orchestrator.run()).result(timeout=10)
        finally:
            loop.shutdown()
        assert state == OrchestrationState.SYNCED
