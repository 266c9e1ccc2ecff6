"""Tests for the deployment pipeline and lifecycle verbs."""
import asyncio

import pytest

from core.deployment import classify_build_error
from core.exceptions import (
    CloneError,
    ComposeError,
    DeploymentInProgressError,
    DeploymentNotFoundError,
    InvalidGitConfigError,
)
from core.process import ProcessResult
from core.schemas import (
    ApplicationRecord,
    AppStatus,
    AppType,
    CreateAppRequest,
    Deployment,
    DeploymentStatus,
    GitAuthMethod,
    GitConfig,
    GitConfigInput,
    LogLevel,
)
from core.services import build_services


@pytest.fixture
def app(services):
    return services.apps.create(CreateAppRequest(name="demo", type=AppType.NODEJS))


@pytest.fixture
def git_app(services):
    return services.apps.create(
        CreateAppRequest(
            name="shop",
            type=AppType.NODEJS,
            git=GitConfigInput(url="https://github.com/acme/shop.git", branch="main"),
        )
    )


async def _deploy_and_collect(services, app_id, **kwargs):
    deployment = await services.deployments.deploy(app_id, **kwargs)
    assert deployment.status == DeploymentStatus.PENDING
    subscription = services.events.subscribe(deployment.id)
    events = [item async for item in subscription]
    final = await services.deployments.wait(deployment.id)
    return final, events


async def test_deploy_without_git_skips_clone(services, app, fake_git):
    final, events = await _deploy_and_collect(services, app.id)

    assert final.status == DeploymentStatus.SUCCESS
    statuses = [e.data["status"] for e in events if e.event == "status"]
    assert statuses == ["building", "starting"]
    assert events[-1].event == "success"
    fake_git.clone_async.assert_not_called()

    stored = services.registry.get(app.id)
    assert stored.status == AppStatus.RUNNING
    assert stored.container_id == "abc123def456"
    assert stored.last_error is None


async def test_deploy_logs_build_output(services, app):
    final, _ = await _deploy_and_collect(services, app.id)
    messages = [entry.message for entry in final.logs]
    assert "Successfully built 0f3c1d2e" in messages
    assert messages[-1] == "✓ Deployment succeeded"
    steps = {entry.step.value for entry in final.logs}
    assert {"init", "config", "build", "start", "done"} <= steps


async def test_deploy_writes_build_files(services, app):
    await _deploy_and_collect(services, app.id)
    compose = (services.settings.apps_root / "demo" / "docker-compose.yml").read_text()
    assert f"{app.external_port}:3000" in compose
    assert "container_name: shipyard-demo" in compose
    env = (services.settings.apps_root / "demo" / ".env").read_text()
    assert f"EXTERNAL_PORT={app.external_port}" in env


async def test_deploy_with_git_clones_first(services, git_app, fake_git):
    final, events = await _deploy_and_collect(services, git_app.id, force=True)

    assert final.status == DeploymentStatus.SUCCESS
    assert [e.data["status"] for e in events if e.event == "status"] == ["cloning", "building", "starting"]
    fake_git.purge_workdir.assert_called_once()
    assert any(entry.message.startswith("✓ Repository cloned at 9fceb02") for entry in final.logs)
    assert services.history.commit_hash(final.id) == "9fceb02d0ae598e95dc970b74767f19372d61af8"


async def test_clone_failure_fails_deployment(services, git_app, fake_git, fake_compose):
    fake_git.clone_async.side_effect = CloneError("Authentication failed: check the access token or credentials")

    final, events = await _deploy_and_collect(services, git_app.id)

    assert final.status == DeploymentStatus.FAILED
    assert final.error == "Authentication failed: check the access token or credentials"
    assert final.logs[-1].message.startswith("✗ Authentication failed")
    assert final.logs[-1].step.value == "clone"
    assert events[-1].event == "failed"
    assert ("build",) not in fake_compose.calls

    stored = services.registry.get(git_app.id)
    assert stored.status == AppStatus.FAILED
    assert stored.last_error == final.error


async def test_build_failure_is_classified(services, app, fake_compose):
    fake_compose.build_lines = ["#8 ERROR: failed to copy: no space left on device"]
    fake_compose.build_code = 1

    final, _ = await _deploy_and_collect(services, app.id)

    assert final.status == DeploymentStatus.FAILED
    assert final.error == "Not enough disk space on the server"
    assert ("up", "-d") not in fake_compose.calls


async def test_docker_unavailable(services, app, fake_compose):
    fake_compose.available = False
    final, _ = await _deploy_and_collect(services, app.id)
    assert final.status == DeploymentStatus.FAILED
    assert "Docker is not reachable" in final.error


async def test_up_failure(services, app, fake_compose):
    fake_compose.results["up"] = ProcessResult(1, "", "port is already allocated")
    final, _ = await _deploy_and_collect(services, app.id)
    assert final.status == DeploymentStatus.FAILED
    assert "port is already allocated" in final.error


async def test_down_failure_is_only_a_warning(services, app, fake_compose):
    fake_compose.results["down"] = ProcessResult(1, "", "no such project")
    final, _ = await _deploy_and_collect(services, app.id)
    assert final.status == DeploymentStatus.SUCCESS
    assert any(entry.level.value == "warn" for entry in final.logs)


async def test_second_deploy_rejected_while_running(services, app, fake_compose):
    fake_compose.build_gate = asyncio.Event()
    first = await services.deployments.deploy(app.id)
    await asyncio.sleep(0)

    with pytest.raises(DeploymentInProgressError) as exc:
        await services.deployments.deploy(app.id)
    assert exc.value.details["deployment_id"] == first.id
    assert services.deployments.is_deploying(app.id)

    fake_compose.build_gate.set()
    final = await services.deployments.wait(first.id)
    assert final.status == DeploymentStatus.SUCCESS
    assert not services.deployments.is_deploying(app.id)

    again = await services.deployments.deploy(app.id)
    await services.deployments.wait(again.id)


async def test_cancel_marks_failed(services, app, fake_compose):
    fake_compose.build_gate = asyncio.Event()
    deployment = await services.deployments.deploy(app.id)
    await asyncio.sleep(0.05)

    assert services.deployments.cancel(app.id) is True
    final = await services.deployments.wait(deployment.id)
    assert final.status == DeploymentStatus.FAILED
    assert final.error == "Deployment cancelled"
    assert not services.deployments.is_deploying(app.id)


async def test_private_repo_without_credentials_rejected(services):
    record = ApplicationRecord(
        id="app-x",
        name="secret",
        type=AppType.NODEJS,
        internal_port=3000,
        external_port=15005,
        path=str(services.settings.apps_root / "secret"),
        git=GitConfig(url="https://github.com/acme/secret.git", is_private=True, auth_method=GitAuthMethod.TOKEN),
    )
    services.registry.put(record)
    with pytest.raises(InvalidGitConfigError):
        await services.deployments.deploy("app-x")
    assert not services.deployments.is_deploying("app-x")


async def test_history_and_lookup(services, app):
    final, _ = await _deploy_and_collect(services, app.id)
    assert services.deployments.get_deployment(final.id).status == DeploymentStatus.SUCCESS
    assert [d.id for d in services.deployments.list_deployments(app.id)] == [final.id]
    with pytest.raises(DeploymentNotFoundError):
        services.deployments.get_deployment("deploy-missing")


async def test_memory_is_bounded_but_history_is_not(services, app):
    services.deployments.memory_limit = 1
    first, _ = await _deploy_and_collect(services, app.id)
    second, _ = await _deploy_and_collect(services, app.id)

    assert first.id not in services.deployments._deployments
    assert services.deployments.get_deployment(first.id).status == DeploymentStatus.SUCCESS
    assert len(services.deployments.list_deployments(app.id)) == 2


def test_recover_interrupted(services, app):
    app.status = AppStatus.BUILDING
    services.registry.put(app)
    assert services.deployments.recover_interrupted() == [app.id]
    stored = services.registry.get(app.id)
    assert stored.status == AppStatus.FAILED
    assert stored.last_error == "Deployment interrupted by a restart"


def test_recover_interrupted_fails_unfinished_history(services, app):
    services.history.save(Deployment(id="dep-stale", app_id=app.id, status=DeploymentStatus.BUILDING))
    services.history.save(Deployment(id="dep-done", app_id=app.id, status=DeploymentStatus.SUCCESS))

    services.deployments.recover_interrupted()

    stale = services.deployments.get_deployment("dep-stale")
    assert stale.status == DeploymentStatus.FAILED
    assert stale.error == "Deployment interrupted by a restart"
    assert stale.finished_at is not None
    assert stale.logs[-1].level == LogLevel.ERROR
    assert services.deployments.get_deployment("dep-done").status == DeploymentStatus.SUCCESS


async def test_restart_fails_deployment_left_in_flight(services, app, fake_compose, fake_engine):
    fake_compose.build_gate = asyncio.Event()
    deployment = await services.deployments.deploy(app.id)
    await asyncio.sleep(0.05)

    restarted = build_services(services.settings, engine=fake_engine)
    try:
        restarted.deployments.recover_interrupted()
        recovered = restarted.deployments.get_deployment(deployment.id)
        assert recovered.status == DeploymentStatus.FAILED
        assert recovered.finished_at is not None
        assert restarted.registry.get(app.id).status not in (AppStatus.BUILDING, AppStatus.DEPLOYING)
    finally:
        restarted.close()
        fake_compose.build_gate.set()
        await services.deployments.wait(deployment.id)


def test_recover_interrupted_keeps_running_deployments(services, app):
    services.deployments._tasks["dep-live"] = object()
    services.history.save(Deployment(id="dep-live", app_id=app.id, status=DeploymentStatus.BUILDING))
    try:
        services.deployments.recover_interrupted()
    finally:
        del services.deployments._tasks["dep-live"]
    assert services.history.get("dep-live").status == DeploymentStatus.BUILDING


async def test_stop_and_start(services, app, fake_compose):
    stopped = await services.deployments.stop(app.id)
    assert stopped.status == AppStatus.STOPPED
    started = await services.deployments.start(app.id)
    assert started.status == AppStatus.RUNNING
    assert ("stop",) in fake_compose.calls and ("start",) in fake_compose.calls


async def test_lifecycle_failure_sets_error(services, app, fake_compose):
    fake_compose.results["restart"] = ProcessResult(1, "", "no containers")
    with pytest.raises(ComposeError):
        await services.deployments.restart(app.id)
    stored = services.registry.get(app.id)
    assert stored.status == AppStatus.ERROR
    assert "no containers" in stored.last_error


async def test_app_logs(services, app, fake_compose):
    fake_compose.results["logs"] = ProcessResult(0, "app-1  | listening", "")
    assert await services.deployments.app_logs(app.id, tail=20) == "app-1  | listening"
    assert ("logs", "--no-color", "--tail=20") in fake_compose.calls


@pytest.mark.parametrize(
    "output, expected",
    [
        ("write /var: no space left on device", "Not enough disk space on the server"),
        ("open /app: permission denied", "Permission denied during build"),
        ('COPY failed: file not found in build context', "A file referenced by the Dockerfile is missing (check the COPY instructions)"),
        ("exit status 2", "Build failed (code 2)"),
    ],
)
def test_classify_build_error(output, expected):
    assert classify_build_error(output, 2) == expected
