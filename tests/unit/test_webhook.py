import hashlib
import hmac
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from core.exceptions import DeploymentInProgressError
from core.schemas import AppType, CreateAppRequest, Deployment, GitConfigInput

SECRET = "whsec-0123456789abcdefghijklmnopqrstuv"


# ---------------------------------------------------------------------------
# Signature helper
# ---------------------------------------------------------------------------
def _sig(body: bytes, secret: str = SECRET):
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _push(ref="refs/heads/main", clone_url="https://github.com/acme/shop.git"):
    return json.dumps(
        {
            "ref": ref,
            "after": "9fceb02d0ae598e95dc970b74767f19372d61af8",
            "repository": {
                "name": "shop",
                "clone_url": clone_url,
                "ssh_url": "git@github.com:acme/shop.git",
                "html_url": "https://github.com/acme/shop",
            },
        }
    ).encode()


@pytest.fixture
def shop(services):
    return services.apps.create(
        CreateAppRequest(
            name="shop",
            type=AppType.NODEJS,
            git=GitConfigInput(url="git@github.com:acme/shop.git", branch="main"),
        )
    )


@pytest.fixture
def deploy_mock(services):
    mock = AsyncMock(side_effect=lambda app_id, force=False: Deployment(id=f"deploy-{app_id}", app_id=app_id))
    services.deployments.deploy = mock
    return mock


@pytest.fixture
def client(services):
    services.settings.webhook_secret = SECRET
    with TestClient(create_app(services=services)) as c:
        yield c


def _post(client, body, event="push", signature=None):
    return client.post(
        "/webhook",
        content=body,
        headers={
            "X-Hub-Signature-256": signature or _sig(body),
            "X-GitHub-Event": event,
            "Content-Type": "application/json",
        },
    )


def test_push_deploys_matching_app(client, shop, deploy_mock):
    r = _post(client, _push())
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "accepted"
    assert body["deployments"] == [{"app_id": shop.id, "deployment_id": f"deploy-{shop.id}"}]
    deploy_mock.assert_awaited_once_with(shop.id)


def test_invalid_signature(client, shop, deploy_mock):
    r = _post(client, _push(), signature="sha256=deadbeef")
    assert r.status_code == 403
    deploy_mock.assert_not_called()


def test_missing_secret_rejects_everything(services, shop, deploy_mock):
    services.settings.webhook_secret = None
    with TestClient(create_app(services=services)) as c:
        r = _post(c, _push())
    assert r.status_code == 403


def test_ping(client):
    r = _post(client, b"{}", event="ping")
    assert r.json() == {"status": "pong"}


def test_tag_push_ignored(client, shop, deploy_mock):
    r = _post(client, _push(ref="refs/tags/v1.0.0"))
    assert r.json()["status"] == "ignored"
    deploy_mock.assert_not_called()


def test_other_branch_deploys_nothing(client, shop, deploy_mock):
    r = _post(client, _push(ref="refs/heads/develop"))
    assert r.json()["deployments"] == []
    deploy_mock.assert_not_called()


def test_unknown_repository(client, shop, deploy_mock):
    body = _push(clone_url="https://github.com/other/thing.git")
    payload = json.loads(body)
    payload["repository"].update(ssh_url=None, html_url=None)
    body = json.dumps(payload).encode()
    assert _post(client, body).json()["deployments"] == []


def test_in_progress_is_reported_as_skipped(client, shop, services):
    services.deployments.deploy = AsyncMock(side_effect=DeploymentInProgressError(shop.id, "deploy-running"))
    body = _post(client, _push()).json()
    assert body["deployments"] == []
    assert body["skipped"][0]["code"] == "DEPLOYMENT_IN_PROGRESS"


def test_malformed_payload(client):
    body = b'{"ref": "refs/heads/main"}'
    r = _post(client, body)
    assert r.status_code == 400
