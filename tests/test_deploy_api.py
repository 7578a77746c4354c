"""End-to-end tests of the deploy webhook over HTTP."""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from deploy_agent.client import sign_request, utc_timestamp
from deploy_agent.core.config import Settings
from deploy_agent.core.exceptions import ConfigurationError
from deploy_agent.main import create_app


@pytest.fixture
def client(registry):
    settings = Settings(log_format="console", command_timeout_seconds=10)
    app = create_app(settings, registry)
    return TestClient(app)


def post_bundle(client, bundle, run_id="1", repository="Acme/Web", secret="s3cret", url="/", **sign_kwargs):
    headers = sign_request(secret, repository, run_id, bundle, **sign_kwargs)
    return client.post(url, content=bundle, headers=headers)


def test_deploy_success(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(manifest={"postPublish": [{"command": "echo live"}]}))

    assert r.status_code == 200, r.text
    assert "> live" in r.json()["out"]
    assert Path(os.readlink(base_dir / "current")) == base_dir / "build-1"
    assert r.headers["X-Request-ID"]


def test_unknown_repository_touches_nothing(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(), repository="someone/else")

    assert r.status_code == 400
    assert r.json() == {"message": "Unknown repository"}
    assert sorted(p.name for p in base_dir.iterdir()) == ["shared"]


def test_signature_mismatch(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(), secret="wrong")

    assert r.status_code == 403
    assert r.json() == {"message": "Signature mismatch"}
    assert sorted(p.name for p in base_dir.iterdir()) == ["shared"]


def test_signature_expired(client, base_dir: Path, make_bundle):
    old = utc_timestamp(datetime.now(timezone.utc) - timedelta(seconds=120))

    r = post_bundle(client, make_bundle(), timestamp=old)

    assert r.status_code == 403
    assert r.json() == {"message": "Signature expired"}
    assert not (base_dir / "build-1").exists()


def test_query_order_is_canonicalized(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(), url="/?env=prod&branch=main", query="branch=main&env=prod")

    assert r.status_code == 200, r.text


def test_pre_publish_failure_response(client, base_dir: Path, make_bundle):
    manifest = {"prePublish": [{"command": "echo nope >&2; false"}]}

    r = post_bundle(client, make_bundle(manifest=manifest))

    assert r.status_code == 400
    body = r.json()
    assert body["message"] == "Pre-Publish failed"
    assert "! nope" in body["out"]
    assert not os.path.lexists(base_dir / "current")


def test_post_publish_failure_response(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(manifest={"postPublish": [{"command": "exit 2"}]}))

    assert r.status_code == 400
    assert r.json()["message"] == "Post-Publish failed"
    assert Path(os.readlink(base_dir / "current")) == base_dir / "build-1"


def test_invalid_manifest_response(client, make_bundle):
    r = post_bundle(client, make_bundle(manifest="prePublish: 5\n"))

    assert r.status_code == 400
    body = r.json()
    assert body["message"] == "Failed to read deploy config"
    assert "out" in body


def test_invalid_run_id_response(client, base_dir: Path, make_bundle):
    r = post_bundle(client, make_bundle(), run_id="../../etc")

    assert r.status_code == 400
    assert r.json()["message"].startswith("Invalid run id")
    assert sorted(p.name for p in base_dir.iterdir()) == ["shared"]


def test_health(client):
    r = client.get("/health")

    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["targets"] == "1"


def test_metrics_exposed(client, make_bundle):
    post_bundle(client, make_bundle(), repository="someone/else")

    r = client.get("/metrics/")

    assert r.status_code == 200
    assert "deploy_agent_deploys_total" in r.text


def test_request_metrics_labelled_by_route(client):
    client.get("/no/such/path/123")
    client.get("/health")

    text = client.get("/metrics/").text

    assert 'endpoint="/no/such/path/123"' not in text
    assert 'endpoint="unmatched"' in text
    assert 'endpoint="/health"' in text


def test_create_app_fails_on_missing_targets_file(tmp_path: Path):
    settings = Settings(log_format="console", targets_file=str(tmp_path / "absent.yaml"))

    with pytest.raises(ConfigurationError):
        create_app(settings)
