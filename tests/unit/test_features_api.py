"""Tests for the feature toggle admin API."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from toggle_engine.core.errors import RemoteConfigError
from toggle_engine.core.feature_toggles import (
    ABTestConfiguration,
    FeatureConfiguration,
    FeatureRegistry,
    InMemoryFeatureStorage,
    StaticRemoteConfigProvider,
    ToggleManager,
    UpdateSource,
)
from toggle_engine.main import create_app

T0 = datetime(2025, 6, 1, tzinfo=timezone.utc)


@pytest.fixture
def remote():
    beta = FeatureConfiguration(
        key="beta", enabled=True, target_audience={"testers"}, last_updated=T0
    )
    experiment = ABTestConfiguration(
        test_id="exp-1",
        feature="beta",
        variants={"treatment": True},
        traffic_allocation={"treatment": 100},
        start_date=T0 - timedelta(days=1),
        end_date=T0 + timedelta(days=1),
    )
    return StaticRemoteConfigProvider([beta], [experiment])


@pytest.fixture
def manager(remote, clock):
    return ToggleManager(
        storage=InMemoryFeatureStorage(),
        remote_provider=remote,
        registry=FeatureRegistry(),
        clock=clock,
    )


@pytest.fixture
def client(manager):
    with TestClient(create_app(manager)) as client:
        yield client


class TestFeatureEndpoints:
    """Tests for read endpoints."""

    def test_startup_initializes_manager(self, client, manager):
        assert manager.initialized
        assert client.app.state.toggle_manager is manager

    def test_list_features(self, client):
        response = client.get("/api/v1/features")
        assert response.status_code == 200
        data = response.json()
        assert data["environment"] == "dev"
        assert data["count"] == 1
        assert data["features"]["beta"]["targetAudience"] == ["testers"]

    def test_get_feature(self, client):
        response = client.get("/api/v1/features/beta")
        assert response.status_code == 200
        assert response.json()["key"] == "beta"
        assert response.json()["metadata"]["ab_test_variant"] == "treatment"

    def test_get_missing_feature(self, client):
        response = client.get("/api/v1/features/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "FEATURE_NOT_FOUND"

    def test_evaluate_with_context(self, client):
        response = client.get("/api/v1/features/beta/evaluate", params={"segment": "testers"})
        assert response.status_code == 200
        assert response.json() == {
            "key": "beta",
            "enabled": True,
            "reason": "enabled",
            "variant": "treatment",
        }

        response = client.get("/api/v1/features/beta/evaluate")
        assert response.json()["enabled"] is False
        assert response.json()["reason"] == "audience"

    def test_list_ab_tests(self, client):
        response = client.get("/api/v1/ab-tests")
        assert response.status_code == 200
        assert [t["testId"] for t in response.json()["active"]] == ["exp-1"]


class TestMutationEndpoints:
    """Tests for admin mutations."""

    def test_enable_is_admin_override(self, client, manager):
        sub = manager.subscribe()
        response = client.post("/api/v1/features/new_flag/enable")
        assert response.status_code == 200
        assert response.json() == {"success": True, "key": "new_flag"}
        assert manager.get_feature("new_flag").enabled is True
        assert [u.source for u in sub.drain()] == [UpdateSource.ADMIN_OVERRIDE]

    def test_disable(self, client, manager):
        client.post("/api/v1/features/new_flag/enable")
        response = client.post("/api/v1/features/new_flag/disable")
        assert response.status_code == 200
        assert manager.get_feature("new_flag").enabled is False

    def test_rollout(self, client, manager):
        response = client.put("/api/v1/features/beta/rollout", json={"percentage": 250})
        assert response.status_code == 200
        assert manager.get_feature("beta").rollout_percentage == 100

    def test_rollout_missing_feature(self, client):
        response = client.put("/api/v1/features/missing/rollout", json={"percentage": 10})
        assert response.status_code == 404

    def test_refresh(self, client, manager, remote):
        remote.set_features([FeatureConfiguration(key="pushed", enabled=True, last_updated=T0)])
        response = client.post("/api/v1/refresh")
        assert response.status_code == 200
        assert manager.get_feature("pushed") is not None

    def test_refresh_failure(self, client, remote):
        remote.fail_with(RemoteConfigError("offline"))
        response = client.post("/api/v1/refresh")
        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "REMOTE_ERROR"


class TestMetricsEndpoint:
    """Tests for the Prometheus mount."""

    def test_exposes_toggle_metrics(self, client):
        client.post("/api/v1/features/new_flag/enable")
        response = client.get("/metrics/")
        assert response.status_code == 200
        assert "feature_toggle_updates_total" in response.text
