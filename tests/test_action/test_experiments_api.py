"""Tests for the /experiments API routes."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from funnel_brain.db.connection import get_session
from funnel_brain.db.experiment_models import Assignment, Experiment, ExperimentEvent, Variant
from funnel_brain.errors import (
    ExperimentInUseError,
    InvalidEventTypeError,
    InvalidTransitionError,
    NoEligibleVariantsError,
    NoVariantsError,
    TestNotActiveError,
    TestNotFoundError,
    UnknownVariantError,
)
from funnel_brain.experiments.analytics import VariantStats, WinnerEvaluation


def _mock_session_override():
    session = AsyncMock()
    yield session


@pytest.fixture()
def client():
    from funnel_brain.action.api import app

    original_startup = list(app.router.on_startup)
    app.router.on_startup.clear()
    app.dependency_overrides[get_session] = _mock_session_override

    from fastapi.testclient import TestClient

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
    app.router.on_startup = original_startup


def _experiment(status="draft") -> Experiment:
    return Experiment(id="test-1", name="Hero copy", status=status, traffic_allocation=100)


def _assignment(variant_id="b") -> Assignment:
    return Assignment(
        id="as-1", test_id="test-1", variant_id=variant_id, session_id="S1",
        assigned_at=datetime(2025, 5, 1, tzinfo=timezone.utc),
    )


# ---------------------------------------------------------------------------
# Registry and lifecycle
# ---------------------------------------------------------------------------


@patch("funnel_brain.experiments.registry.create_experiment", new_callable=AsyncMock)
def test_create_experiment(mock_create, client):
    mock_create.return_value = _experiment()
    resp = client.post("/experiments", json={"name": "Hero copy", "content_type": "hero"})
    assert resp.status_code == 201
    assert resp.json()["status"] == "draft"
    assert mock_create.call_args.kwargs["content_type"] == "hero"


def test_create_experiment_rejects_bad_allocation(client):
    resp = client.post("/experiments", json={"name": "x", "traffic_allocation": 150})
    assert resp.status_code == 422


@patch("funnel_brain.experiments.registry.get_targets", new_callable=AsyncMock)
@patch("funnel_brain.experiments.registry.get_variants", new_callable=AsyncMock)
@patch("funnel_brain.experiments.registry.get_experiment", new_callable=AsyncMock)
def test_get_experiment_with_variants(mock_get, mock_variants, mock_targets, client):
    mock_get.return_value = _experiment("active")
    mock_variants.return_value = [Variant(id="a", test_id="test-1", name="A", traffic_weight=50, is_control=True)]
    mock_targets.return_value = []
    resp = client.get("/experiments/test-1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["variants"][0]["is_control"] is True
    assert data["targets"] == []


@patch("funnel_brain.experiments.registry.get_experiment", new_callable=AsyncMock)
def test_get_missing_experiment(mock_get, client):
    mock_get.return_value = None
    assert client.get("/experiments/nope").status_code == 404


@patch("funnel_brain.experiments.registry.activate_experiment", new_callable=AsyncMock)
def test_activate_without_eligible_variants_is_400(mock_activate, client):
    mock_activate.side_effect = NoEligibleVariantsError("test-1")
    resp = client.post("/experiments/test-1/activate")
    assert resp.status_code == 400
    assert "traffic weight" in resp.json()["detail"]


@patch("funnel_brain.experiments.registry.pause_experiment", new_callable=AsyncMock)
def test_pause_invalid_transition_is_409(mock_pause, client):
    mock_pause.side_effect = InvalidTransitionError("test-1", "draft", "paused")
    assert client.post("/experiments/test-1/pause").status_code == 409


@patch("funnel_brain.experiments.registry.complete_experiment", new_callable=AsyncMock)
def test_complete_with_winner(mock_complete, client):
    exp = _experiment("completed")
    exp.winner_variant_id = "b"
    mock_complete.return_value = exp
    resp = client.post("/experiments/test-1/complete", json={"winner_variant_id": "b"})
    assert resp.status_code == 200
    assert resp.json()["winner_variant_id"] == "b"
    assert mock_complete.call_args[0][1:] == ("test-1", "b")


@patch("funnel_brain.experiments.registry.set_targets", new_callable=AsyncMock)
def test_put_targets(mock_set, client):
    mock_set.return_value = [object(), object()]
    resp = client.put("/experiments/test-1/targets", json={"targets": [
        {"persona": "donor", "funnel_stage": "awareness"},
        {"persona": "student", "funnel_stage": "decision"},
    ]})
    assert resp.status_code == 200
    assert resp.json() == {"status": "updated", "total": 2}
    assert mock_set.call_args[0][2] == [("donor", "awareness"), ("student", "decision")]


@patch("funnel_brain.experiments.registry.delete_experiment", new_callable=AsyncMock)
def test_delete_experiment(mock_delete, client):
    mock_delete.return_value = True
    assert client.delete("/experiments/test-1").status_code == 204
    mock_delete.return_value = False
    assert client.delete("/experiments/test-1").status_code == 404


@patch("funnel_brain.experiments.registry.delete_experiment", new_callable=AsyncMock)
def test_delete_experiment_in_use_is_409(mock_delete, client):
    mock_delete.side_effect = ExperimentInUseError("test-1")
    resp = client.delete("/experiments/test-1")
    assert resp.status_code == 409
    assert "test-1" in resp.json()["detail"]


@patch("funnel_brain.experiments.registry.delete_variant", new_callable=AsyncMock)
def test_delete_variant(mock_delete, client):
    mock_delete.return_value = True
    assert client.delete("/experiments/variants/v-1").status_code == 204
    mock_delete.side_effect = ExperimentInUseError("test-1", what="Variant")
    assert client.delete("/experiments/variants/v-1").status_code == 409


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@patch("funnel_brain.experiments.registry.create_variant", new_callable=AsyncMock)
def test_create_variant(mock_create, client):
    mock_create.return_value = Variant(id="v-1", test_id="test-1", name="B", traffic_weight=30.0, is_control=False)
    resp = client.post("/experiments/test-1/variants", json={"name": "B", "traffic_weight": 30})
    assert resp.status_code == 201
    assert resp.json()["traffic_weight"] == 30.0


@patch("funnel_brain.experiments.registry.update_variant", new_callable=AsyncMock)
def test_update_missing_variant(mock_update, client):
    mock_update.return_value = None
    resp = client.patch("/experiments/variants/nope", json={"traffic_weight": 10})
    assert resp.status_code == 404
    assert mock_update.call_args.kwargs == {"traffic_weight": 10.0}


# ---------------------------------------------------------------------------
# Assignment and tracking
# ---------------------------------------------------------------------------


@patch("funnel_brain.experiments.assignment.get_variants", new_callable=AsyncMock)
@patch("funnel_brain.experiments.assignment.get_experiment", new_callable=AsyncMock)
@patch("funnel_brain.experiments.assignment.get_assignment", new_callable=AsyncMock)
def test_assign_twice_returns_same_variant(mock_lookup, mock_get, mock_variants, client):
    stored = _assignment("b")
    # first call: nothing stored, insert, re-read; second call: found immediately
    mock_lookup.side_effect = [None, stored, stored]
    mock_get.return_value = _experiment("active")
    mock_variants.return_value = [
        Variant(id="a", test_id="test-1", name="A", traffic_weight=50),
        Variant(id="b", test_id="test-1", name="B", traffic_weight=50),
    ]

    body = {"test_id": "test-1", "session_id": "S1", "persona": "donor", "funnel_stage": "awareness"}
    first = client.post("/experiments/assign", json=body)
    second = client.post("/experiments/assign", json=body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json()["variant_id"] == second.json()["variant_id"] == "b"
    # variants were only loaded for the first call
    assert mock_variants.call_count == 1


@patch("funnel_brain.experiments.assignment.get_or_create_assignment", new_callable=AsyncMock)
def test_assign_inactive_is_409(mock_assign, client):
    mock_assign.side_effect = TestNotActiveError("test-1")
    resp = client.post("/experiments/assign", json={"test_id": "test-1", "session_id": "S1"})
    assert resp.status_code == 409
    assert "not active" in resp.json()["detail"]


@patch("funnel_brain.experiments.assignment.get_or_create_assignment", new_callable=AsyncMock)
def test_assign_no_variants_is_400(mock_assign, client):
    mock_assign.side_effect = NoVariantsError("test-1")
    resp = client.post("/experiments/assign", json={"test_id": "test-1", "session_id": "S1"})
    assert resp.status_code == 400


@patch("funnel_brain.experiments.event_tracker.track_event", new_callable=AsyncMock)
def test_track(mock_track, client):
    mock_track.return_value = ExperimentEvent(
        id=1, test_id="test-1", variant_id="b", session_id="S1", event_type="conversion",
        occurred_at=datetime(2025, 5, 1, tzinfo=timezone.utc),
    )
    resp = client.post("/experiments/track", json={
        "test_id": "test-1", "variant_id": "b", "session_id": "S1", "event_type": "conversion",
    })
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "accepted"
    assert data["event"]["event_type"] == "conversion"


@patch("funnel_brain.experiments.event_tracker.track_event", new_callable=AsyncMock)
def test_track_invalid_type_is_400(mock_track, client):
    mock_track.side_effect = InvalidEventTypeError("click")
    resp = client.post("/experiments/track", json={
        "test_id": "test-1", "variant_id": "b", "session_id": "S1", "event_type": "click",
    })
    assert resp.status_code == 400


@patch("funnel_brain.experiments.event_tracker.track_event", new_callable=AsyncMock)
def test_track_foreign_variant_is_404(mock_track, client):
    mock_track.side_effect = UnknownVariantError("test-1", "zzz")
    resp = client.post("/experiments/track", json={
        "test_id": "test-1", "variant_id": "zzz", "session_id": "S1", "event_type": "exposure",
    })
    assert resp.status_code == 404


@patch("funnel_brain.experiments.assignment.get_session_assignments", new_callable=AsyncMock)
def test_session_assignments(mock_rows, client):
    mock_rows.return_value = [_assignment("a")]
    resp = client.get("/experiments/sessions/S1/assignments")
    assert resp.status_code == 200
    assert resp.json()[0]["variant_id"] == "a"


@patch("funnel_brain.experiments.registry.get_active_experiments", new_callable=AsyncMock)
def test_active_route_not_shadowed_by_test_id(mock_active, client):
    mock_active.return_value = [_experiment("active")]
    resp = client.get("/experiments/active", params={"persona": "donor", "funnel_stage": "awareness"})
    assert resp.status_code == 200
    assert resp.json()[0]["status"] == "active"
    assert mock_active.call_args[0][1:] == ("donor", "awareness")


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@patch("funnel_brain.experiments.analytics.get_test_analytics", new_callable=AsyncMock)
def test_experiment_analytics(mock_stats, client):
    mock_stats.return_value = [
        VariantStats("a", "Control", True, 1000, 100, 990, 0.10),
        VariantStats("b", "Bold", False, 1000, 150, 985, 0.15, lift=50.0, z_score=3.38,
                     p_value=0.0007, confidence=0.9993, is_significant=True),
    ]
    resp = client.get("/experiments/test-1/analytics")
    assert resp.status_code == 200
    data = resp.json()
    assert data[0]["is_significant"] is None
    assert data[1]["is_significant"] is True
    assert data[1]["lift"] == 50.0


@patch("funnel_brain.experiments.analytics.get_test_analytics", new_callable=AsyncMock)
def test_analytics_unknown_test_is_404(mock_stats, client):
    mock_stats.side_effect = TestNotFoundError("nope")
    assert client.get("/experiments/nope/analytics").status_code == 404


@patch("funnel_brain.experiments.registry.require_experiment", new_callable=AsyncMock)
def test_sample_size(mock_require, client):
    mock_require.return_value = _experiment()
    resp = client.get("/experiments/test-1/sample-size",
                      params={"baseline_rate": 0.05, "min_detectable_effect_pct": 20})
    assert resp.status_code == 200
    assert 8000 < resp.json()["per_variant"] < 8300


@patch("funnel_brain.experiments.registry.require_experiment", new_callable=AsyncMock)
def test_sample_size_bad_baseline(mock_require, client):
    mock_require.return_value = _experiment()
    resp = client.get("/experiments/test-1/sample-size",
                      params={"baseline_rate": 1.5, "min_detectable_effect_pct": 20})
    assert resp.status_code == 400


@pytest.mark.parametrize("body", [
    '{"name": "B", "traffic_weight": -1}',
    '{"name": "B", "traffic_weight": 1e999}',
    '{"name": "B", "traffic_weight": NaN}',
])
@patch("funnel_brain.experiments.registry.create_variant", new_callable=AsyncMock)
def test_create_variant_rejects_bad_weight(mock_create, client, body):
    resp = client.post(
        "/experiments/test-1/variants", content=body, headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 422
    mock_create.assert_not_called()


@patch("funnel_brain.experiments.registry.update_variant", new_callable=AsyncMock)
def test_update_variant_rejects_infinite_weight(mock_update, client):
    resp = client.patch(
        "/experiments/variants/v-1", content='{"traffic_weight": 1e999}',
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 422
    mock_update.assert_not_called()


@pytest.mark.parametrize("confidence", [0, 1, 1.5, -0.2])
@patch("funnel_brain.experiments.analytics.get_test_analytics", new_callable=AsyncMock)
def test_analytics_confidence_out_of_range_is_422(mock_stats, client, confidence):
    resp = client.get("/experiments/test-1/analytics", params={"confidence": confidence})
    assert resp.status_code == 422
    mock_stats.assert_not_called()


@pytest.mark.parametrize("limit", [0, -5, 100000])
@patch("funnel_brain.experiments.event_tracker.get_test_events", new_callable=AsyncMock)
def test_events_limit_out_of_range_is_422(mock_events, client, limit):
    resp = client.get("/experiments/test-1/events", params={"limit": limit})
    assert resp.status_code == 422
    mock_events.assert_not_called()


@patch("funnel_brain.experiments.analytics.evaluate_winner", new_callable=AsyncMock)
def test_winner(mock_eval, client):
    mock_eval.return_value = WinnerEvaluation(
        test_id="test-1", has_winner=True, should_stop=True, stop_reason="winner_found",
        winner_variant_id="b", winner_name="Bold", control_variant_id="a",
        probability_beat_control=0.999, expected_lift=50.0, credible_interval=(0.128, 0.173),
        is_significant=True,
    )
    resp = client.get("/experiments/test-1/winner")
    assert resp.status_code == 200
    data = resp.json()
    assert data["winner_variant_id"] == "b"
    assert data["stop_reason"] == "winner_found"
    assert data["credible_interval"] == [0.128, 0.173]


@patch("funnel_brain.experiments.analytics.evaluate_winner", new_callable=AsyncMock)
def test_winner_unknown_test_is_404(mock_eval, client):
    mock_eval.side_effect = TestNotFoundError("nope")
    assert client.get("/experiments/nope/winner").status_code == 404
