"""Tests for A/B test activation and variant assignment."""

from datetime import datetime, timedelta, timezone

from toggle_engine.core.feature_toggles import ABTestConfiguration, FeatureConfiguration
from toggle_engine.core.feature_toggles.bucketing import bucket
from toggle_engine.core.feature_toggles.experiments import (
    active_tests,
    apply_assignments,
    assign_variants,
    release_overridden,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _test(test_id="exp-1", feature="new_ui", allocation=None, audience=(), start=None, end=None):
    return ABTestConfiguration(
        test_id=test_id,
        feature=feature,
        variants={"control": False, "treatment": True},
        traffic_allocation=allocation if allocation is not None else {"control": 50, "treatment": 50},
        start_date=start or NOW - timedelta(days=1),
        end_date=end or NOW + timedelta(days=1),
        target_audience=set(audience),
    )


class TestActiveTests:
    """Tests for the activity filter."""

    def test_filters_by_window(self):
        running = _test("running")
        finished = _test("finished", start=NOW - timedelta(days=3), end=NOW - timedelta(days=2))
        upcoming = _test("upcoming", start=NOW + timedelta(days=1), end=NOW + timedelta(days=2))
        result = active_tests([running, finished, upcoming], NOW)
        assert [t.test_id for t in result] == ["running"]

    def test_filters_by_audience(self):
        beta_only = _test("beta", audience=["beta"])
        everyone = _test("all")
        assert [t.test_id for t in active_tests([beta_only, everyone], NOW, "default")] == ["all"]
        assert [t.test_id for t in active_tests([beta_only, everyone], NOW, "beta")] == ["all", "beta"]

    def test_sorted_by_id(self):
        tests = [_test("b"), _test("c"), _test("a")]
        assert [t.test_id for t in active_tests(tests, NOW)] == ["a", "b", "c"]


class TestAssignVariants:
    """Tests for variant selection."""

    def test_assignment_follows_bucket(self, identity_for):
        control_user = identity_for(lambda b: b < 50)
        treatment_user = identity_for(lambda b: b >= 50)

        control = assign_variants([_test()], control_user)["new_ui"]
        treatment = assign_variants([_test()], treatment_user)["new_ui"]

        assert control.variant == "control"
        assert control.enabled is False
        assert treatment.variant == "treatment"
        assert treatment.enabled is True
        assert treatment.test_id == "exp-1"

    def test_outside_allocation_is_not_assigned(self, identity_for):
        identity = identity_for(lambda b: b >= 20)
        test = _test(allocation={"control": 10, "treatment": 10})
        assert assign_variants([test], identity) == {}

    def test_stable_for_same_identity(self):
        first = assign_variants([_test()], "user-42")
        second = assign_variants([_test()], "user-42")
        assert first == second

    def test_first_test_wins_feature(self, caplog):
        tests = [
            _test("a-test", allocation={"treatment": 100}),
            _test("b-test", allocation={"control": 100}),
        ]
        assignments = assign_variants(tests, "user-1")
        assert assignments["new_ui"].test_id == "a-test"
        assert "already controlled" in caplog.text

    def test_anonymous_identity_is_deterministic(self):
        expected = "control" if bucket(None) < 50 else "treatment"
        assert assign_variants([_test()], None)["new_ui"].variant == expected


class TestApplyAssignments:
    """Tests for folding assignments into the configuration map."""

    def test_overrides_enabled_and_tags_variant(self):
        features = {"new_ui": FeatureConfiguration(key="new_ui", enabled=False, metadata={"owner": "ui"})}
        assignments = assign_variants([_test(allocation={"treatment": 100})], "user-1")

        effective = apply_assignments(features, assignments)

        config = effective["new_ui"]
        assert config.enabled is True
        assert config.ab_test_variant == "treatment"
        assert config.metadata["ab_test_id"] == "exp-1"
        assert config.metadata["owner"] == "ui"
        # Base map is untouched
        assert features["new_ui"].enabled is False
        assert "ab_test_variant" not in features["new_ui"].metadata

    def test_missing_feature_is_not_created(self):
        assignments = assign_variants([_test(feature="ghost", allocation={"treatment": 100})], "user-1")
        assert apply_assignments({}, assignments) == {}


class TestReleaseOverridden:
    """Tests for local overrides of experiment-controlled features."""

    def test_pinned_feature_is_released(self):
        assignments = assign_variants([_test(allocation={"treatment": 100})], "user-1")
        features = {
            "new_ui": FeatureConfiguration(key="new_ui", metadata={"ab_test_override": "exp-1"}),
        }
        assert release_overridden(features, assignments) == {}

    def test_override_for_other_test_is_ignored(self):
        assignments = assign_variants([_test(allocation={"treatment": 100})], "user-1")
        features = {
            "new_ui": FeatureConfiguration(key="new_ui", metadata={"ab_test_override": "older-test"}),
        }
        assert set(release_overridden(features, assignments)) == {"new_ui"}
