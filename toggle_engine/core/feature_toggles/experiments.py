"""A/B test activation and variant assignment.

Active tests are resolved once per initialization or refresh. Their variant
values are folded into the effective configuration map, so evaluation never
needs to know about experiments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from toggle_engine.core.feature_toggles.bucketing import select_variant
from toggle_engine.core.feature_toggles.models import (
    AB_TEST_ID_KEY,
    AB_TEST_OVERRIDE_KEY,
    AB_TEST_VARIANT_KEY,
    ABTestConfiguration,
    FeatureConfiguration,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantAssignment:
    """The variant an identity landed in for one test."""
    test_id: str
    feature: str
    variant: str
    enabled: bool


def active_tests(
    tests: Iterable[ABTestConfiguration],
    now: datetime,
    segment: Optional[str] = None,
) -> List[ABTestConfiguration]:
    """Tests running at ``now`` that admit ``segment``, ordered by test id."""
    running = [
        test for test in tests
        if test.is_active(now) and test.matches_audience(segment)
    ]
    return sorted(running, key=lambda test: test.test_id)


def assign_variants(
    tests: Iterable[ABTestConfiguration],
    identity: Optional[str],
) -> Dict[str, VariantAssignment]:
    """Select a variant per feature; the first test (by id) wins a feature."""
    assignments: Dict[str, VariantAssignment] = {}
    for test in tests:
        variant = select_variant(test.traffic_allocation, identity)
        if variant is None:
            continue
        if test.feature in assignments:
            logger.warning(
                f"A/B test '{test.test_id}' ignored for '{test.feature}': "
                f"already controlled by '{assignments[test.feature].test_id}'",
                extra={"feature": test.feature, "test_id": test.test_id},
            )
            continue
        assignments[test.feature] = VariantAssignment(
            test_id=test.test_id,
            feature=test.feature,
            variant=variant,
            enabled=test.variants.get(variant, False),
        )
    return assignments


def release_overridden(
    features: Mapping[str, FeatureConfiguration],
    assignments: Mapping[str, VariantAssignment],
) -> Dict[str, VariantAssignment]:
    """Drop assignments for features switched by hand during that same test.

    A record carrying ``metadata["ab_test_override"]`` equal to the test id
    stays under local control; a different test takes the feature again.
    """
    kept: Dict[str, VariantAssignment] = {}
    for key, assignment in assignments.items():
        config = features.get(key)
        if config is not None and config.metadata.get(AB_TEST_OVERRIDE_KEY) == assignment.test_id:
            continue
        kept[key] = assignment
    return kept


def apply_assignments(
    features: Mapping[str, FeatureConfiguration],
    assignments: Mapping[str, VariantAssignment],
) -> Dict[str, FeatureConfiguration]:
    """Build the effective map with experiment overrides applied."""
    effective = dict(features)
    for key, assignment in assignments.items():
        config = effective.get(key)
        if config is None:
            continue
        metadata = dict(config.metadata)
        metadata[AB_TEST_VARIANT_KEY] = assignment.variant
        metadata[AB_TEST_ID_KEY] = assignment.test_id
        effective[key] = config.model_copy(
            update={"enabled": assignment.enabled, "metadata": metadata}
        )
    return effective
