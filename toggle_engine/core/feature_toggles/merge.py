"""Remote configuration merge.

Last writer wins by ``last_updated``; the remote side may add or replace
records but never deletes a local one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from toggle_engine.core.feature_toggles.models import ABTestConfiguration, FeatureConfiguration


@dataclass
class MergeOutcome:
    """Merged map plus the keys the remote snapshot replaced or added."""
    features: Dict[str, FeatureConfiguration]
    changed_keys: List[str] = field(default_factory=list)


def merge_remote(
    local: Mapping[str, FeatureConfiguration],
    remote: Mapping[str, FeatureConfiguration],
) -> MergeOutcome:
    merged = dict(local)
    changed: List[str] = []
    for config in remote.values():
        # The record's own key is authoritative over the map key
        current = merged.get(config.key)
        if current is None or config.last_updated > current.last_updated:
            merged[config.key] = config
            changed.append(config.key)
    return MergeOutcome(features=merged, changed_keys=changed)


def merge_ab_tests(
    local: Mapping[str, ABTestConfiguration],
    remote: List[ABTestConfiguration],
) -> Dict[str, ABTestConfiguration]:
    """Remote test definitions replace local ones with the same id."""
    merged = dict(local)
    for test in remote:
        merged[test.test_id] = test
    return merged
