"""Feature evaluation.

Decides whether a feature is active for a context at a point in time. Gates
run cheapest first and short-circuit; the recursive dependency check runs
last. Evaluation never raises: missing information resolves to disabled.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import FrozenSet, Mapping, Optional, Set, Tuple

from toggle_engine.core.feature_toggles.bucketing import in_rollout
from toggle_engine.core.feature_toggles.models import (
    EvaluationContext,
    EvaluationResult,
    FeatureConfiguration,
    environment_matches,
)
from toggle_engine.utils.metrics import feature_toggle_dependency_cycles_total

logger = logging.getLogger(__name__)

REASON_ENABLED = "enabled"
REASON_NOT_FOUND = "not_found"
REASON_DISABLED = "disabled"
REASON_ENVIRONMENT = "environment"
REASON_NOT_STARTED = "not_started"
REASON_EXPIRED = "expired"
REASON_AUDIENCE = "audience"
REASON_APP_VERSION = "app_version"
REASON_ROLLOUT = "rollout"
REASON_DEPENDENCY = "dependency"
REASON_DEPENDENCY_CYCLE = "dependency_cycle"


def parse_version(version: str) -> Tuple[int, ...]:
    """Parse a dotted numeric version ("2025.1.0")."""
    return tuple(int(part) for part in version.strip().split("."))


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1; missing trailing parts count as zero."""
    a, b = parse_version(left), parse_version(right)
    width = max(len(a), len(b))
    a += (0,) * (width - len(a))
    b += (0,) * (width - len(b))
    return (a > b) - (a < b)


class Evaluator:
    """Evaluates feature configurations against a context."""

    def __init__(self) -> None:
        self._reported_cycles: Set[FrozenSet[str]] = set()
        self._lock = threading.Lock()

    def is_enabled(
        self,
        key: str,
        features: Mapping[str, FeatureConfiguration],
        context: EvaluationContext,
        now: datetime,
    ) -> bool:
        return self.evaluate(key, features, context, now).enabled

    def evaluate(
        self,
        key: str,
        features: Mapping[str, FeatureConfiguration],
        context: EvaluationContext,
        now: datetime,
    ) -> EvaluationResult:
        """Evaluate ``key`` using ``features`` to resolve dependencies."""
        return self._evaluate(key, features, context, now, ())

    def _evaluate(
        self,
        key: str,
        features: Mapping[str, FeatureConfiguration],
        context: EvaluationContext,
        now: datetime,
        path: Tuple[str, ...],
    ) -> EvaluationResult:
        config = features.get(key)
        if config is None:
            return EvaluationResult(enabled=False, feature=key, reason=REASON_NOT_FOUND)

        variant = config.ab_test_variant
        reason = self.check_gates(config, context, now)
        if reason is not None:
            return EvaluationResult(enabled=False, feature=key, reason=reason, variant=variant)

        if config.dependencies:
            path = path + (key,)
            for dependency in sorted(config.dependencies):
                if dependency in path:
                    self._report_cycle(path[path.index(dependency):])
                    return EvaluationResult(
                        enabled=False, feature=key, reason=REASON_DEPENDENCY_CYCLE, variant=variant
                    )
                result = self._evaluate(dependency, features, context, now, path)
                if not result.enabled:
                    if result.reason == REASON_DEPENDENCY_CYCLE:
                        reason = REASON_DEPENDENCY_CYCLE
                    else:
                        reason = f"{REASON_DEPENDENCY}:{dependency}"
                    return EvaluationResult(enabled=False, feature=key, reason=reason, variant=variant)

        return EvaluationResult(enabled=True, feature=key, reason=REASON_ENABLED, variant=variant)

    def check_gates(
        self,
        config: FeatureConfiguration,
        context: EvaluationContext,
        now: datetime,
    ) -> Optional[str]:
        """Run the non-recursive gates; return the failing reason or None."""
        if not config.enabled:
            return REASON_DISABLED

        if not environment_matches(config.environment, context.environment):
            return REASON_ENVIRONMENT

        if config.start_date is not None and now < config.start_date:
            return REASON_NOT_STARTED
        if config.end_date is not None and now > config.end_date:
            return REASON_EXPIRED

        if config.target_audience and context.segment not in config.target_audience:
            return REASON_AUDIENCE

        # Version bounds only apply when the caller knows its version
        if context.app_version and not self._version_allowed(config, context.app_version):
            return REASON_APP_VERSION

        if config.rollout_percentage < 100 and not in_rollout(
            context.user_id, config.rollout_percentage
        ):
            return REASON_ROLLOUT

        return None

    def _version_allowed(self, config: FeatureConfiguration, app_version: str) -> bool:
        try:
            if config.minimum_app_version and compare_versions(
                app_version, config.minimum_app_version
            ) < 0:
                return False
            if config.maximum_app_version and compare_versions(
                app_version, config.maximum_app_version
            ) >= 0:
                return False
        except ValueError:
            logger.debug(f"Unparsable version bound on '{config.key}'", extra={"feature": config.key})
            return False
        return True

    def _report_cycle(self, cycle: Tuple[str, ...]) -> None:
        members = frozenset(cycle)
        with self._lock:
            if members in self._reported_cycles:
                return
            self._reported_cycles.add(members)
        feature_toggle_dependency_cycles_total.inc()
        logger.error(
            f"Dependency cycle detected: {' -> '.join(cycle + (cycle[0],))}; "
            f"treating all members as disabled",
            extra={"cycle": list(cycle)},
        )
