"""Feature Toggles Module.

Provides feature toggle capabilities:
- Local defaults with persisted and remote overrides
- Environment, time window, audience and percentage gates
- Feature dependencies
- A/B testing
- Change notifications and usage analytics
"""

from toggle_engine.core.feature_toggles.models import (
    SCHEMA_VERSION,
    ABTestConfiguration,
    Environment,
    EvaluationContext,
    EvaluationResult,
    FeatureConfiguration,
    FeatureUpdate,
    FeatureUsageEvent,
    UpdateSource,
)
from toggle_engine.core.feature_toggles.registry import (
    DEFAULT_REGISTRY,
    FeatureRegistry,
    WellKnownFeature,
)
from toggle_engine.core.feature_toggles.bucketing import (
    bucket,
    in_rollout,
    select_variant,
)
from toggle_engine.core.feature_toggles.evaluator import Evaluator
from toggle_engine.core.feature_toggles.experiments import (
    VariantAssignment,
    active_tests,
    apply_assignments,
    assign_variants,
    release_overridden,
)
from toggle_engine.core.feature_toggles.merge import MergeOutcome, merge_remote
from toggle_engine.core.feature_toggles.events import (
    FeatureUpdateBroadcaster,
    Subscription,
)
from toggle_engine.core.feature_toggles.store import (
    FeatureStorage,
    InMemoryFeatureStorage,
    FileFeatureStorage,
    RedisFeatureStorage,
)
from toggle_engine.core.feature_toggles.remote import (
    RemoteConfigProvider,
    StaticRemoteConfigProvider,
    HttpRemoteConfigProvider,
)
from toggle_engine.core.feature_toggles.analytics import (
    AnalyticsProvider,
    NullAnalyticsProvider,
    LoggingAnalyticsProvider,
    InMemoryAnalyticsProvider,
)
from toggle_engine.core.feature_toggles.manager import (
    ToggleManager,
    build_toggle_manager,
)
from toggle_engine.core.feature_toggles.decorators import feature_gate

__all__ = [
    # Model
    "SCHEMA_VERSION",
    "ABTestConfiguration",
    "Environment",
    "EvaluationContext",
    "EvaluationResult",
    "FeatureConfiguration",
    "FeatureUpdate",
    "FeatureUsageEvent",
    "UpdateSource",
    # Registry
    "DEFAULT_REGISTRY",
    "FeatureRegistry",
    "WellKnownFeature",
    # Evaluation
    "bucket",
    "in_rollout",
    "select_variant",
    "Evaluator",
    "VariantAssignment",
    "active_tests",
    "apply_assignments",
    "assign_variants",
    "release_overridden",
    "MergeOutcome",
    "merge_remote",
    # Events
    "FeatureUpdateBroadcaster",
    "Subscription",
    # Providers
    "FeatureStorage",
    "InMemoryFeatureStorage",
    "FileFeatureStorage",
    "RedisFeatureStorage",
    "RemoteConfigProvider",
    "StaticRemoteConfigProvider",
    "HttpRemoteConfigProvider",
    "AnalyticsProvider",
    "NullAnalyticsProvider",
    "LoggingAnalyticsProvider",
    "InMemoryAnalyticsProvider",
    # Manager
    "ToggleManager",
    "build_toggle_manager",
    "feature_gate",
]
