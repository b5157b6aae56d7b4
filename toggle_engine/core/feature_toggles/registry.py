"""Registry of well-known feature keys and their defaults.

The engine itself is keyed by plain strings; the registry only supplies the
baseline configuration for keys the application knows about up front.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, Optional

from toggle_engine.core.feature_toggles.models import (
    ALL_ENVIRONMENTS,
    EPOCH,
    FeatureConfiguration,
)


@dataclass(frozen=True)
class WellKnownFeature:
    """A feature key known at build time."""
    key: str
    default_enabled: bool = False
    description: str = ""


class FeatureRegistry:
    """Well-known feature keys with their default state."""

    def __init__(self, features: Optional[Iterable[WellKnownFeature]] = None):
        self._features: Dict[str, WellKnownFeature] = {}
        for feature in features or []:
            self.register(feature)

    def register(self, feature: WellKnownFeature) -> None:
        self._features[feature.key] = feature

    def get(self, key: str) -> Optional[WellKnownFeature]:
        return self._features.get(key)

    def keys(self) -> list[str]:
        return list(self._features)

    def __contains__(self, key: object) -> bool:
        return key in self._features

    def __iter__(self) -> Iterator[WellKnownFeature]:
        return iter(self._features.values())

    def __len__(self) -> int:
        return len(self._features)

    def default_configuration(self, key: str) -> Optional[FeatureConfiguration]:
        """Baseline record for a well-known key.

        Defaults are stamped with the UNIX epoch so that any explicit local
        or remote record for the same key supersedes them.
        """
        feature = self._features.get(key)
        if feature is None:
            return None
        return FeatureConfiguration(
            key=feature.key,
            enabled=feature.default_enabled,
            environment=frozenset({ALL_ENVIRONMENTS}),
            last_updated=EPOCH,
        )


DEFAULT_FEATURES = [
    # Security
    WellKnownFeature("api_key_encryption", True, "Encrypt stored API keys"),
    WellKnownFeature("certificate_pinning", True, "Pin TLS certificates"),
    WellKnownFeature("biometric_auth", False, "Biometric unlock"),
    # UI
    WellKnownFeature("compose_multiplatform", True),
    WellKnownFeature("dark_mode", True),
    WellKnownFeature("weather_animations", True),
    WellKnownFeature("location_search", True),
    WellKnownFeature("weather_maps", False),
    # Performance
    WellKnownFeature("telemetry_monitoring", True),
    WellKnownFeature("crash_analytics", True),
    WellKnownFeature("performance_monitoring", True),
    WellKnownFeature("memory_optimization", False),
    # Business
    WellKnownFeature("weather_alerts", True),
    WellKnownFeature("push_notifications", False),
    WellKnownFeature("premium_features", False),
    WellKnownFeature("weather_widgets", True),
    WellKnownFeature("offline_mode", True),
    # Experimental
    WellKnownFeature("ai_weather_predictions", False),
    WellKnownFeature("voice_commands", False),
    WellKnownFeature("ar_weather_view", False),
    WellKnownFeature("weather_social_sharing", False),
    # Development
    WellKnownFeature("debug_logging", False),
    WellKnownFeature("mock_data", False),
    WellKnownFeature("performance_overlay", False),
    WellKnownFeature("feature_showcase", False),
]

DEFAULT_REGISTRY = FeatureRegistry(DEFAULT_FEATURES)
