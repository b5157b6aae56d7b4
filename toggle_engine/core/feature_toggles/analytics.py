"""Analytics sinks for feature usage and toggle changes."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Tuple

from toggle_engine.core.feature_toggles.models import FeatureUsageEvent, UpdateSource

logger = logging.getLogger(__name__)


class AnalyticsProvider(ABC):
    """Fire-and-forget sink; batching and retries are the provider's concern."""

    @abstractmethod
    async def record_event(self, event: FeatureUsageEvent) -> None:
        """Record a feature usage event."""
        pass

    @abstractmethod
    async def record_feature_toggle(
        self,
        feature: str,
        enabled: bool,
        source: UpdateSource,
    ) -> None:
        """Record a feature state change."""
        pass


class NullAnalyticsProvider(AnalyticsProvider):
    """Discards everything."""

    async def record_event(self, event: FeatureUsageEvent) -> None:
        return None

    async def record_feature_toggle(self, feature: str, enabled: bool, source: UpdateSource) -> None:
        return None


class LoggingAnalyticsProvider(AnalyticsProvider):
    """Writes events to the log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def record_event(self, event: FeatureUsageEvent) -> None:
        logger.log(
            self.level,
            f"Feature usage: {event.feature} (enabled: {event.enabled})",
            extra={"feature": event.feature},
        )

    async def record_feature_toggle(self, feature: str, enabled: bool, source: UpdateSource) -> None:
        logger.log(
            self.level,
            f"Feature toggle: {feature} = {enabled} (source: {source.value})",
            extra={"feature": feature, "source": source.value},
        )


class InMemoryAnalyticsProvider(AnalyticsProvider):
    """Keeps everything in lists."""

    def __init__(self):
        self.events: List[FeatureUsageEvent] = []
        self.toggles: List[Tuple[str, bool, UpdateSource]] = []

    async def record_event(self, event: FeatureUsageEvent) -> None:
        self.events.append(event)

    async def record_feature_toggle(self, feature: str, enabled: bool, source: UpdateSource) -> None:
        self.toggles.append((feature, enabled, source))

    def clear(self) -> None:
        self.events.clear()
        self.toggles.clear()
