"""Feature Toggle Data Model.

Provides the records the engine works with:
- Feature configurations and A/B test definitions (persisted schema)
- Update and usage events
- Evaluation context and results
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
ALL_ENVIRONMENTS = "all"
AB_TEST_VARIANT_KEY = "ab_test_variant"
AB_TEST_ID_KEY = "ab_test_id"
AB_TEST_OVERRIDE_KEY = "ab_test_override"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Environment(str, Enum):
    """Deployment environment the engine runs in."""
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @classmethod
    def parse(cls, value: "Environment | str") -> "Environment":
        if isinstance(value, Environment):
            return value
        label = normalize_environment_label(value)
        try:
            return cls(label)
        except ValueError:
            raise ValueError(f"Unknown environment: {value!r}") from None


_ENVIRONMENT_ALIASES = {
    "development": "dev",
    "develop": "dev",
    "stage": "staging",
    "production": "prod",
}


def normalize_environment_label(label: str) -> str:
    """Map long environment names onto their canonical short labels."""
    lowered = label.strip().lower()
    return _ENVIRONMENT_ALIASES.get(lowered, lowered)


def environment_matches(labels: Iterable[str], current: Environment) -> bool:
    """Check whether a set of environment labels admits ``current``."""
    normalized = {normalize_environment_label(label) for label in labels}
    return ALL_ENVIRONMENTS in normalized or current.value in normalized


class UpdateSource(Enum):
    """Origin of a feature state transition."""
    LOCAL = "LOCAL"
    REMOTE = "REMOTE"
    A_B_TEST = "A_B_TEST"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"


class _Schema(BaseModel):
    """Base for persisted records: camelCase on the wire, unknown fields ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the stable wire schema."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create from the wire schema (either field naming is accepted)."""
        return cls.model_validate(data)

    def with_changes(self, **changes: Any):
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)


class FeatureConfiguration(_Schema):
    """Authoritative record for one feature key."""

    key: str = Field(min_length=1)
    enabled: bool = False
    rollout_percentage: int = 100
    target_audience: FrozenSet[str] = frozenset()
    environment: FrozenSet[str] = frozenset({ALL_ENVIRONMENTS})
    minimum_app_version: Optional[str] = None
    maximum_app_version: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    dependencies: FrozenSet[str] = frozenset()
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _drop_self_dependency(cls, data: Any) -> Any:
        if isinstance(data, dict):
            key = data.get("key")
            deps = data.get("dependencies")
            if key and deps and key in deps:
                logger.warning(
                    f"Feature '{key}' lists itself as a dependency; ignoring it",
                    extra={"feature": key},
                )
                data = dict(data)
                data["dependencies"] = [d for d in deps if d != key]
        return data

    @field_validator("rollout_percentage", mode="before")
    @classmethod
    def _clamp_rollout(cls, value: Any) -> int:
        try:
            return clamp_percentage(int(value))
        except (TypeError, ValueError):
            raise ValueError(f"rolloutPercentage must be an integer, got {value!r}") from None

    @field_validator("start_date", "end_date", "last_updated")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @field_serializer("target_audience", "environment", "dependencies")
    def _sorted_set(self, value: FrozenSet[str]) -> list:
        return sorted(value)

    @property
    def ab_test_variant(self) -> Optional[str]:
        return self.metadata.get(AB_TEST_VARIANT_KEY)


class ABTestConfiguration(_Schema):
    """A running experiment that controls one feature."""

    test_id: str = Field(min_length=1)
    feature: str = Field(min_length=1)
    variants: Dict[str, bool] = Field(default_factory=dict)
    traffic_allocation: Dict[str, int] = Field(default_factory=dict)
    start_date: datetime
    end_date: datetime
    target_audience: FrozenSet[str] = frozenset()

    @field_validator("start_date", "end_date")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_serializer("target_audience")
    def _sorted_set(self, value: FrozenSet[str]) -> list:
        return sorted(value)

    def is_active(self, now: datetime) -> bool:
        """Inclusive window check."""
        return self.start_date <= _as_utc(now) <= self.end_date

    def matches_audience(self, segment: Optional[str]) -> bool:
        if not self.target_audience:
            return True
        return segment in self.target_audience


def clamp_percentage(value: int) -> int:
    return max(0, min(100, value))


@dataclass(frozen=True)
class FeatureUpdate:
    """An ``enabled`` state transition for one feature."""
    feature: str
    old_value: bool
    new_value: bool
    source: UpdateSource = UpdateSource.LOCAL
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "source": self.source.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class FeatureUsageEvent:
    """A feature query recorded for analytics."""
    feature: str
    enabled: bool
    session_id: str
    user_id: Optional[str] = None
    context: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "enabled": self.enabled,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "sessionId": self.session_id,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class EvaluationContext:
    """Who is asking, and where."""
    user_id: Optional[str] = None
    segment: str = "default"
    environment: Environment = Environment.DEV
    app_version: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    """Result of feature evaluation."""
    enabled: bool
    feature: str
    reason: str = ""
    variant: Optional[str] = None

    def __bool__(self) -> bool:
        return self.enabled
