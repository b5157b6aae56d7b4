"""Feature Toggle Manager.

Provides high-level toggle management:
- Local defaults merged with persisted and remote configuration
- Synchronous evaluation against an immutable in-memory snapshot
- Write-through mutations with change notifications
- A/B test variant overrides
- Usage analytics
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from toggle_engine.core.config import ToggleSettings, get_settings
from toggle_engine.core.errors import (
    ConfigurationError,
    ErrorCode,
    FeatureNotFoundError,
    OperationResult,
    RemoteConfigError,
    StorageError,
)
from toggle_engine.core.feature_toggles.analytics import (
    AnalyticsProvider,
    LoggingAnalyticsProvider,
    NullAnalyticsProvider,
)
from toggle_engine.core.feature_toggles.evaluator import Evaluator
from toggle_engine.core.feature_toggles.events import (
    DEFAULT_QUEUE_SIZE,
    FeatureUpdateBroadcaster,
    Subscription,
)
from toggle_engine.core.feature_toggles.experiments import (
    VariantAssignment,
    active_tests,
    apply_assignments,
    assign_variants,
    release_overridden,
)
from toggle_engine.core.feature_toggles.merge import merge_ab_tests, merge_remote
from toggle_engine.core.feature_toggles.models import (
    AB_TEST_OVERRIDE_KEY,
    ABTestConfiguration,
    Environment,
    EvaluationContext,
    EvaluationResult,
    FeatureConfiguration,
    FeatureUpdate,
    FeatureUsageEvent,
    UpdateSource,
    clamp_percentage,
    utcnow,
)
from toggle_engine.core.feature_toggles.registry import DEFAULT_REGISTRY, FeatureRegistry
from toggle_engine.core.feature_toggles.remote import HttpRemoteConfigProvider, RemoteConfigProvider
from toggle_engine.core.feature_toggles.store import (
    FeatureStorage,
    FileFeatureStorage,
    InMemoryFeatureStorage,
    RedisFeatureStorage,
)
from toggle_engine.utils.metrics import (
    feature_toggle_refresh_duration_seconds,
    feature_toggle_refresh_total,
    feature_toggle_updates_total,
    feature_toggle_usage_events_total,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
Block = Callable[[], Union[T, Awaitable[T]]]

SYSTEM_FEATURE = "feature_toggle_system"


@dataclass(frozen=True)
class _EngineState:
    """Immutable snapshot swapped in whole on every commit."""
    base: Mapping[str, FeatureConfiguration]
    effective: Mapping[str, FeatureConfiguration]
    ab_tests: Mapping[str, ABTestConfiguration]
    active_tests: Mapping[str, ABTestConfiguration]
    assignments: Mapping[str, VariantAssignment]


_EMPTY_STATE = _EngineState(
    base=MappingProxyType({}),
    effective=MappingProxyType({}),
    ab_tests=MappingProxyType({}),
    active_tests=MappingProxyType({}),
    assignments=MappingProxyType({}),
)


class ToggleManager:
    """Orchestrates feature configuration, evaluation and updates.

    Reads (``is_feature_enabled``, ``evaluate``, ``get_all_features``) work
    on the current snapshot without locking. All mutation paths are
    serialized by a single writer lock and commit a new snapshot atomically.
    """

    def __init__(
        self,
        storage: Optional[FeatureStorage] = None,
        remote_provider: Optional[RemoteConfigProvider] = None,
        analytics_provider: Optional[AnalyticsProvider] = None,
        registry: Optional[FeatureRegistry] = None,
        environment: Union[Environment, str] = Environment.DEV,
        user_id: Optional[str] = None,
        segment: str = "default",
        app_version: Optional[str] = None,
        remote_timeout: float = 10.0,
        analytics_timeout: float = 5.0,
        update_queue_size: int = DEFAULT_QUEUE_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage or InMemoryFeatureStorage()
        self.remote_provider = remote_provider
        self.analytics_provider = analytics_provider or NullAnalyticsProvider()
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.environment = Environment.parse(environment)
        self.app_version = app_version
        self.remote_timeout = remote_timeout
        self.analytics_timeout = analytics_timeout
        self.session_id = f"session-{uuid.uuid4().hex}"
        self.last_remote_error: Optional[str] = None

        self._user_id = user_id
        self._segment = segment
        self._clock = clock or utcnow
        self._evaluator = Evaluator()
        self._updates = FeatureUpdateBroadcaster(update_queue_size)
        self._state = _EMPTY_STATE
        self._initialized = False
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _now(self) -> datetime:
        return self._clock()

    # Identity

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def segment(self) -> str:
        return self._segment

    def set_user_id(self, user_id: Optional[str]) -> None:
        """Set the identity used for rollout bucketing.

        A/B variant assignments follow at the next refresh.
        """
        self._user_id = user_id

    def set_user_segment(self, segment: str) -> None:
        self._segment = segment

    @property
    def context(self) -> EvaluationContext:
        return EvaluationContext(
            user_id=self._user_id,
            segment=self._segment,
            environment=self.environment,
            app_version=self.app_version,
        )

    # Lifecycle

    async def initialize(self) -> OperationResult:
        """Load local state, merge remote state and activate A/B tests.

        Remote failures are logged and leave local state authoritative; only
        a failure to read local storage fails initialization.
        """
        try:
            local_features = await self._load_local_configuration()
            local_tests = {test.test_id: test for test in await self.storage.load_ab_tests()}
        except StorageError as e:
            logger.error(f"Failed to initialize feature toggle manager: {e.message}")
            return OperationResult.failure(e)
        except Exception as e:
            logger.exception("Failed to initialize feature toggle manager")
            return OperationResult.failure(StorageError(str(e)))

        remote_features, remote_tests, remote_error = await self._fetch_remote()
        if remote_error is not None:
            logger.warning(f"Remote configuration unavailable, using local state: {remote_error.message}")

        async with self._get_lock():
            previous = self._state if self._initialized else self._build_state(local_features, {})
            outcome = merge_remote(local_features, remote_features or {})
            tests = merge_ab_tests(local_tests, remote_tests or [])
            state = self._build_state(outcome.features, tests)
            persist_error = await self._persist(
                [outcome.features[key] for key in outcome.changed_keys],
                remote_tests or [],
            )
            self._state = state
            self._initialized = True

        if persist_error is not None:
            logger.error(f"Failed to persist merged configuration: {persist_error}")
        await self._publish(self._diff(previous, state, UpdateSource.REMOTE))
        await self._record_system_event()

        logger.info(
            f"Feature toggle manager initialized with {len(state.effective)} features "
            f"and {len(state.active_tests)} active A/B tests"
        )
        return OperationResult.ok()

    async def refresh_configuration(self) -> OperationResult:
        """Fetch the remote snapshot and merge it into local state.

        The merge commits all-or-nothing: a failed or cancelled fetch leaves
        the in-memory state untouched.
        """
        if self.remote_provider is None:
            logger.debug("No remote config provider configured; nothing to refresh")
            return OperationResult.ok()

        start = time.perf_counter()
        remote_features, remote_tests, remote_error = await self._fetch_remote()
        if remote_error is not None:
            feature_toggle_refresh_total.labels(status="failure").inc()
            logger.warning(f"Failed to refresh remote configuration: {remote_error.message}")
            return OperationResult.failure(remote_error)

        async with self._get_lock():
            previous = self._state
            outcome = merge_remote(previous.base, remote_features or {})
            tests = merge_ab_tests(previous.ab_tests, remote_tests or [])
            state = self._build_state(outcome.features, tests)
            persist_error = await self._persist(
                [outcome.features[key] for key in outcome.changed_keys],
                remote_tests or [],
            )
            self._state = state

        updates = self._diff(previous, state, UpdateSource.REMOTE)
        await self._publish(updates)

        feature_toggle_refresh_duration_seconds.observe(time.perf_counter() - start)
        feature_toggle_refresh_total.labels(status="success").inc()
        logger.info(
            f"Remote configuration refreshed: {len(outcome.changed_keys)} records replaced, "
            f"{len(updates)} state changes",
            extra={"changed": outcome.changed_keys},
        )
        if persist_error is not None:
            return OperationResult.failure(persist_error)
        return OperationResult.ok()

    def close(self) -> None:
        """End every update subscription."""
        self._updates.close()

    # Queries

    def is_feature_enabled(self, key: str, context: Optional[EvaluationContext] = None) -> bool:
        return self.evaluate(key, context).enabled

    def evaluate(self, key: str, context: Optional[EvaluationContext] = None) -> EvaluationResult:
        """Evaluate a feature; never raises, unknown keys are disabled."""
        try:
            return self._evaluator.evaluate(
                key, self._state.effective, context or self.context, self._now()
            )
        except Exception:
            logger.exception(f"Evaluation of '{key}' failed; treating as disabled")
            return EvaluationResult(enabled=False, feature=key, reason="error")

    def get_feature(self, key: str) -> Optional[FeatureConfiguration]:
        config = self._state.effective.get(key)
        return config.model_copy(deep=True) if config is not None else None

    def get_all_features(self) -> Dict[str, FeatureConfiguration]:
        """Deep copy of the effective configuration map."""
        return {key: config.model_copy(deep=True) for key, config in self._state.effective.items()}

    def get_active_ab_tests(self) -> Dict[str, ABTestConfiguration]:
        return {test_id: test.model_copy(deep=True) for test_id, test in self._state.active_tests.items()}

    def get_variant(self, key: str) -> Optional[str]:
        """A/B variant currently controlling ``key``, if any."""
        assignment = self._state.assignments.get(key)
        return assignment.variant if assignment else None

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        """Subscribe to feature updates published from now on."""
        return self._updates.subscribe(maxsize)

    def get_feature_updates_flow(self) -> Subscription:
        return self.subscribe()

    # Mutations

    async def enable_feature(
        self, key: str, source: UpdateSource = UpdateSource.LOCAL
    ) -> OperationResult:
        return await self._set_enabled(key, True, source)

    async def disable_feature(
        self, key: str, source: UpdateSource = UpdateSource.LOCAL
    ) -> OperationResult:
        return await self._set_enabled(key, False, source)

    async def set_feature_rollout_percentage(self, key: str, percentage: int) -> OperationResult:
        """Set the rollout dial, clamped to [0, 100]; publishes no update."""
        async with self._get_lock():
            current = self._state.base.get(key)
            if current is None:
                return OperationResult.failure(FeatureNotFoundError(key))
            try:
                updated = current.with_changes(
                    rollout_percentage=clamp_percentage(int(percentage)),
                    last_updated=self._now(),
                )
            except (TypeError, ValueError) as e:
                return OperationResult.failure(str(e), ErrorCode.INVALID_CONFIG)
            self._state = self._rebuild(self._state, {**self._state.base, key: updated})
            error = await self._persist([updated], [])

        logger.info(f"Updated rollout percentage for {key}: {updated.rollout_percentage}%")
        if error is not None:
            return OperationResult.failure(error)
        return OperationResult.ok()

    async def save_ab_test(self, test: ABTestConfiguration) -> OperationResult:
        """Persist an A/B test; it is activated at the next refresh."""
        async with self._get_lock():
            tests = {**self._state.ab_tests, test.test_id: test}
            previous = self._state
            self._state = _EngineState(
                base=previous.base,
                effective=previous.effective,
                ab_tests=MappingProxyType(tests),
                active_tests=previous.active_tests,
                assignments=previous.assignments,
            )
            error = await self._persist([], [test])
        if error is not None:
            return OperationResult.failure(error)
        return OperationResult.ok()

    async def clear_all(self) -> OperationResult:
        """Delete every feature and A/B test, locally and in storage."""
        async with self._get_lock():
            previous = self._state
            try:
                await self.storage.clear_all()
            except Exception as e:
                logger.error(f"Failed to clear feature toggle storage: {e}")
                return OperationResult.failure(e if isinstance(e, StorageError) else StorageError(str(e)))
            self._state = _EMPTY_STATE

        await self._publish(self._diff(previous, _EMPTY_STATE, UpdateSource.LOCAL))
        logger.info("Cleared all feature toggles")
        return OperationResult.ok()

    async def record_feature_usage(
        self, key: str, context: Optional[Mapping[str, str]] = None
    ) -> OperationResult:
        """Forward a usage event; failures are reported, never raised."""
        try:
            event = FeatureUsageEvent(
                feature=key,
                enabled=self.is_feature_enabled(key),
                session_id=self.session_id,
                user_id=self._user_id,
                context=dict(context or {}),
            )
            await asyncio.wait_for(
                self.analytics_provider.record_event(event), timeout=self.analytics_timeout
            )
        except asyncio.TimeoutError:
            feature_toggle_usage_events_total.labels(status="failure").inc()
            logger.warning(f"Recording usage of '{key}' timed out", extra={"feature": key})
            return OperationResult.failure("analytics timed out", ErrorCode.ANALYTICS_ERROR)
        except Exception as e:
            feature_toggle_usage_events_total.labels(status="failure").inc()
            logger.warning(f"Failed to record usage of '{key}': {e}", extra={"feature": key})
            return OperationResult.failure(str(e), ErrorCode.ANALYTICS_ERROR)
        feature_toggle_usage_events_total.labels(status="success").inc()
        return OperationResult.ok()

    async def run_if_enabled(
        self,
        key: str,
        enabled_block: Block[T],
        disabled_block: Optional[Block[T]] = None,
    ) -> Optional[T]:
        """Run ``enabled_block`` if the feature is on, else ``disabled_block``.

        Blocks may be plain or coroutine functions. Usage is recorded when
        the enabled branch runs. Without a disabled block the disabled path
        returns None.
        """
        if self.is_feature_enabled(key):
            await self.record_feature_usage(key)
            return await _call(enabled_block)
        if disabled_block is None:
            return None
        return await _call(disabled_block)

    # Internals

    async def _load_local_configuration(self) -> Dict[str, FeatureConfiguration]:
        """Registry defaults overlaid with everything persisted."""
        features: Dict[str, FeatureConfiguration] = {}
        for feature in self.registry:
            default = self.registry.default_configuration(feature.key)
            if default is not None:
                features[feature.key] = default
        features.update(await self.storage.load_all_features())
        return features

    async def _fetch_remote(
        self,
    ) -> Tuple[
        Optional[Dict[str, FeatureConfiguration]],
        Optional[List[ABTestConfiguration]],
        Optional[RemoteConfigError],
    ]:
        """Fetch the remote snapshot within the timeout budget."""
        if self.remote_provider is None:
            return None, None, None
        try:
            features, tests = await asyncio.wait_for(
                self.remote_provider.fetch_snapshot(), timeout=self.remote_timeout
            )
        except asyncio.TimeoutError:
            error = RemoteConfigError(
                f"Remote fetch timed out after {self.remote_timeout}s", ErrorCode.REMOTE_TIMEOUT
            )
        except RemoteConfigError as e:
            error = e
        except Exception as e:
            error = RemoteConfigError(f"Remote fetch failed: {e}")
        else:
            self.last_remote_error = None
            return features, tests, None
        self.last_remote_error = error.message
        return None, None, error

    def _build_state(
        self,
        base: Mapping[str, FeatureConfiguration],
        tests: Mapping[str, ABTestConfiguration],
    ) -> _EngineState:
        """Resolve active tests and variant overrides for a base map."""
        running = active_tests(tests.values(), self._now(), self._segment)
        assignments = release_overridden(base, assign_variants(running, self._user_id))
        for assignment in assignments.values():
            logger.info(
                f"A/B test '{assignment.test_id}' assigned variant "
                f"'{assignment.variant}' for {assignment.feature}",
                extra={
                    "feature": assignment.feature,
                    "test_id": assignment.test_id,
                    "variant": assignment.variant,
                },
            )
        return _EngineState(
            base=MappingProxyType(dict(base)),
            effective=MappingProxyType(apply_assignments(base, assignments)),
            ab_tests=MappingProxyType(dict(tests)),
            active_tests=MappingProxyType({test.test_id: test for test in running}),
            assignments=MappingProxyType(assignments),
        )

    def _rebuild(
        self, previous: _EngineState, base: Mapping[str, FeatureConfiguration]
    ) -> _EngineState:
        """New base map under the cached experiment assignments."""
        assignments = release_overridden(base, previous.assignments)
        return _EngineState(
            base=MappingProxyType(dict(base)),
            effective=MappingProxyType(apply_assignments(base, assignments)),
            ab_tests=previous.ab_tests,
            active_tests=previous.active_tests,
            assignments=MappingProxyType(assignments),
        )

    async def _set_enabled(self, key: str, enabled: bool, source: UpdateSource) -> OperationResult:
        async with self._get_lock():
            previous = self._state
            current = previous.base.get(key)
            if current is None:
                current = self.registry.default_configuration(key)
            changes: Dict[str, Any] = {"enabled": enabled, "last_updated": self._now()}
            # An explicit switch pins the feature against the test controlling it
            assignment = previous.assignments.get(key)
            if assignment is not None:
                metadata = dict(current.metadata) if current is not None else {}
                metadata[AB_TEST_OVERRIDE_KEY] = assignment.test_id
                changes["metadata"] = metadata
                logger.info(
                    f"Feature {key} taken out of A/B test '{assignment.test_id}' by {source.value}",
                    extra={"feature": key, "test_id": assignment.test_id, "source": source.value},
                )
            try:
                if current is None:
                    updated = FeatureConfiguration(key=key, **changes)
                else:
                    updated = current.with_changes(**changes)
            except ValueError as e:
                return OperationResult.failure(str(e), ErrorCode.INVALID_CONFIG)
            state = self._rebuild(previous, {**previous.base, key: updated})
            self._state = state
            error = await self._persist([updated], [])

        logger.info(
            f"Feature {key} {'enabled' if enabled else 'disabled'}",
            extra={"feature": key, "source": source.value},
        )
        await self._publish(self._diff(previous, state, source, attribute_experiments=False))
        if error is not None:
            return OperationResult.failure(error)
        return OperationResult.ok()

    async def _persist(
        self,
        features: Iterable[FeatureConfiguration],
        tests: Iterable[ABTestConfiguration],
    ) -> Optional[StorageError]:
        """Write records through to storage; returns the first failure."""
        first_error: Optional[StorageError] = None
        for config in features:
            try:
                await self.storage.save_feature(config)
            except Exception as e:
                logger.error(f"Failed to persist feature '{config.key}': {e}", extra={"feature": config.key})
                first_error = first_error or (e if isinstance(e, StorageError) else StorageError(str(e)))
        for test in tests:
            try:
                await self.storage.save_ab_test(test)
            except Exception as e:
                logger.error(f"Failed to persist A/B test '{test.test_id}': {e}", extra={"test_id": test.test_id})
                first_error = first_error or (e if isinstance(e, StorageError) else StorageError(str(e)))
        return first_error

    def _diff(
        self,
        previous: _EngineState,
        current: _EngineState,
        source: UpdateSource,
        attribute_experiments: bool = True,
    ) -> List[FeatureUpdate]:
        """Updates for every key whose effective ``enabled`` value changed.

        With ``attribute_experiments`` a change that comes with a new variant
        assignment for the key is attributed to A_B_TEST.
        """
        updates: List[FeatureUpdate] = []
        now = self._now()
        for key in sorted(set(previous.effective) | set(current.effective)):
            before = previous.effective.get(key)
            after = current.effective.get(key)
            old_value = before.enabled if before is not None else False
            new_value = after.enabled if after is not None else False
            if old_value == new_value:
                continue
            if attribute_experiments and previous.assignments.get(key) != current.assignments.get(key):
                update_source = UpdateSource.A_B_TEST
            else:
                update_source = source
            updates.append(
                FeatureUpdate(
                    feature=key,
                    old_value=old_value,
                    new_value=new_value,
                    source=update_source,
                    timestamp=now,
                )
            )
        return updates

    async def _publish(self, updates: List[FeatureUpdate]) -> None:
        for update in updates:
            self._updates.publish(update)
            feature_toggle_updates_total.labels(source=update.source.value).inc()
            logger.debug(
                f"Feature {update.feature}: {update.old_value} -> {update.new_value}",
                extra={
                    "feature": update.feature,
                    "source": update.source.value,
                    "old_value": update.old_value,
                    "new_value": update.new_value,
                },
            )
        for update in updates:
            try:
                await asyncio.wait_for(
                    self.analytics_provider.record_feature_toggle(
                        update.feature, update.new_value, update.source
                    ),
                    timeout=self.analytics_timeout,
                )
            except Exception as e:
                logger.warning(f"Analytics rejected toggle change for '{update.feature}': {e}")

    async def _record_system_event(self) -> None:
        event = FeatureUsageEvent(
            feature=SYSTEM_FEATURE,
            enabled=True,
            session_id=self.session_id,
            user_id=self._user_id,
        )
        try:
            await asyncio.wait_for(
                self.analytics_provider.record_event(event), timeout=self.analytics_timeout
            )
        except Exception as e:
            logger.warning(f"Failed to record initialization event: {e}")


async def _call(block: Block[T]) -> T:
    result = block()
    if inspect.isawaitable(result):
        return await result
    return result


def build_toggle_manager(settings: Optional[ToggleSettings] = None, **overrides: Any) -> ToggleManager:
    """Wire a manager from settings.

    Keyword overrides are passed straight to ``ToggleManager`` and win over
    the settings-derived collaborators.
    """
    settings = settings or get_settings()

    backend = settings.STORAGE_BACKEND.lower()
    storage: FeatureStorage
    if backend == "memory":
        storage = InMemoryFeatureStorage()
    elif backend == "file":
        storage = FileFeatureStorage(settings.STORAGE_PATH)
    elif backend == "redis":
        storage = RedisFeatureStorage.from_url(settings.REDIS_URL, namespace=settings.REDIS_NAMESPACE)
    else:
        raise ConfigurationError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")

    try:
        environment = Environment.parse(settings.ENVIRONMENT)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    remote: Optional[RemoteConfigProvider] = None
    if settings.REMOTE_URL:
        remote = HttpRemoteConfigProvider(
            settings.REMOTE_URL,
            timeout=settings.REMOTE_TIMEOUT_SECONDS,
            headers=settings.REMOTE_HEADERS,
        )

    kwargs: Dict[str, Any] = {
        "storage": storage,
        "remote_provider": remote,
        "analytics_provider": LoggingAnalyticsProvider(),
        "environment": environment,
        "app_version": settings.APP_VERSION,
        "remote_timeout": settings.REMOTE_TIMEOUT_SECONDS,
        "update_queue_size": settings.UPDATE_QUEUE_SIZE,
    }
    kwargs.update(overrides)
    return ToggleManager(**kwargs)
