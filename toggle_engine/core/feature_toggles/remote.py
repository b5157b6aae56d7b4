"""Remote configuration providers.

Supplies the latest authoritative snapshot of feature configurations and
A/B tests. Transport, authentication and retries belong to the provider;
the engine only consumes the snapshot and treats it as untrusted.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx
from pydantic import ValidationError

from toggle_engine.core.errors import RemoteConfigError
from toggle_engine.core.feature_toggles.models import ABTestConfiguration, FeatureConfiguration

logger = logging.getLogger(__name__)


class RemoteConfigProvider(ABC):
    """Abstract remote configuration source."""

    @abstractmethod
    async def fetch_configuration(self) -> Dict[str, FeatureConfiguration]:
        """Fetch feature configurations keyed by feature key.

        Raises:
            RemoteConfigError: the snapshot could not be obtained.
        """
        pass

    @abstractmethod
    async def fetch_ab_tests(self) -> List[ABTestConfiguration]:
        """Fetch A/B test definitions.

        Raises:
            RemoteConfigError: the snapshot could not be obtained.
        """
        pass

    async def fetch_snapshot(
        self,
    ) -> Tuple[Dict[str, FeatureConfiguration], Optional[List[ABTestConfiguration]]]:
        """Fetch features and A/B tests for one refresh.

        A failed A/B test fetch is logged and reported as None so that the
        feature snapshot can still be merged.
        """
        features = await self.fetch_configuration()
        try:
            tests: Optional[List[ABTestConfiguration]] = await self.fetch_ab_tests()
        except RemoteConfigError as e:
            logger.warning(f"Failed to fetch remote A/B tests: {e.message}")
            tests = None
        return features, tests


class StaticRemoteConfigProvider(RemoteConfigProvider):
    """In-process provider serving a replaceable snapshot."""

    def __init__(
        self,
        features: Optional[Iterable[FeatureConfiguration]] = None,
        ab_tests: Optional[Iterable[ABTestConfiguration]] = None,
        delay: float = 0.0,
    ):
        self._features: Dict[str, FeatureConfiguration] = {}
        self._ab_tests: List[ABTestConfiguration] = list(ab_tests or [])
        self.delay = delay
        self.error: Optional[Exception] = None
        self.fetch_count = 0
        self.set_features(features or [])

    def set_features(self, features: Iterable[FeatureConfiguration]) -> None:
        self._features = {config.key: config for config in features}

    def set_ab_tests(self, tests: Iterable[ABTestConfiguration]) -> None:
        self._ab_tests = list(tests)

    def fail_with(self, error: Optional[Exception]) -> None:
        """Make subsequent fetches raise ``error`` (None to recover)."""
        self.error = error

    async def _simulate(self) -> None:
        self.fetch_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def fetch_configuration(self) -> Dict[str, FeatureConfiguration]:
        await self._simulate()
        return dict(self._features)

    async def fetch_ab_tests(self) -> List[ABTestConfiguration]:
        await self._simulate()
        return list(self._ab_tests)


def parse_features(payload: Any) -> Dict[str, FeatureConfiguration]:
    """Parse a features payload given as a list or a key -> record map."""
    if isinstance(payload, Mapping):
        items = []
        for key, value in payload.items():
            if isinstance(value, Mapping) and "key" not in value:
                value = {**value, "key": key}
            items.append(value)
    elif isinstance(payload, list):
        items = payload
    else:
        raise RemoteConfigError(f"Unexpected features payload type: {type(payload).__name__}")

    features: Dict[str, FeatureConfiguration] = {}
    for item in items:
        try:
            config = FeatureConfiguration.from_dict(item)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Skipping invalid remote feature entry: {e}")
            continue
        features[config.key] = config
    return features


def parse_ab_tests(payload: Any) -> List[ABTestConfiguration]:
    if not isinstance(payload, list):
        raise RemoteConfigError(f"Unexpected abTests payload type: {type(payload).__name__}")
    tests: List[ABTestConfiguration] = []
    for item in payload:
        try:
            tests.append(ABTestConfiguration.from_dict(item))
        except (ValidationError, TypeError) as e:
            logger.warning(f"Skipping invalid remote A/B test entry: {e}")
    return tests


class HttpRemoteConfigProvider(RemoteConfigProvider):
    """Fetches a JSON document ``{"features": ..., "abTests": [...]}`` over HTTP."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize provider.

        Args:
            url: Location of the configuration document
            timeout: Per-request timeout in seconds
            headers: Extra request headers (e.g. authorization)
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self.transport = transport

    async def _fetch_document(self) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self.transport,
            ) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteConfigError(
                f"Remote config returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteConfigError(f"Remote config request failed: {e}") from e
        except ValueError as e:
            raise RemoteConfigError(f"Remote config is not valid JSON: {e}") from e

        if not isinstance(document, dict):
            raise RemoteConfigError("Remote config document must be a JSON object")
        return document

    async def fetch_configuration(self) -> Dict[str, FeatureConfiguration]:
        document = await self._fetch_document()
        return parse_features(document.get("features", {}))

    async def fetch_ab_tests(self) -> List[ABTestConfiguration]:
        document = await self._fetch_document()
        return parse_ab_tests(document.get("abTests", []))

    async def fetch_snapshot(
        self,
    ) -> Tuple[Dict[str, FeatureConfiguration], Optional[List[ABTestConfiguration]]]:
        """Fetch the document once so features and tests share a version."""
        document = await self._fetch_document()
        features = parse_features(document.get("features", {}))
        try:
            tests: Optional[List[ABTestConfiguration]] = parse_ab_tests(document.get("abTests", []))
        except RemoteConfigError as e:
            logger.warning(f"Failed to parse remote A/B tests: {e.message}")
            tests = None
        return features, tests
