"""Feature Toggle Storage.

Provides durable key/value backends for feature configurations and A/B
test definitions:
- In-memory store
- File-based store (single JSON document)
- Redis store
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from toggle_engine.core.errors import StorageError
from toggle_engine.core.feature_toggles.models import (
    SCHEMA_VERSION,
    ABTestConfiguration,
    FeatureConfiguration,
)

logger = logging.getLogger(__name__)


def _parse_feature(data: Any) -> Optional[FeatureConfiguration]:
    try:
        return FeatureConfiguration.from_dict(data)
    except (ValidationError, TypeError) as e:
        logger.error(f"Skipping unreadable feature record: {e}")
        return None


def _parse_ab_test(data: Any) -> Optional[ABTestConfiguration]:
    try:
        return ABTestConfiguration.from_dict(data)
    except (ValidationError, TypeError) as e:
        logger.error(f"Skipping unreadable A/B test record: {e}")
        return None


class FeatureStorage(ABC):
    """Abstract base class for toggle persistence."""

    @abstractmethod
    async def save_feature(self, config: FeatureConfiguration) -> None:
        """Save a feature configuration."""
        pass

    @abstractmethod
    async def load_feature(self, key: str) -> Optional[FeatureConfiguration]:
        """Load a feature configuration by key."""
        pass

    @abstractmethod
    async def load_all_features(self) -> Dict[str, FeatureConfiguration]:
        """Load every stored feature configuration."""
        pass

    @abstractmethod
    async def save_ab_test(self, test: ABTestConfiguration) -> None:
        """Save an A/B test, replacing one with the same id."""
        pass

    @abstractmethod
    async def load_ab_tests(self) -> List[ABTestConfiguration]:
        """Load every stored A/B test."""
        pass

    @abstractmethod
    async def clear_all(self) -> None:
        """Remove all features and A/B tests."""
        pass

    async def export_configuration(self) -> str:
        """Dump all records as a JSON backup document."""
        features = await self.load_all_features()
        tests = await self.load_ab_tests()
        return json.dumps(
            {
                "schemaVersion": SCHEMA_VERSION,
                "features": [features[key].to_dict() for key in sorted(features)],
                "abTests": [t.to_dict() for t in sorted(tests, key=lambda t: t.test_id)],
            },
            indent=2,
        )

    async def import_configuration(self, payload: str) -> int:
        """Restore records from ``export_configuration`` output.

        Returns the number of records imported; unreadable records are
        skipped.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid configuration backup: {e}") from e
        if not isinstance(data, dict):
            raise StorageError("Invalid configuration backup: expected an object")

        imported = 0
        for item in data.get("features", []):
            config = _parse_feature(item)
            if config is not None:
                await self.save_feature(config)
                imported += 1
        for item in data.get("abTests", []):
            test = _parse_ab_test(item)
            if test is not None:
                await self.save_ab_test(test)
                imported += 1
        logger.info(f"Imported {imported} feature toggle records")
        return imported


class InMemoryFeatureStorage(FeatureStorage):
    """In-memory storage, for development and tests."""

    def __init__(self):
        self._features: Dict[str, FeatureConfiguration] = {}
        self._ab_tests: Dict[str, ABTestConfiguration] = {}
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def save_feature(self, config: FeatureConfiguration) -> None:
        async with self._get_lock():
            self._features[config.key] = config

    async def load_feature(self, key: str) -> Optional[FeatureConfiguration]:
        async with self._get_lock():
            return self._features.get(key)

    async def load_all_features(self) -> Dict[str, FeatureConfiguration]:
        async with self._get_lock():
            return dict(self._features)

    async def save_ab_test(self, test: ABTestConfiguration) -> None:
        async with self._get_lock():
            self._ab_tests[test.test_id] = test

    async def load_ab_tests(self) -> List[ABTestConfiguration]:
        async with self._get_lock():
            return list(self._ab_tests.values())

    async def clear_all(self) -> None:
        async with self._get_lock():
            self._features.clear()
            self._ab_tests.clear()


class FileFeatureStorage(FeatureStorage):
    """File-based storage: one JSON document rewritten on every save."""

    def __init__(self, file_path: str | Path):
        self.file_path = Path(file_path)
        self._features: Dict[str, FeatureConfiguration] = {}
        self._ab_tests: Dict[str, ABTestConfiguration] = {}
        self._loaded = False
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def _ensure_loaded(self) -> None:
        """Load records from file if not already loaded."""
        if self._loaded:
            return

        if self.file_path.exists():
            try:
                data = json.loads(self.file_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Failed to read {self.file_path}: {e}") from e
            if not isinstance(data, dict):
                raise StorageError(f"Failed to read {self.file_path}: expected an object")

            for item in data.get("features", []):
                config = _parse_feature(item)
                if config is not None:
                    self._features[config.key] = config
            for item in data.get("abTests", []):
                test = _parse_ab_test(item)
                if test is not None:
                    self._ab_tests[test.test_id] = test

        self._loaded = True

    async def _save_to_file(self) -> None:
        """Write all records, replacing the file atomically."""
        data = {
            "schemaVersion": SCHEMA_VERSION,
            "features": [self._features[k].to_dict() for k in sorted(self._features)],
            "abTests": [self._ab_tests[k].to_dict() for k in sorted(self._ab_tests)],
            "updatedAt": datetime.now(timezone.utc).isoformat(),
        }
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.file_path}: {e}") from e

    async def save_feature(self, config: FeatureConfiguration) -> None:
        async with self._get_lock():
            await self._ensure_loaded()
            self._features[config.key] = config
            await self._save_to_file()

    async def load_feature(self, key: str) -> Optional[FeatureConfiguration]:
        async with self._get_lock():
            await self._ensure_loaded()
            return self._features.get(key)

    async def load_all_features(self) -> Dict[str, FeatureConfiguration]:
        async with self._get_lock():
            await self._ensure_loaded()
            return dict(self._features)

    async def save_ab_test(self, test: ABTestConfiguration) -> None:
        async with self._get_lock():
            await self._ensure_loaded()
            self._ab_tests[test.test_id] = test
            await self._save_to_file()

    async def load_ab_tests(self) -> List[ABTestConfiguration]:
        async with self._get_lock():
            await self._ensure_loaded()
            return list(self._ab_tests.values())

    async def clear_all(self) -> None:
        async with self._get_lock():
            self._features.clear()
            self._ab_tests.clear()
            self._loaded = True
            await self._save_to_file()
            logger.info("Cleared all feature toggle data")


class RedisFeatureStorage(FeatureStorage):
    """Redis storage: one hash for features, one for A/B tests.

    Args:
        client: a ``redis.asyncio.Redis`` client created with
            ``decode_responses=True``
        namespace: key prefix shared by both hashes
    """

    def __init__(self, client: Any, namespace: str = "feature_toggles"):
        self.client = client
        self.namespace = namespace
        self.features_key = f"{namespace}:feature"
        self.ab_tests_key = f"{namespace}:ab_test"

    @classmethod
    def from_url(cls, url: str, namespace: str = "feature_toggles") -> "RedisFeatureStorage":
        import redis.asyncio as redis

        return cls(redis.from_url(url, decode_responses=True), namespace=namespace)

    async def save_feature(self, config: FeatureConfiguration) -> None:
        try:
            await self.client.hset(self.features_key, config.key, json.dumps(config.to_dict()))
        except Exception as e:
            raise StorageError(f"Failed to save feature '{config.key}' to Redis: {e}") from e

    async def load_feature(self, key: str) -> Optional[FeatureConfiguration]:
        try:
            raw = await self.client.hget(self.features_key, key)
        except Exception as e:
            raise StorageError(f"Failed to load feature '{key}' from Redis: {e}") from e
        if raw is None:
            return None
        return _parse_feature(self._decode(raw))

    async def load_all_features(self) -> Dict[str, FeatureConfiguration]:
        try:
            raw_map = await self.client.hgetall(self.features_key)
        except Exception as e:
            raise StorageError(f"Failed to load features from Redis: {e}") from e
        features: Dict[str, FeatureConfiguration] = {}
        for raw in raw_map.values():
            config = _parse_feature(self._decode(raw))
            if config is not None:
                features[config.key] = config
        return features

    async def save_ab_test(self, test: ABTestConfiguration) -> None:
        try:
            await self.client.hset(self.ab_tests_key, test.test_id, json.dumps(test.to_dict()))
        except Exception as e:
            raise StorageError(f"Failed to save A/B test '{test.test_id}' to Redis: {e}") from e

    async def load_ab_tests(self) -> List[ABTestConfiguration]:
        try:
            raw_map = await self.client.hgetall(self.ab_tests_key)
        except Exception as e:
            raise StorageError(f"Failed to load A/B tests from Redis: {e}") from e
        tests = [_parse_ab_test(self._decode(raw)) for raw in raw_map.values()]
        return [test for test in tests if test is not None]

    async def clear_all(self) -> None:
        try:
            await self.client.delete(self.features_key, self.ab_tests_key)
        except Exception as e:
            raise StorageError(f"Failed to clear Redis feature toggle data: {e}") from e
        logger.info("Cleared all feature toggle data")

    @staticmethod
    def _decode(raw: Any) -> Any:
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return None
