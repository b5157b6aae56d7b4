"""Tests for feature toggle storage backends."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from toggle_engine.core.errors import StorageError
from toggle_engine.core.feature_toggles import (
    ABTestConfiguration,
    FeatureConfiguration,
    FileFeatureStorage,
    InMemoryFeatureStorage,
    RedisFeatureStorage,
)

T0 = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _test(test_id="exp-1"):
    return ABTestConfiguration(
        test_id=test_id,
        feature="new_ui",
        variants={"control": False, "treatment": True},
        traffic_allocation={"control": 50, "treatment": 50},
        start_date=T0,
        end_date=T0 + timedelta(days=7),
    )


class FakeRedis:
    """Minimal async stand-in for the hash commands the store uses."""

    def __init__(self, fail: bool = False):
        self.hashes = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def hset(self, name, key, value):
        self._check()
        self.hashes.setdefault(name, {})[key] = value
        return 1

    async def hget(self, name, key):
        self._check()
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name):
        self._check()
        return dict(self.hashes.get(name, {}))

    async def delete(self, *names):
        self._check()
        removed = 0
        for name in names:
            removed += 1 if self.hashes.pop(name, None) is not None else 0
        return removed


class TestInMemoryStorage:
    """Tests for InMemoryFeatureStorage."""

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        storage = InMemoryFeatureStorage()
        config = FeatureConfiguration(key="x", enabled=True)
        await storage.save_feature(config)

        assert await storage.load_feature("x") == config
        assert await storage.load_feature("missing") is None
        assert await storage.load_all_features() == {"x": config}

    @pytest.mark.asyncio
    async def test_ab_test_replaced_by_id(self):
        storage = InMemoryFeatureStorage()
        await storage.save_ab_test(_test())
        await storage.save_ab_test(_test().with_changes(feature="other"))

        tests = await storage.load_ab_tests()
        assert len(tests) == 1
        assert tests[0].feature == "other"

    @pytest.mark.asyncio
    async def test_clear_all(self):
        storage = InMemoryFeatureStorage()
        await storage.save_feature(FeatureConfiguration(key="x"))
        await storage.save_ab_test(_test())
        await storage.clear_all()
        assert await storage.load_all_features() == {}
        assert await storage.load_ab_tests() == []

    @pytest.mark.asyncio
    async def test_export_import(self):
        source = InMemoryFeatureStorage()
        await source.save_feature(FeatureConfiguration(key="b", enabled=True, last_updated=T0))
        await source.save_feature(FeatureConfiguration(key="a", rollout_percentage=30, last_updated=T0))
        await source.save_ab_test(_test())

        payload = await source.export_configuration()
        document = json.loads(payload)
        assert document["schemaVersion"] == 1
        assert [f["key"] for f in document["features"]] == ["a", "b"]

        target = InMemoryFeatureStorage()
        assert await target.import_configuration(payload) == 3
        assert await target.load_all_features() == await source.load_all_features()
        assert await target.load_ab_tests() == [_test()]

    @pytest.mark.asyncio
    async def test_import_skips_bad_records(self):
        storage = InMemoryFeatureStorage()
        payload = json.dumps({"features": [{"key": "ok"}, {"enabled": True}], "abTests": [{"testId": "x"}]})
        assert await storage.import_configuration(payload) == 1
        assert set(await storage.load_all_features()) == {"ok"}

    @pytest.mark.asyncio
    async def test_import_invalid_json(self):
        storage = InMemoryFeatureStorage()
        with pytest.raises(StorageError):
            await storage.import_configuration("{not json")
        with pytest.raises(StorageError):
            await storage.import_configuration("[]")


class TestFileStorage:
    """Tests for FileFeatureStorage."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "toggles.json"
        storage = FileFeatureStorage(path)
        await storage.save_feature(FeatureConfiguration(key="x", enabled=True, last_updated=T0))
        await storage.save_ab_test(_test())

        reopened = FileFeatureStorage(path)
        loaded = await reopened.load_feature("x")
        assert loaded is not None
        assert loaded.enabled is True
        assert loaded.last_updated == T0
        assert await reopened.load_ab_tests() == [_test()]

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        storage = FileFeatureStorage(tmp_path / "absent.json")
        assert await storage.load_all_features() == {}

    @pytest.mark.asyncio
    async def test_unknown_fields_ignored(self, tmp_path):
        path = tmp_path / "toggles.json"
        path.write_text(json.dumps({
            "schemaVersion": 2,
            "features": [{"key": "x", "enabled": True, "futureField": {"a": 1}}],
        }))
        storage = FileFeatureStorage(path)
        config = await storage.load_feature("x")
        assert config is not None
        assert config.enabled is True

    @pytest.mark.asyncio
    async def test_unreadable_record_skipped(self, tmp_path):
        path = tmp_path / "toggles.json"
        path.write_text(json.dumps({"features": [{"key": "good"}, {"key": ""}, "junk"]}))
        storage = FileFeatureStorage(path)
        assert set(await storage.load_all_features()) == {"good"}

    @pytest.mark.asyncio
    async def test_corrupt_document_raises(self, tmp_path):
        path = tmp_path / "toggles.json"
        path.write_text("{broken")
        storage = FileFeatureStorage(path)
        with pytest.raises(StorageError):
            await storage.load_all_features()

    @pytest.mark.asyncio
    async def test_clear_all_rewrites_file(self, tmp_path):
        path = tmp_path / "toggles.json"
        storage = FileFeatureStorage(path)
        await storage.save_feature(FeatureConfiguration(key="x"))
        await storage.clear_all()
        document = json.loads(path.read_text())
        assert document["features"] == []
        assert document["abTests"] == []


class TestRedisStorage:
    """Tests for RedisFeatureStorage against a fake client."""

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        client = FakeRedis()
        storage = RedisFeatureStorage(client, namespace="ns")
        await storage.save_feature(FeatureConfiguration(key="x", enabled=True, last_updated=T0))
        await storage.save_ab_test(_test())

        assert "x" in client.hashes["ns:feature"]
        assert (await storage.load_feature("x")).enabled is True
        assert await storage.load_feature("missing") is None
        assert set(await storage.load_all_features()) == {"x"}
        assert await storage.load_ab_tests() == [_test()]

    @pytest.mark.asyncio
    async def test_corrupt_value_skipped(self):
        client = FakeRedis()
        client.hashes["feature_toggles:feature"] = {"bad": "{nope", "good": json.dumps({"key": "good"})}
        storage = RedisFeatureStorage(client)
        assert set(await storage.load_all_features()) == {"good"}

    @pytest.mark.asyncio
    async def test_clear_all(self):
        client = FakeRedis()
        storage = RedisFeatureStorage(client)
        await storage.save_feature(FeatureConfiguration(key="x"))
        await storage.clear_all()
        assert await storage.load_all_features() == {}

    @pytest.mark.asyncio
    async def test_errors_wrapped(self):
        storage = RedisFeatureStorage(FakeRedis(fail=True))
        with pytest.raises(StorageError):
            await storage.save_feature(FeatureConfiguration(key="x"))
        with pytest.raises(StorageError):
            await storage.load_all_features()
