from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from keepalive.models import LogEntry
from keepalive.registry import (
    DomainNotFoundError,
    DomainRegistry,
    ValidationError,
    VerificationError,
    config_key,
    logs_key,
)
from keepalive.store import RedisStore, StorageError


NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


class _CountingStore:
    def __init__(self, inner: RedisStore):
        self.inner = inner
        self.sets: list[str] = []

    async def get(self, key: str) -> str | None:
        return await self.inner.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.sets.append(key)
        return await self.inner.set(key, value)

    async def delete(self, key: str) -> bool:
        return await self.inner.delete(key)


class _UndeletableStore(_CountingStore):
    async def delete(self, key: str) -> bool:
        raise StorageError("delete not permitted")


@pytest.mark.asyncio
async def test_add_then_list_and_readd_is_idempotent(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)

    code = await registry.add("x.example")
    entries = await registry.list()
    assert [e.domain for e in entries] == ["x.example"]
    assert entries[0].verification_code == code
    assert entries[0].added_at == NOW

    again = await registry.add("x.example", 15)
    assert again == code
    assert [e.domain for e in await registry.list()] == ["x.example"]
    assert (await registry.get_config("x.example")).interval == 15


@pytest.mark.asyncio
async def test_add_strips_and_rejects_blank_domain(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    await registry.add("  y.example  ", 3)
    assert [e.domain for e in await registry.list()] == ["y.example"]
    with pytest.raises(ValidationError):
        await registry.add("   ")


@pytest.mark.asyncio
async def test_remove_requires_matching_code(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    code = await registry.add("x.example", 10)

    with pytest.raises(VerificationError):
        await registry.remove("x.example", "WRONG123")
    assert [e.domain for e in await registry.list()] == ["x.example"]
    assert await fake_store.get(config_key("x.example")) is not None

    result = await registry.remove("x.example", code)
    assert result.success is True
    assert result.is_admin is False
    assert await registry.list() == []
    assert await fake_store.get(config_key("x.example")) is None


@pytest.mark.asyncio
async def test_remove_with_admin_code(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, admin_code="ADMIN-OVERRIDE", clock=lambda: NOW)
    await registry.add("x.example")
    result = await registry.remove("x.example", "ADMIN-OVERRIDE")
    assert result.is_admin is True
    assert await registry.list() == []


@pytest.mark.asyncio
async def test_empty_admin_code_never_authorizes(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, admin_code="", clock=lambda: NOW)
    await registry.add("x.example")
    with pytest.raises(VerificationError):
        await registry.remove("x.example", "")


@pytest.mark.asyncio
async def test_remove_unknown_domain(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    with pytest.raises(DomainNotFoundError):
        await registry.remove("missing.example", "ABCD1234")


@pytest.mark.asyncio
async def test_remove_keeps_logs(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    code = await registry.add("x.example")
    await registry.append_log("x.example", LogEntry(status="success", url="https://x.example", attempts=1, status_code=200))
    await registry.remove("x.example", code)
    assert len(await registry.get_logs("x.example")) == 1


@pytest.mark.asyncio
async def test_config_delete_failure_does_not_block_removal(fake_store: RedisStore) -> None:
    store = _UndeletableStore(fake_store)
    registry = DomainRegistry(store, clock=lambda: NOW)
    code = await registry.add("x.example")
    result = await registry.remove("x.example", code)
    assert result.success is True
    assert await registry.list() == []


@pytest.mark.asyncio
async def test_legacy_registry_is_upgraded_once(fake_store: RedisStore) -> None:
    await fake_store.set("domains", json.dumps(["a.example", "b.example"]))
    store = _CountingStore(fake_store)
    registry = DomainRegistry(store, clock=lambda: NOW)

    entries = await registry.list()
    assert [e.domain for e in entries] == ["a.example", "b.example"]
    assert all(len(e.verification_code) == 8 for e in entries)

    raw = json.loads(await fake_store.get("domains"))
    assert [item["domain"] for item in raw] == ["a.example", "b.example"]
    assert [item["verificationCode"] for item in raw] == [e.verification_code for e in entries]
    assert store.sets == ["domains"]

    again = await registry.list()
    assert again == entries
    assert store.sets == ["domains"]


@pytest.mark.asyncio
async def test_get_config_defaults_and_derives_next_check(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    cfg = await registry.get_config("unknown.example")
    assert cfg.interval == 5
    assert cfg.last_checked is None
    assert cfg.next_check_time == NOW + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_touch_last_checked_and_update_interval(fake_store: RedisStore) -> None:
    clock_now = [NOW]
    registry = DomainRegistry(fake_store, clock=lambda: clock_now[0])
    await registry.add("x.example", 5)

    assert await registry.touch_last_checked("x.example") is True
    clock_now[0] = NOW + timedelta(minutes=7)
    cfg = await registry.get_config("x.example")
    assert cfg.last_checked == NOW
    assert cfg.next_check_time == NOW + timedelta(minutes=10)

    assert await registry.update_interval("x.example", 30) is True
    cfg = await registry.get_config("x.example")
    assert cfg.interval == 30
    assert cfg.last_checked == NOW

    stored = json.loads(await fake_store.get(config_key("x.example")))
    assert set(stored) == {"interval", "lastChecked"}


@pytest.mark.asyncio
async def test_log_list_is_bounded_and_newest_first(fake_store: RedisStore) -> None:
    registry = DomainRegistry(fake_store, clock=lambda: NOW)
    for i in range(100):
        ok = await registry.append_log(
            "x.example",
            LogEntry(status="success", url="https://x.example", attempts=i + 1, status_code=200),
        )
        assert ok is True

    stored = json.loads(await fake_store.get(logs_key("x.example")))
    assert len(stored) == 50
    assert stored[0]["attempts"] == 51
    assert stored[-1]["attempts"] == 100

    logs = await registry.get_logs("x.example", 20)
    assert len(logs) == 20
    assert [item["attempts"] for item in logs] == list(range(100, 80, -1))
    assert await registry.get_logs("x.example", 0) == []

    assert await registry.clear_logs("x.example") is True
    assert await registry.get_logs("x.example") == []


@pytest.mark.asyncio
async def test_storage_failures_degrade(broken_store) -> None:
    registry = DomainRegistry(broken_store, clock=lambda: NOW)

    assert await registry.list() == []
    assert await registry.list_configs() == []
    assert await registry.get_logs("x.example") == []
    assert await registry.append_log("x.example", LogEntry(status="failure", url="u", attempts=1)) is False
    assert await registry.clear_logs("x.example") is False
    assert await registry.touch_last_checked("x.example") is False
    assert await registry.update_interval("x.example", 5) is False

    cfg = await registry.get_config("x.example")
    assert cfg.interval == 5
    assert cfg.next_check_time == NOW + timedelta(minutes=5)

    with pytest.raises(StorageError):
        await registry.add("x.example")


class _ReadOnlyStore(_CountingStore):
    async def set(self, key: str, value: str) -> bool:
        self.sets.append(key)
        raise StorageError("read-only replica")


@pytest.mark.asyncio
async def test_legacy_duplicates_collapse_to_one_entry(fake_store: RedisStore) -> None:
    await fake_store.set("domains", json.dumps(["a.example", "a.example", "b.example"]))
    registry = DomainRegistry(fake_store, clock=lambda: NOW)

    entries = await registry.list()
    assert [e.domain for e in entries] == ["a.example", "b.example"]

    await registry.remove("a.example", entries[0].verification_code)
    assert [e.domain for e in await registry.list()] == ["b.example"]


@pytest.mark.asyncio
async def test_failed_upgrade_write_back_still_returns_entries(fake_store: RedisStore) -> None:
    await fake_store.set("domains", json.dumps(["a.example", "b.example"]))
    store = _ReadOnlyStore(fake_store)
    registry = DomainRegistry(store, clock=lambda: NOW)

    entries = await registry.list()
    assert [e.domain for e in entries] == ["a.example", "b.example"]
    assert store.sets == ["domains"]
    # Stored form is untouched, so the next read tries the upgrade again.
    assert json.loads(await fake_store.get("domains")) == ["a.example", "b.example"]
