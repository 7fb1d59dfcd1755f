from __future__ import annotations

import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog

from keepalive.models import (
    DEFAULT_INTERVAL_MINUTES,
    DomainConfig,
    DomainEntry,
    LogEntry,
    generate_verification_code,
    upgrade,
    utc_now,
)
from keepalive.scheduling import next_check_time
from keepalive.store import KeyValueStore, StorageError


logger = structlog.get_logger(__name__)

DOMAINS_KEY = "domains"
MAX_STORED_LOGS = 50
DEFAULT_LOG_LIMIT = 20


class ValidationError(Exception):
    """A caller-supplied value was rejected; maps to a 4xx response."""


class DomainNotFoundError(ValidationError):
    pass


class VerificationError(ValidationError):
    pass


@dataclass(frozen=True)
class RemoveResult:
    success: bool
    is_admin: bool


def config_key(domain: str) -> str:
    return f"domain:{domain}"


def logs_key(domain: str) -> str:
    return f"domain:{domain}:logs"


def _decode_json(raw: str | None, *, key: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring undecodable value", key=key)
        return None


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _codes_match(supplied: str, expected: str) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


class DomainRegistry:
    """
    Durable list of monitored domains plus their per-domain config and logs.

    Every mutation is a plain get-then-set on a single key. Nothing is locked:
    two writers racing on the same key resolve as "last write wins", which is
    acceptable for a single scheduler process.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        admin_code: str = "",
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.admin_code = (admin_code or "").strip()
        self.clock = clock or utc_now

    # -----------------
    # Domain list
    # -----------------
    async def _read_entries(self) -> list[DomainEntry]:
        raw = _decode_json(await self.store.get(DOMAINS_KEY), key=DOMAINS_KEY)
        entries, changed = upgrade(raw, now=self.clock())
        if changed:
            logger.info("Upgrading stored domain list", count=len(entries))
            try:
                await self._write_entries(entries)
            except StorageError as exc:
                # The read succeeded; the upgrade is retried on the next read.
                logger.warning("Failed to persist upgraded domain list", error=str(exc))
        return entries

    async def _write_entries(self, entries: list[DomainEntry]) -> None:
        ok = await self.store.set(DOMAINS_KEY, _dump([e.to_record() for e in entries]))
        if not ok:
            raise StorageError(f"store rejected write of {DOMAINS_KEY!r}")

    async def list(self) -> list[DomainEntry]:
        try:
            return await self._read_entries()
        except StorageError as exc:
            logger.error("Failed to read domain list", error=str(exc))
            return []

    async def add(self, domain: str, interval: int = DEFAULT_INTERVAL_MINUTES) -> str:
        """Register `domain` (or update its interval) and return its verification code."""
        domain = str(domain or "").strip()
        if not domain:
            raise ValidationError("domain is required")

        entries = await self._read_entries()
        existing = next((e for e in entries if e.domain == domain), None)
        if existing is None:
            code = generate_verification_code()
            entries.append(DomainEntry(domain=domain, verification_code=code, added_at=self.clock()))
            await self._write_entries(entries)
            logger.info("Domain added", domain=domain, interval=interval)
        else:
            code = existing.verification_code
            logger.info("Domain already registered, updating interval", domain=domain, interval=interval)

        config = await self._read_config(domain)
        config.interval = int(interval)
        await self._write_config(domain, config)
        return code

    async def remove(self, domain: str, supplied_code: str) -> RemoveResult:
        domain = str(domain or "").strip()
        supplied_code = str(supplied_code or "").strip()

        entries = await self._read_entries()
        index = next((i for i, e in enumerate(entries) if e.domain == domain), None)
        if index is None:
            raise DomainNotFoundError(f"domain not found: {domain}")

        is_admin = _codes_match(supplied_code, self.admin_code)
        if not is_admin and not _codes_match(supplied_code, entries[index].verification_code):
            raise VerificationError("verification code does not match")

        del entries[index]
        await self._write_entries(entries)

        try:
            await self.store.delete(config_key(domain))
        except StorageError as exc:
            logger.warning("Failed to delete domain config", domain=domain, error=str(exc))

        logger.info("Domain removed", domain=domain, is_admin=is_admin)
        return RemoveResult(success=True, is_admin=is_admin)

    # -----------------
    # Per-domain config
    # -----------------
    async def _read_config(self, domain: str) -> DomainConfig:
        key = config_key(domain)
        return DomainConfig.from_record(_decode_json(await self.store.get(key), key=key))

    async def _write_config(self, domain: str, config: DomainConfig) -> None:
        ok = await self.store.set(config_key(domain), _dump(config.to_record()))
        if not ok:
            raise StorageError(f"store rejected write of {config_key(domain)!r}")

    async def get_config(self, domain: str, now: datetime | None = None) -> DomainConfig:
        try:
            config = await self._read_config(domain)
        except StorageError as exc:
            logger.error("Failed to read domain config", domain=domain, error=str(exc))
            config = DomainConfig()
        config.next_check_time = next_check_time(config, now or self.clock())
        return config

    async def list_configs(self, now: datetime | None = None) -> list[tuple[str, DomainConfig]]:
        now = now or self.clock()
        out: list[tuple[str, DomainConfig]] = []
        for entry in await self.list():
            out.append((entry.domain, await self.get_config(entry.domain, now)))
        return out

    async def update_interval(self, domain: str, interval: int) -> bool:
        try:
            config = await self._read_config(domain)
            config.interval = int(interval)
            await self._write_config(domain, config)
        except StorageError as exc:
            logger.error("Failed to update interval", domain=domain, error=str(exc))
            return False
        return True

    async def touch_last_checked(self, domain: str) -> bool:
        try:
            config = await self._read_config(domain)
            config.last_checked = self.clock()
            await self._write_config(domain, config)
        except StorageError as exc:
            logger.error("Failed to update last-checked time", domain=domain, error=str(exc))
            return False
        return True

    # -----------------
    # Logs
    # -----------------
    async def _read_logs(self, domain: str) -> list[dict[str, Any]]:
        key = logs_key(domain)
        raw = _decode_json(await self.store.get(key), key=key)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    async def append_log(self, domain: str, entry: LogEntry) -> bool:
        try:
            logs = await self._read_logs(domain)
            logs.append(entry.to_record())
            if len(logs) > MAX_STORED_LOGS:
                logs = logs[-MAX_STORED_LOGS:]
            ok = await self.store.set(logs_key(domain), _dump(logs))
        except StorageError as exc:
            logger.error("Failed to save domain log", domain=domain, error=str(exc))
            return False
        return ok

    async def get_logs(self, domain: str, limit: int = DEFAULT_LOG_LIMIT) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        try:
            logs = await self._read_logs(domain)
        except StorageError as exc:
            logger.error("Failed to read domain logs", domain=domain, error=str(exc))
            return []
        return list(reversed(logs[-limit:]))

    async def clear_logs(self, domain: str) -> bool:
        try:
            await self.store.delete(logs_key(domain))
        except StorageError as exc:
            logger.error("Failed to clear domain logs", domain=domain, error=str(exc))
            return False
        return True
