from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable


DEFAULT_INTERVAL_MINUTES = 5
VERIFICATION_CODE_LENGTH = 8
_CODE_ALPHABET = string.ascii_uppercase + string.digits

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_SYSTEM_ERROR = "system-error"

# Registry layouts found under the "domains" key:
#   legacy:  ["a.example", "b.example"]
#   current: [{"domain": ..., "verificationCode": ..., "addedAt": ...}, ...]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    s = str(value or "").strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def generate_verification_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(VERIFICATION_CODE_LENGTH))


def _coerce_interval(value: Any) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL_MINUTES
    return interval if interval >= 1 else DEFAULT_INTERVAL_MINUTES


@dataclass(frozen=True)
class DomainEntry:
    domain: str
    verification_code: str
    added_at: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "verificationCode": self.verification_code,
            "addedAt": format_ts(self.added_at),
        }

    @classmethod
    def from_record(cls, raw: Any) -> "DomainEntry | None":
        if not isinstance(raw, dict):
            return None
        domain = str(raw.get("domain") or "").strip()
        code = str(raw.get("verificationCode") or "").strip()
        if not domain or not code:
            return None
        added_at = parse_ts(raw.get("addedAt")) or datetime.fromtimestamp(0, tz=timezone.utc)
        return cls(domain=domain, verification_code=code, added_at=added_at)


@dataclass
class DomainConfig:
    interval: int = DEFAULT_INTERVAL_MINUTES
    last_checked: datetime | None = None
    # Derived on read, never persisted.
    next_check_time: datetime | None = None

    def to_record(self) -> dict[str, Any]:
        return {"interval": int(self.interval), "lastChecked": format_ts(self.last_checked)}

    @classmethod
    def from_record(cls, raw: Any) -> "DomainConfig":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            interval=_coerce_interval(raw.get("interval", DEFAULT_INTERVAL_MINUTES)),
            last_checked=parse_ts(raw.get("lastChecked")),
        )

    def to_public(self, domain: str) -> dict[str, Any]:
        return {
            "domain": domain,
            "interval": int(self.interval),
            "lastChecked": format_ts(self.last_checked),
            "nextCheckTime": format_ts(self.next_check_time),
        }


@dataclass(frozen=True)
class LogEntry:
    status: str
    url: str
    attempts: int
    status_code: int | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_record(self) -> dict[str, Any]:
        return {
            "timestamp": format_ts(self.timestamp),
            "status": self.status,
            "statusCode": self.status_code,
            "url": self.url,
            "attempts": int(self.attempts),
            "error": self.error,
        }


@dataclass(frozen=True)
class TaskOutcome:
    domain: str
    status: str
    attempts: int
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "status": self.status,
            "statusCode": self.status_code,
            "attempts": self.attempts,
            "error": self.error,
        }


@dataclass
class TaskReport:
    summary: str
    outcomes: list[TaskOutcome] = field(default_factory=list)

    def counts(self) -> tuple[int, int, int]:
        total = len(self.outcomes)
        succeeded = sum(1 for o in self.outcomes if o.ok)
        return total, succeeded, total - succeeded


def upgrade(
    raw: Any,
    *,
    now: datetime | None = None,
    code_factory: Callable[[], str] | None = None,
) -> tuple[list[DomainEntry], bool]:
    """
    Decode the stored registry list into DomainEntry records.

    Bare domain strings (schema 1) are upgraded to full records with a fresh
    verification code. Malformed elements and repeats of an earlier domain
    are dropped; the first occurrence wins. The flag is True when
    the decoded list differs from what is stored and must be written back.
    """
    if not isinstance(raw, list):
        return [], False

    make_code = code_factory or generate_verification_code
    added_at = now or utc_now()

    entries: list[DomainEntry] = []
    seen: set[str] = set()
    changed = False
    for item in raw:
        if isinstance(item, str):
            domain = item.strip()
            if not domain or domain in seen:
                changed = True
                continue
            seen.add(domain)
            entries.append(DomainEntry(domain=domain, verification_code=make_code(), added_at=added_at))
            changed = True
            continue

        entry = DomainEntry.from_record(item)
        if entry is None or entry.domain in seen:
            changed = True
            continue
        seen.add(entry.domain)
        entries.append(entry)

    return entries, changed
