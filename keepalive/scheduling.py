"""
Due-time bookkeeping for per-domain wakeup intervals.

Two notions of "when" live here and are intentionally kept apart:

- is_due() is what the scheduled runner uses: a domain is due once at least
  one full interval has elapsed since its last check. Missed ticks are not
  skipped forward; every tick past the interval is due.
- next_check_time() is display-only. It lands on the next interval boundary
  counted from last_checked and is always strictly after `now`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from keepalive.models import DomainConfig


def _interval(config: DomainConfig) -> timedelta:
    return timedelta(minutes=int(config.interval))


def next_check_time(config: DomainConfig, now: datetime) -> datetime:
    interval = _interval(config)
    if config.last_checked is None:
        return now + interval

    elapsed = now - config.last_checked
    completed_intervals = elapsed // interval
    candidate = config.last_checked + (completed_intervals + 1) * interval
    if candidate <= now:
        return now + interval
    return candidate


def is_due(config: DomainConfig, now: datetime) -> bool:
    if config.last_checked is None:
        return True
    return (now - config.last_checked) >= _interval(config)


def filter_due(
    configs: Iterable[tuple[str, DomainConfig]], now: datetime
) -> list[tuple[str, DomainConfig]]:
    return [(domain, cfg) for domain, cfg in configs if is_due(cfg, now)]
