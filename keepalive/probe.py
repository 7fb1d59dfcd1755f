from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable
from urllib.parse import urlsplit

import httpx
import structlog

from keepalive.models import STATUS_FAILURE, STATUS_SUCCESS, LogEntry, TaskOutcome

if TYPE_CHECKING:
    from keepalive.registry import DomainRegistry


logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "KeepAlive-Worker/2.0"

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class _ProbeError:
    kind: str  # http_error | network_error
    status_code: int | None = None
    message: str = ""

    def describe(self) -> str:
        if self.kind == "http_error":
            return f"HTTP error: {self.status_code}"
        return self.message


def normalize_url(domain: str) -> str:
    d = str(domain or "").strip()
    # Hosts like "httpbin.org" start with "http" but carry no scheme.
    if urlsplit(d).scheme.lower() in {"http", "https"}:
        return d
    return f"https://{d}"


def _request_headers(user_agent: str) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


async def attempt(
    domain: str,
    client: httpx.AsyncClient,
    *,
    retries: int,
    retry_delay_ms: int,
    user_agent: str = DEFAULT_USER_AGENT,
    registry: "DomainRegistry | None" = None,
    timeout_seconds: float | None = None,
    sleep: Sleep = asyncio.sleep,
) -> TaskOutcome:
    """
    Wake one domain up with a GET, retrying up to `retries` extra times.

    HTTP and transport failures never raise; they end up in the returned
    outcome. When a registry is given every terminal outcome is also logged
    to the domain's log list.
    """
    url = normalize_url(domain)
    max_attempts = max(0, int(retries)) + 1
    headers = _request_headers(user_agent)
    timeout = timeout_seconds if timeout_seconds is not None else httpx.USE_CLIENT_DEFAULT

    attempts = 0
    last_error: _ProbeError | None = None
    while attempts < max_attempts:
        attempts += 1
        try:
            resp = await client.get(url, headers=headers, follow_redirects=True, timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            last_error = _ProbeError(kind="network_error", message=str(exc) or type(exc).__name__)
            logger.debug("Probe attempt failed", domain=domain, attempt=attempts, error=last_error.message)
        else:
            if resp.is_success:
                logger.debug("Probe attempt succeeded", domain=domain, attempt=attempts, status_code=resp.status_code)
                outcome = TaskOutcome(
                    domain=domain,
                    status=STATUS_SUCCESS,
                    attempts=attempts,
                    status_code=resp.status_code,
                )
                if registry is not None:
                    await registry.append_log(
                        domain,
                        LogEntry(status=STATUS_SUCCESS, url=url, attempts=attempts, status_code=resp.status_code),
                    )
                return outcome
            last_error = _ProbeError(kind="http_error", status_code=resp.status_code)
            logger.debug("Probe attempt got HTTP error", domain=domain, attempt=attempts, status_code=resp.status_code)

        if attempts < max_attempts:
            await sleep(retry_delay_ms / 1000.0)

    status_code = last_error.status_code if last_error is not None and last_error.kind == "http_error" else None
    error = last_error.describe() if last_error is not None else "Unknown error"
    outcome = TaskOutcome(
        domain=domain,
        status=STATUS_FAILURE,
        attempts=attempts,
        status_code=status_code,
        error=error,
    )
    if registry is not None:
        await registry.append_log(
            domain,
            LogEntry(status=STATUS_FAILURE, url=url, attempts=attempts, status_code=status_code, error=error),
        )
    return outcome
