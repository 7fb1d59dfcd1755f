from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from keepalive.config import KeepAliveConfig, load_config
from keepalive.registry import (
    DEFAULT_LOG_LIMIT,
    MAX_STORED_LOGS,
    DomainNotFoundError,
    DomainRegistry,
    ValidationError,
    VerificationError,
)
from keepalive.runner import TaskRunner
from keepalive.schema import AddDomainRequest, UpdateIntervalRequest
from keepalive.store import KeyValueStore, RedisStore, StorageError
from keepalive.ticker import CronTicker


logger = structlog.get_logger(__name__)

STORE_NOT_CONFIGURED = "Key-value store is not configured"


def _load_timezone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown display timezone, falling back to UTC", timezone=name)
        return timezone.utc


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _coerce_limit(raw: str | None) -> int:
    try:
        limit = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_LOG_LIMIT
    if limit <= 0:
        return DEFAULT_LOG_LIMIT
    return min(limit, MAX_STORED_LOGS)


def create_app(
    config: KeepAliveConfig | None = None,
    store: KeyValueStore | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    config = config or load_config()
    app = FastAPI(title="Service Keep-Alive", version="0.1.0")

    owns_store = False
    if store is None:
        url = config.store_url()
        if url:
            store = RedisStore.from_url(url)
            owns_store = True

    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=config.request_timeout_seconds)

    registry = DomainRegistry(store, admin_code=config.admin_verification_code) if store is not None else None
    runner = TaskRunner(config, client, registry)

    app.state.config = config
    app.state.registry = registry
    app.state.runner = runner
    app.state.ticker = None
    app.state.display_tz = _load_timezone(config.display_timezone)

    @app.on_event("startup")
    async def _startup() -> None:
        if registry is None:
            logger.warning("No key-value store configured; domain management API disabled")
        elif isinstance(store, RedisStore) and await store.ping():
            logger.info("Connected to key-value store")
        if config.scheduler_enabled:
            ticker = CronTicker(runner, config.cron_schedule)
            await ticker.start()
            app.state.ticker = ticker

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.ticker is not None:
            await app.state.ticker.stop()
            app.state.ticker = None
        if owns_client:
            await client.aclose()
        if owns_store and isinstance(store, RedisStore):
            await store.close()

    @app.exception_handler(RequestValidationError)
    async def _validation_error(req: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected malformed request", path=req.url.path)
        return _error(400, "Malformed request")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        ticker = app.state.ticker
        next_tick = ticker.next_run_time() if ticker is not None else None
        return {"ok": True, "ts": time.time(), "nextTick": next_tick.isoformat() if next_tick else None}

    @app.post("/run-tasks")
    async def run_tasks() -> dict[str, Any]:
        report = await runner.run_plan()
        return {
            "timestamp": datetime.now(app.state.display_tz).isoformat(timespec="seconds"),
            "summary": report.summary,
            "results": [o.to_dict() for o in report.outcomes],
        }

    @app.get("/api/domains")
    async def list_domains():
        if registry is None:
            plan = await runner.resolve_plan()
            return _error(500, plan.error or STORE_NOT_CONFIGURED)
        configs = await registry.list_configs()
        return {"domains": [cfg.to_public(domain) for domain, cfg in configs]}

    @app.post("/api/domains")
    async def add_domain(req: AddDomainRequest):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        domain = (req.domain or "").strip()
        if not domain:
            return _error(400, "Domain is required")
        try:
            code = await registry.add(domain, req.effective_interval())
        except ValidationError as exc:
            return _error(400, str(exc))
        except StorageError as exc:
            logger.error("Failed to add domain", domain=domain, error=str(exc))
            return _error(500, "Failed to add domain")
        entries = await registry.list()
        return {
            "message": "Domain added",
            "domains": [{"domain": e.domain} for e in entries],
            "verificationCode": code,
        }

    @app.get("/api/domains/{domain:path}/config")
    async def domain_config(domain: str):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        cfg = await registry.get_config(domain)
        return cfg.to_public(domain)

    @app.put("/api/domains/{domain:path}/interval")
    async def update_interval(domain: str, req: UpdateIntervalRequest):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        if not any(e.domain == domain for e in await registry.list()):
            return _error(404, "Domain not found")
        if not await registry.update_interval(domain, req.interval):
            return _error(500, "Failed to update interval")
        cfg = await registry.get_config(domain)
        return {"message": "Interval updated", "config": cfg.to_public(domain)}

    @app.get("/api/domains/{domain:path}/logs")
    async def domain_logs(domain: str, limit: str | None = None):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        logs = await registry.get_logs(domain, _coerce_limit(limit))
        return {"domain": domain, "logs": logs, "count": len(logs)}

    # Must be registered before the verification-code route, which would otherwise
    # swallow ".../logs" as a code.
    @app.delete("/api/domains/{domain:path}/logs")
    async def clear_domain_logs(domain: str):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        if not await registry.clear_logs(domain):
            return _error(500, "Failed to clear logs")
        return {"message": "Logs cleared"}

    @app.delete("/api/domains/{domain:path}/{verification_code}")
    async def remove_domain(domain: str, verification_code: str):
        if registry is None:
            return _error(500, STORE_NOT_CONFIGURED)
        try:
            result = await registry.remove(domain, verification_code)
        except VerificationError:
            logger.info("Rejected domain removal, wrong verification code", domain=domain)
            return _error(401, "Verification code is incorrect, please check and try again")
        except DomainNotFoundError:
            return _error(400, "Domain does not exist")
        except StorageError as exc:
            logger.error("Failed to remove domain", domain=domain, error=str(exc))
            return _error(400, "Failed to remove domain")
        entries = await registry.list()
        message = "Domain removed (admin override)" if result.is_admin else "Domain removed"
        return {"message": message, "domains": [{"domain": e.domain} for e in entries]}

    return app
