"""Command-line entry point: serve the API with the cron ticker, or run a single tick."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os

import httpx
import structlog
import uvicorn

from keepalive.app import create_app
from keepalive.config import KeepAliveConfig, load_config
from keepalive.registry import DomainRegistry
from keepalive.runner import TaskRunner
from keepalive.store import RedisStore
from keepalive.ticker import ScheduledEventTicker


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    level_no = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level_no, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Request URLs can carry credentials; keep transport chatter out of the logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_single_tick(config: KeepAliveConfig) -> int:
    url = config.store_url()
    store = RedisStore.from_url(url) if url else None
    registry = DomainRegistry(store, admin_code=config.admin_verification_code) if store is not None else None
    try:
        async with httpx.AsyncClient(timeout=config.request_timeout_seconds) as client:
            runner = TaskRunner(config, client, registry)
            plan = await runner.resolve_plan()
            if plan.error:
                logger.error("Nothing to wake up", reason=plan.error)
                return 1
            await ScheduledEventTicker(runner).handle_event("cli --once")
            return 0
    finally:
        if store is not None:
            await store.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Keep free-tier services awake with periodic wakeup requests")
    parser.add_argument("--config", default=os.getenv("KEEPALIVE_CONFIG"), help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Run one scheduled tick and exit")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    parser.add_argument("--host", default=None, help="Bind host for the API server")
    parser.add_argument("--port", type=int, default=None, help="Bind port for the API server")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(args.log_level or config.log_level)

    if args.once:
        return asyncio.run(run_single_tick(config))

    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.host,
        port=args.port or config.port,
        log_level=str(args.log_level or config.log_level).lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
