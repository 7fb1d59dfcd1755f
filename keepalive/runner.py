from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import httpx
import structlog

from keepalive.config import ConfigError, KeepAliveConfig, parse_target_domains
from keepalive.models import STATUS_SYSTEM_ERROR, TaskOutcome, TaskReport
from keepalive.probe import attempt
from keepalive.registry import DomainRegistry
from keepalive.scheduling import filter_due


logger = structlog.get_logger(__name__)

NO_STORED_DOMAINS = "No domains found in the store; add one through the API."
MISSING_CONFIGURATION = "Missing configuration: configure the key-value store or set TARGET_DOMAINS."
UNKNOWN_SYSTEM_ERROR = "An unknown system error occurred"


@dataclass(frozen=True)
class RunPlan:
    domains: list[str] = field(default_factory=list)
    error: str | None = None


def _log_outcome(outcome: TaskOutcome) -> None:
    if outcome.ok:
        logger.info("Wakeup succeeded", domain=outcome.domain, status_code=outcome.status_code, attempts=outcome.attempts)
        return
    logger.warning(
        "Wakeup failed",
        domain=outcome.domain,
        status=outcome.status,
        attempts=outcome.attempts,
        error=outcome.error,
    )


def log_task_report(report: TaskReport) -> None:
    logger.info("Task report", summary=report.summary)
    if not report.outcomes:
        return
    for outcome in report.outcomes:
        _log_outcome(outcome)
    total, succeeded, failed = report.counts()
    logger.info("Task summary", total=total, succeeded=succeeded, failed=failed)


class TaskRunner:
    """Fans wakeup probes out over domains and keeps per-domain bookkeeping."""

    def __init__(
        self,
        config: KeepAliveConfig,
        client: httpx.AsyncClient,
        registry: DomainRegistry | None = None,
    ):
        self.config = config
        self.client = client
        self.registry = registry

    async def resolve_plan(self) -> RunPlan:
        if self.registry is not None:
            domains = [entry.domain for entry in await self.registry.list()]
            if not domains:
                return RunPlan(error=NO_STORED_DOMAINS)
            return RunPlan(domains=domains)

        if self.config.target_domains:
            try:
                return RunPlan(domains=parse_target_domains(self.config.target_domains))
            except ConfigError as exc:
                return RunPlan(error=str(exc))

        return RunPlan(error=MISSING_CONFIGURATION)

    async def _probe(self, domain: str) -> TaskOutcome:
        return await attempt(
            domain,
            self.client,
            retries=self.config.retry_count,
            retry_delay_ms=self.config.retry_delay_ms,
            user_agent=self.config.user_agent,
            registry=self.registry,
            timeout_seconds=self.config.request_timeout_seconds,
        )

    async def run_once(self, domains: list[str], *, error: str | None = None) -> TaskReport:
        if error:
            return TaskReport(summary=error, outcomes=[])

        results = await asyncio.gather(*(self._probe(d) for d in domains), return_exceptions=True)

        outcomes: list[TaskOutcome] = []
        for domain, result in zip(domains, results):
            if isinstance(result, BaseException):
                logger.error("Wakeup task crashed", domain=domain, error=repr(result))
                outcomes.append(
                    TaskOutcome(
                        domain=domain,
                        status=STATUS_SYSTEM_ERROR,
                        attempts=self.config.retry_count + 1,
                        status_code=None,
                        error=str(result) or UNKNOWN_SYSTEM_ERROR,
                    )
                )
                continue
            outcomes.append(result)

        return TaskReport(summary=f"Processed {len(domains)} domain(s).", outcomes=outcomes)

    async def run_plan(self) -> TaskReport:
        plan = await self.resolve_plan()
        return await self.run_once(plan.domains, error=plan.error)

    async def run_scheduled(self, now: datetime | None = None) -> TaskReport:
        """
        One scheduler tick.

        With a registry, only due domains are probed, one at a time, and each
        probed domain gets its last-checked time refreshed regardless of the
        outcome. Without one, every configured domain is probed on every tick.
        """
        if self.registry is None:
            plan = await self.resolve_plan()
            report = await self.run_once(plan.domains, error=plan.error)
            log_task_report(report)
            return report

        now = now or self.registry.clock()
        configs = await self.registry.list_configs(now)
        due = filter_due(configs, now)
        due_domains = {domain for domain, _ in due}
        for domain, domain_config in configs:
            if domain not in due_domains:
                logger.debug("Skipping domain, not due yet", domain=domain, interval=domain_config.interval)

        outcomes: list[TaskOutcome] = []
        for domain, domain_config in due:
            logger.info("Waking up domain", domain=domain, interval=domain_config.interval)
            report = await self.run_once([domain])
            await self.registry.touch_last_checked(domain)

            for outcome in report.outcomes:
                _log_outcome(outcome)
            outcomes.extend(report.outcomes)

        return TaskReport(summary=f"Processed {len(outcomes)} domain(s).", outcomes=outcomes)
