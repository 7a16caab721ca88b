"""Execution orchestration.

One call to ``CrawlOrchestrator.run`` is one execution:

1. Ask the kill-switch whether to run at all
2. Open the database (and reset the schema on a bootstrap run, if asked)
3. Acquire an execution lease under the concurrency ceiling
4. Pick the starting point: bootstrap id, oldest continuation, or a new scan
5. Fetch the rate budget and run the interpreter
6. Persist the continuation when deferred, report when failed
7. Release the lease, whatever happened
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Optional

from commitcrawl.crawler.budget import RateBudget
from commitcrawl.crawler.config import CrawlerConfig
from commitcrawl.crawler.continuations import ContinuationStore, ContinuationTask
from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.errors import (
    ContinuationRegressionError,
    CrawlerError,
    PlatformError,
    StorageError,
)
from commitcrawl.crawler.github_client import GitHubClient
from commitcrawl.crawler.interpreter import CrawlInterpreter, CrawlResult, Outcome, ResumePosition
from commitcrawl.crawler.leases import ConcurrencyRegistry
from commitcrawl.crawler.monitoring import (
    ErrorReporter,
    HttpKillSwitch,
    KillSwitch,
    LoggingErrorReporter,
    StaticKillSwitch,
    WebhookErrorReporter,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """Summary of one execution."""

    outcome: Outcome
    reason: str = ""
    lineage: Optional[str] = None
    start: Optional[ResumePosition] = None
    continuation_id: Optional[str] = None
    calls: int = 0
    budget_remaining: Optional[int] = None
    repositories_written: int = 0
    commits_written: int = 0
    error: Optional[BaseException] = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class CrawlOrchestrator:
    """Composes kill-switch, lease, continuation, budget and interpreter.

    Collaborators default to the ones described by the config and can be
    injected for testing.
    """

    def __init__(
        self,
        config: CrawlerConfig,
        client: Optional[GitHubClient] = None,
        kill_switch: Optional[KillSwitch] = None,
        reporter: Optional[ErrorReporter] = None,
        db: Optional[CrawlDatabase] = None,
    ):
        self.config = config
        self.client = client or GitHubClient(
            base_url=config.github_api,
            token=config.github_token,
            timeout=config.request_timeout,
            max_retries=config.retry_attempts,
            retry_delay=config.retry_delay_seconds,
        )
        if kill_switch is None:
            if config.kill_switch_url:
                kill_switch = HttpKillSwitch(config.kill_switch_url, timeout=config.request_timeout)
            else:
                kill_switch = StaticKillSwitch(False)
        self.kill_switch = kill_switch
        if reporter is None:
            if config.error_webhook_url:
                reporter = WebhookErrorReporter(config.error_webhook_url, timeout=config.request_timeout)
            else:
                reporter = LoggingErrorReporter()
        self.reporter = reporter
        self.db = db or CrawlDatabase(config.db_path)

    async def run(self) -> ExecutionReport:
        """Run one execution and return its report. Never raises CrawlerError."""
        try:
            try:
                if await self.kill_switch.should_stop():
                    logger.info("Kill-switch is active; not running")
                    return ExecutionReport(Outcome.STOPPED, reason="kill-switch")
            except CrawlerError as e:
                return await self._fail(e, stage="kill-switch")

            try:
                await self.db.init()
            except StorageError as e:
                return await self._fail(e, stage="connect")

            return await self._run_with_db()
        finally:
            await self.client.close()
            await self.db.close()

    async def _run_with_db(self) -> ExecutionReport:
        if self.config.bootstrap and self.config.reset_on_bootstrap:
            try:
                await self.db.reset_schema()
            except sqlite3.Error as e:
                return await self._fail(StorageError(f"Schema reset failed: {e}"), stage="reset")

        registry = ConcurrencyRegistry(
            self.db, self.config.max_concurrency, self.config.lease_ttl_seconds
        )
        try:
            lease = await registry.acquire()
        except sqlite3.Error as e:
            return await self._fail(StorageError(f"Lease acquisition failed: {e}"), stage="acquire")
        if lease is None:
            return ExecutionReport(Outcome.STOPPED, reason="concurrency ceiling reached")

        try:
            return await self._run_leased(lease.id)
        finally:
            # Released even when the crawl failed.
            try:
                await registry.release(lease)
            except sqlite3.Error as e:
                logger.error("Failed to release lease %s: %s", lease.id, e)

    async def _run_leased(self, lease_id: str) -> ExecutionReport:
        store = ContinuationStore(self.db)

        try:
            lineage, start = await self._starting_point(store)
        except (sqlite3.Error, KeyError, TypeError, ValueError) as e:
            return await self._fail(StorageError(f"Cannot load continuation: {e}"), stage="load")

        try:
            remaining = await self.client.rate_limit_remaining()
        except PlatformError as e:
            # The taken task is not lost: put it back before failing.
            await self._save_continuation(store, lineage, start)
            return await self._fail(e, stage="rate-limit", lineage=lineage)

        budget = RateBudget(remaining, floor=self.config.rate_floor)
        logger.info(
            "Starting batch with %d calls (floor %d) at repository %d, lineage %s, lease %s",
            remaining, budget.floor, start.repository_id, lineage, lease_id,
        )

        interpreter = CrawlInterpreter(
            self.client,
            self.db,
            budget,
            repo_page_size=self.config.repo_page_size,
            commit_page_size=self.config.commit_page_size,
            repo_details=self.config.fetch_repo_details,
            commit_details=self.config.fetch_commit_details,
        )
        try:
            result = await interpreter.run(start)
        except Exception as e:
            # Unexpected failure: the taken position goes back so the lineage survives.
            logger.exception("Traversal crashed at repository %d", start.repository_id)
            await self._save_continuation(store, lineage, start)
            report = await self._fail(e, stage="crawl", lineage=lineage)
            report.lineage = lineage
            report.start = start
            return report
        report = self._report(result, lineage, start, budget)

        if result.outcome is Outcome.DEFERRED:
            report.continuation_id = await self._save_continuation(store, lineage, result.position)
            if report.continuation_id is None:
                report.outcome = Outcome.FAILED
                report.reason = "continuation could not be saved"
                await self.reporter.capture(
                    StorageError(report.reason), stage="save", lineage=lineage
                )
        elif result.outcome is Outcome.FAILED:
            if self.config.checkpoint_on_failure and result.position is not None:
                report.continuation_id = await self._save_continuation(
                    store, lineage, result.position
                )
            await self.reporter.capture(
                result.error,
                stage="crawl",
                lineage=lineage,
                repository_id=result.position.repository_id if result.position else None,
            )
        else:
            logger.info("Full scan %s completed", lineage)

        logger.info(
            "Execution %s: %d calls, %d repositories, %d new commits, %d calls left",
            report.outcome.value, report.calls, report.repositories_written,
            report.commits_written, budget.remaining(),
        )
        return report

    async def _starting_point(self, store: ContinuationStore):
        if self.config.bootstrap:
            lineage = str(uuid.uuid4())
            logger.info("Bootstrapping new scan at repository %d", self.config.start_repository_id)
            return lineage, ResumePosition(repository_id=self.config.start_repository_id)

        task = await store.take()
        if task is None:
            lineage = str(uuid.uuid4())
            logger.info(
                "No pending continuation; starting a new full scan at repository %d",
                self.config.start_repository_id,
            )
            return lineage, ResumePosition(repository_id=self.config.start_repository_id)

        logger.info(
            "Resuming continuation %s (%s at repository %d)",
            task.id, task.discriminator, task.repository_id,
        )
        return task.lineage, ResumePosition.from_payload(task.payload)

    async def _save_continuation(
        self, store: ContinuationStore, lineage: str, position: ResumePosition
    ) -> Optional[str]:
        task = ContinuationTask(
            lineage=lineage,
            discriminator=position.discriminator,
            payload=position.to_payload(),
            repository_id=position.repository_id,
            cursor=position.cursor,
        )
        try:
            return await store.save(task)
        except (sqlite3.Error, ContinuationRegressionError) as e:
            logger.error("Could not save continuation for lineage %s: %s", lineage, e)
            return None

    def _report(
        self,
        result: CrawlResult,
        lineage: str,
        start: ResumePosition,
        budget: RateBudget,
    ) -> ExecutionReport:
        return ExecutionReport(
            outcome=result.outcome,
            reason=str(result.error) if result.error else "",
            lineage=lineage,
            start=start,
            calls=result.calls,
            budget_remaining=budget.remaining(),
            repositories_written=result.repositories_written,
            commits_written=result.commits_written,
            error=result.error,
        )

    async def _fail(self, error: BaseException, stage: str, **context) -> ExecutionReport:
        await self.reporter.capture(error, stage=stage, **context)
        return ExecutionReport(Outcome.FAILED, reason=str(error), error=error)


async def run_execution(config: CrawlerConfig) -> ExecutionReport:
    """Convenience function to run one execution with default collaborators."""
    return await CrawlOrchestrator(config).run()
