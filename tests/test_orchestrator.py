"""Tests for execution orchestration."""

from dataclasses import replace

import httpx

from commitcrawl.crawler.continuations import ContinuationStore
from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.errors import PlatformError, StorageError
from commitcrawl.crawler.interpreter import Outcome
from commitcrawl.crawler.leases import ConcurrencyRegistry
from commitcrawl.crawler.monitoring import StaticKillSwitch
from commitcrawl.crawler.orchestrator import CrawlOrchestrator

from conftest import run


class RecordingReporter:
    def __init__(self):
        self.captured = []

    async def capture(self, exc, **context):
        self.captured.append((exc, context))


def execute(config, github, stop=False, reporter=None):
    reporter = reporter or RecordingReporter()
    orchestrator = CrawlOrchestrator(
        config,
        client=github.client(),
        kill_switch=StaticKillSwitch(stop),
        reporter=reporter,
    )
    return run(orchestrator.run()), reporter


def inspect(db_path):
    async def scenario():
        async with CrawlDatabase(db_path) as db:
            return await db.get_stats(), await ContinuationStore(db).pending()

    return run(scenario())


def test_kill_switch_stops_without_side_effects(config, github):
    github.add_repos([1, 2])

    report, reporter = execute(replace(config, bootstrap=True), github, stop=True)

    assert report.outcome is Outcome.STOPPED
    assert report.exit_code == 0
    assert not config.db_path.exists()
    assert github.rate_limit_queries == 0
    assert github.calls == []
    assert reporter.captured == []


def test_concurrency_ceiling_stops_before_budget_fetch(config, github):
    github.add_repos([1, 2])

    async def occupy():
        async with CrawlDatabase(config.db_path) as db:
            await ConcurrencyRegistry(db, max_concurrency=1).acquire()

    run(occupy())
    report, _ = execute(config, github)

    assert report.outcome is Outcome.STOPPED
    assert report.exit_code == 0
    assert github.rate_limit_queries == 0
    stats, pending = inspect(config.db_path)
    assert stats["execution_leases"] == 1
    assert stats["repositories"] == 0
    assert pending == []


def test_bootstrap_defers_and_persists_continuation(config, github):
    """Budget 5, floor 1, bootstrap at 100: deferred with a continuation at 102."""
    github.remaining = 5
    github.add_repos(range(100, 110))

    report, _ = execute(replace(config, bootstrap=True, start_repository_id=100), github)

    assert report.outcome is Outcome.DEFERRED
    assert report.exit_code == 0
    assert report.calls == 4
    assert report.continuation_id is not None

    stats, pending = inspect(config.db_path)
    assert stats["repositories"] == 2
    assert stats["commits"] == 2
    assert stats["execution_leases"] == 0
    assert len(pending) == 1
    assert pending[0].id == report.continuation_id
    assert pending[0].lineage == report.lineage
    assert pending[0].discriminator == "repositories"
    assert pending[0].payload["repository_id"] == 102


def test_chain_of_executions_finishes_the_scan(config, github):
    """Each execution resumes where the previous one stopped."""
    github.remaining = 5
    github.add_repos(range(100, 110))

    first, _ = execute(replace(config, bootstrap=True, start_repository_id=100), github)
    outcomes = [first.outcome]
    lineages = {first.lineage}
    for _ in range(20):
        report, _ = execute(config, github)
        outcomes.append(report.outcome)
        lineages.add(report.lineage)
        if report.outcome is Outcome.COMPLETED:
            break

    assert outcomes[-1] is Outcome.COMPLETED
    assert set(outcomes[:-1]) == {Outcome.DEFERRED}
    assert len(lineages) == 1

    stats, pending = inspect(config.db_path)
    assert stats["repositories"] == 10
    assert stats["commits"] == 10
    assert stats["execution_leases"] == 0
    assert pending == []

    listed = [int(params["since"]) for path, params in github.calls if path == "/repositories"]
    assert listed == sorted(listed)
    assert len(listed) == len(set(listed))


def test_without_continuation_starts_new_scan(config, github):
    github.add_repos([3, 4])

    report, _ = execute(replace(config, start_repository_id=3), github)

    assert report.outcome is Outcome.COMPLETED
    assert report.start.repository_id == 3
    assert github.calls[0] == ("/repositories", {"since": "2", "per_page": "1"})


def test_failure_is_reported_and_lease_released(config, github):
    github.add_repos([1, 2, 3])
    github.fail_paths.add("/repos/octo/repo2/commits")

    report, reporter = execute(replace(config, bootstrap=True, start_repository_id=1), github)

    assert report.outcome is Outcome.FAILED
    assert report.exit_code == 1
    assert isinstance(report.error, PlatformError)
    assert len(reporter.captured) == 1
    assert reporter.captured[0][1]["stage"] == "crawl"

    stats, pending = inspect(config.db_path)
    assert stats["execution_leases"] == 0
    # Fails loud: no continuation
    assert pending == []


def test_checkpoint_on_failure_saves_last_boundary(config, github):
    github.add_repos([1, 2, 3])
    github.fail_paths.add("/repos/octo/repo2/commits")

    report, _ = execute(
        replace(config, bootstrap=True, start_repository_id=1, checkpoint_on_failure=True), github
    )

    assert report.outcome is Outcome.FAILED
    _, pending = inspect(config.db_path)
    assert len(pending) == 1
    assert pending[0].discriminator == "commits"
    assert pending[0].repository_id == 2
    assert pending[0].payload["commit_page"] == 1


def test_connectivity_failure_aborts_before_lease(config, github, tmp_path):
    unreachable = tmp_path / "dir.db"
    unreachable.mkdir()

    report, reporter = execute(replace(config, db_path=unreachable), github)

    assert report.outcome is Outcome.FAILED
    assert report.exit_code == 1
    assert isinstance(report.error, StorageError)
    assert reporter.captured[0][1]["stage"] == "connect"
    assert github.rate_limit_queries == 0


def test_rate_limit_failure_puts_continuation_back(config, github):
    github.remaining = 5
    github.add_repos(range(100, 110))
    execute(replace(config, bootstrap=True, start_repository_id=100), github)
    _, before = inspect(config.db_path)

    serve = github.handler

    def failing_rate_limit(request):
        if request.url.path == "/rate_limit":
            return httpx.Response(500)
        return serve(request)

    github.handler = failing_rate_limit
    report, reporter = execute(config, github)

    assert report.outcome is Outcome.FAILED
    assert reporter.captured[0][1]["stage"] == "rate-limit"
    _, after = inspect(config.db_path)
    assert len(after) == 1
    assert after[0].lineage == before[0].lineage
    assert after[0].payload == before[0].payload


def test_reset_on_bootstrap_clears_previous_scan(config, github):
    github.add_repos([1, 2])
    execute(replace(config, bootstrap=True, start_repository_id=1), github)

    github.repos.clear()
    report, _ = execute(
        replace(config, bootstrap=True, start_repository_id=1, reset_on_bootstrap=True), github
    )

    assert report.outcome is Outcome.COMPLETED
    stats, _ = inspect(config.db_path)
    assert stats["repositories"] == 0
    assert stats["commits"] == 0


def resume_with_broken_commits(config, github, raise_error):
    """First execution defers; the second calls ``raise_error`` on a commit listing."""
    github.remaining = 5
    github.add_repos(range(100, 110))
    execute(replace(config, bootstrap=True, start_repository_id=100), github)
    _, saved = inspect(config.db_path)
    serve = github.handler

    def broken(request):
        if request.url.path.endswith("/commits"):
            raise_error(request)
        return serve(request)

    github.handler = broken
    report, reporter = execute(config, github)
    stats, pending = inspect(config.db_path)
    return saved, report, reporter, stats, pending


def test_decoding_error_fails_and_is_reported(config, github):
    def bad_gzip(request):
        raise httpx.DecodingError("invalid gzip stream", request=request)

    _, report, reporter, stats, pending = resume_with_broken_commits(config, github, bad_gzip)

    assert report.outcome is Outcome.FAILED
    assert report.exit_code == 1
    assert isinstance(report.error, PlatformError)
    assert len(reporter.captured) == 1
    assert stats["execution_leases"] == 0
    assert pending == []


def test_unexpected_crash_puts_continuation_back(config, github):
    def crash(request):
        raise RuntimeError("handler bug")

    saved, report, reporter, stats, pending = resume_with_broken_commits(config, github, crash)

    assert report.outcome is Outcome.FAILED
    assert report.exit_code == 1
    assert isinstance(report.error, RuntimeError)
    assert reporter.captured[0][1]["stage"] == "crawl"
    assert stats["execution_leases"] == 0
    assert len(pending) == 1
    assert pending[0].lineage == saved[0].lineage
    assert pending[0].payload == saved[0].payload


def test_detail_fetches_fill_repository_and_commit_rows(config, github):
    github.add_repos([1, 2], commits_per_repo=2)
    detailed = replace(
        config, bootstrap=True, start_repository_id=1,
        fetch_repo_details=True, fetch_commit_details=True,
    )

    report, _ = execute(detailed, github)

    assert report.outcome is Outcome.COMPLETED
    # per repository: listing, detail, commit page, two commits; then the empty listing
    assert report.calls == 2 * 5 + 1

    async def rows():
        async with CrawlDatabase(config.db_path) as db:
            sha = github.commits["octo/repo2"][1]["sha"]
            return await db.get_repository(2), await db.get_commit(sha)

    repo, commit = run(rows())
    assert repo.stargazers_count == 2
    assert repo.pushed_at is not None
    assert commit.total == 15
    assert commit.test_changes == 5
