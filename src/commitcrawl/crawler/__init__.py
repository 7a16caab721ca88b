"""Crawl orchestration and resumption engine."""

from commitcrawl.crawler.config import CrawlerConfig
from commitcrawl.crawler.budget import RateBudget
from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.continuations import ContinuationStore, ContinuationTask
from commitcrawl.crawler.leases import ConcurrencyRegistry, ExecutionLease
from commitcrawl.crawler.github_client import GitHubClient
from commitcrawl.crawler.interpreter import CrawlInterpreter, CrawlResult, Outcome, ResumePosition
from commitcrawl.crawler.orchestrator import CrawlOrchestrator, ExecutionReport, run_execution

__all__ = [
    "CrawlerConfig",
    "RateBudget",
    "CrawlDatabase",
    "ContinuationStore",
    "ContinuationTask",
    "ConcurrencyRegistry",
    "ExecutionLease",
    "GitHubClient",
    "CrawlInterpreter",
    "CrawlResult",
    "Outcome",
    "ResumePosition",
    "CrawlOrchestrator",
    "ExecutionReport",
    "run_execution",
]
