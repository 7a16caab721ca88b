"""
commitcrawl: resumable, rate-bounded crawling of GitHub's repository and commit graph.

Each execution is short-lived and may be killed at any time; executions
coordinate only through the database they share.
"""

__version__ = "0.1.0"

from commitcrawl.crawler import CrawlerConfig, CrawlOrchestrator, Outcome

__all__ = [
    "CrawlerConfig",
    "CrawlOrchestrator",
    "Outcome",
]
