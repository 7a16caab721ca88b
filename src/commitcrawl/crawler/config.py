"""Configuration for a single crawl execution."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from commitcrawl.crawler.errors import ConfigError


@dataclass
class CrawlerConfig:
    """Configuration for one independently triggered crawl execution.

    Built once at the entry point and passed by reference into the
    orchestrator and its collaborators.

    Attributes:
        bootstrap: Start a fresh scan at ``start_repository_id`` instead of
            resuming the oldest stored continuation.
        start_repository_id: First repository id to visit on a fresh scan.
        max_concurrency: Ceiling on simultaneously held execution leases.
        rate_floor: API calls held back from the budget for bookkeeping.
        lease_ttl_seconds: Age after which a lease counts as orphaned.
        repo_page_size: Repositories requested per listing call.
        commit_page_size: Commits requested per listing call.
        fetch_repo_details: Fetch each listed repository's full object (one
            call per repository) to fill its counters, flags and timestamps.
        fetch_commit_details: Fetch each listed commit (one call per commit)
            to fill its line and test-line counters.
        checkpoint_on_failure: Save a continuation at the failing call
            instead of failing without one.
        reset_on_bootstrap: Drop and recreate all tables on a bootstrap run.
        github_api: Base URL of the GitHub REST API.
        github_token: Token sent as a bearer credential (optional).
        db_path: Path to the SQLite database.
        kill_switch_url: Endpoint answering whether executions should stop.
        error_webhook_url: Endpoint receiving failure alerts.
        request_timeout: Timeout in seconds for every HTTP call.
        retry_attempts: Local retries for transient platform failures.
        retry_delay_seconds: Base delay between those retries.
    """

    bootstrap: bool = False
    start_repository_id: int = 0
    max_concurrency: int = 1
    rate_floor: int = 10
    lease_ttl_seconds: int = 900
    repo_page_size: int = 100
    commit_page_size: int = 100
    fetch_repo_details: bool = True
    fetch_commit_details: bool = True
    checkpoint_on_failure: bool = False
    reset_on_bootstrap: bool = False
    github_api: str = "https://api.github.com"
    github_token: Optional[str] = None
    db_path: Path = field(default_factory=lambda: Path("./data/commitcrawl.db"))
    kill_switch_url: Optional[str] = None
    error_webhook_url: Optional[str] = None
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay_seconds: float = 2.0

    def __post_init__(self):
        """Normalise paths and reject values the engine cannot honour."""
        if isinstance(self.db_path, str):
            self.db_path = Path(self.db_path)
        self.github_api = self.github_api.rstrip("/")

        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be at least 1")
        if self.rate_floor < 1:
            # Bookkeeping calls after the main loop need headroom.
            raise ConfigError("rate_floor must be at least 1")
        if self.start_repository_id < 0:
            raise ConfigError("start_repository_id must not be negative")
        if self.lease_ttl_seconds < 1:
            raise ConfigError("lease_ttl_seconds must be positive")
        if not 1 <= self.repo_page_size <= 100:
            raise ConfigError("repo_page_size must be between 1 and 100")
        if not 1 <= self.commit_page_size <= 100:
            raise ConfigError("commit_page_size must be between 1 and 100")

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides
    ) -> "CrawlerConfig":
        """Build a config from environment variables (and a .env file).

        Keyword overrides win over the environment, which lets the CLI
        layer its flags on top.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        values = {}
        if "GITHUB_API" in environ:
            values["github_api"] = environ["GITHUB_API"]
        if environ.get("GITHUB_TOKEN"):
            values["github_token"] = environ["GITHUB_TOKEN"].strip()
        if "COMMITCRAWL_DB_PATH" in environ:
            values["db_path"] = Path(environ["COMMITCRAWL_DB_PATH"])
        if environ.get("COMMITCRAWL_KILL_SWITCH_URL"):
            values["kill_switch_url"] = environ["COMMITCRAWL_KILL_SWITCH_URL"]
        if environ.get("COMMITCRAWL_ERROR_WEBHOOK"):
            values["error_webhook_url"] = environ["COMMITCRAWL_ERROR_WEBHOOK"]

        bool_vars = {
            "COMMITCRAWL_BOOTSTRAP": "bootstrap",
            "COMMITCRAWL_RESET_ON_BOOTSTRAP": "reset_on_bootstrap",
            "COMMITCRAWL_CHECKPOINT_ON_FAILURE": "checkpoint_on_failure",
            "COMMITCRAWL_REPO_DETAILS": "fetch_repo_details",
            "COMMITCRAWL_COMMIT_DETAILS": "fetch_commit_details",
        }
        for var, attr in bool_vars.items():
            if var in environ:
                values[attr] = _parse_bool(var, environ[var])

        int_vars = {
            "COMMITCRAWL_START_REPO": "start_repository_id",
            "COMMITCRAWL_MAX_CONCURRENCY": "max_concurrency",
            "COMMITCRAWL_RATE_FLOOR": "rate_floor",
            "COMMITCRAWL_LEASE_TTL": "lease_ttl_seconds",
            "COMMITCRAWL_REPO_PAGE_SIZE": "repo_page_size",
            "COMMITCRAWL_COMMIT_PAGE_SIZE": "commit_page_size",
        }
        for var, attr in int_vars.items():
            if var in environ:
                values[attr] = _parse_int(var, environ[var])

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _parse_bool(name: str, raw: str) -> bool:
    # true/false, yes/no, on/off, 1/0, or any JSON literal (truthiness).
    text = raw.strip().lower()
    if text in ("", "0", "false", "no", "off"):
        return False
    if text in ("1", "true", "yes", "on"):
        return True
    try:
        return bool(json.loads(text))
    except ValueError:
        raise ConfigError(f"{name} must be a boolean, got {raw!r}") from None


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
