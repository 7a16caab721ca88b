"""Shared test fixtures: an in-memory GitHub and temporary databases."""

import asyncio
import hashlib
from typing import Dict, List, Optional, Set, Tuple

import httpx
import pytest

from commitcrawl.crawler.config import CrawlerConfig
from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.github_client import GitHubClient

API = "https://api.github.test"


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)


def make_repo(repo_id: int, owner: str = "octo") -> dict:
    """A repository as the /repositories listing returns it: identity only."""
    return {
        "id": repo_id,
        "name": f"repo{repo_id}",
        "full_name": f"{owner}/repo{repo_id}",
        "owner": {"login": owner, "id": 7},
        "private": False,
        "fork": False,
    }


def make_repo_detail(repo_id: int, owner: str = "octo") -> dict:
    """A repository as /repos/{owner}/{name} returns it."""
    detail = make_repo(repo_id, owner)
    detail.update(
        {
            "language": "Python",
            "forks_count": 1,
            "stargazers_count": 2,
            "watchers_count": 2,
            "subscribers_count": 3,
            "size": 42,
            "has_issues": True,
            "has_wiki": False,
            "has_pages": False,
            "has_downloads": True,
            "pushed_at": "2017-03-01T12:00:00Z",
            "created_at": "2016-01-01T00:00:00Z",
            "updated_at": "2017-03-02T00:00:00Z",
        }
    )
    return detail


def make_commit(seed: str, login: Optional[str] = "alice") -> dict:
    """A commit as the commit listing returns it: no stats, no files."""
    sha = hashlib.sha1(seed.encode()).hexdigest()
    account = {"login": login, "id": 99} if login else None
    return {
        "sha": sha,
        "commit": {
            "author": {"name": "Alice", "email": "alice@example.com", "date": "2017-01-01T00:00:00Z"},
            "committer": {"name": "Bob", "email": "bob@example.com", "date": "2017-01-02T00:00:00Z"},
        },
        "author": account,
        "committer": account,
    }


def make_commit_detail(seed: str, login: Optional[str] = "alice") -> dict:
    """A commit as /repos/{owner}/{name}/commits/{sha} returns it."""
    detail = make_commit(seed, login)
    detail["stats"] = {"additions": 12, "deletions": 3, "total": 15}
    detail["files"] = [
        {"filename": "src/app.py", "additions": 8, "deletions": 2, "changes": 10},
        {"filename": "tests/test_app.py", "additions": 4, "deletions": 1, "changes": 5},
    ]
    return detail


class FakeGitHub:
    """Serves the rate limit, listings and detail objects from memory.

    ``calls`` records every billable request as ``(path, params)``.
    """

    def __init__(self, remaining: int = 5000):
        self.remaining = remaining
        self.repos: Dict[int, dict] = {}
        self.commits: Dict[str, List[dict]] = {}
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.rate_limit_queries = 0
        self.fail_paths: Set[str] = set()
        self.missing: Set[str] = set()

    def add_repos(self, ids, commits_per_repo: int = 1) -> None:
        for repo_id in ids:
            repo = make_repo_detail(repo_id)
            self.repos[repo_id] = repo
            self.commits[repo["full_name"]] = [
                make_commit_detail(f"{repo_id}-{n}") for n in range(commits_per_repo)
            ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        params = dict(request.url.params)

        if path == "/rate_limit":
            self.rate_limit_queries += 1
            return httpx.Response(200, json={"rate": {"remaining": self.remaining}})

        self.calls.append((path, params))
        if path in self.fail_paths:
            return httpx.Response(500, json={"message": "boom"})

        if path == "/repositories":
            since = int(params.get("since", 0))
            per_page = int(params.get("per_page", 100))
            ids = sorted(i for i in self.repos if i > since)[:per_page]
            listing = [make_repo(i, self.repos[i]["owner"]["login"]) for i in ids]
            return httpx.Response(200, json=listing)

        parts = path.strip("/").split("/")
        if parts[0] == "repos" and len(parts) >= 3:
            full_name = f"{parts[1]}/{parts[2]}"
            rest = parts[3:]
            if not rest:
                return self._repository(full_name)
            if rest == ["commits"]:
                return self._commit_page(full_name, params)
            if len(rest) == 2 and rest[0] == "commits":
                return self._commit(full_name, rest[1])

        return httpx.Response(404, json={"message": "Not Found"})

    def _repository(self, full_name: str) -> httpx.Response:
        for repo in self.repos.values():
            if repo["full_name"] == full_name:
                return httpx.Response(200, json=repo)
        return httpx.Response(404, json={"message": "Not Found"})

    def _commit_page(self, full_name: str, params: Dict[str, str]) -> httpx.Response:
        if full_name in self.missing:
            return httpx.Response(409, json={"message": "Git Repository is empty."})
        page = int(params.get("page", 1))
        per_page = int(params.get("per_page", 100))
        items = self.commits.get(full_name, [])[(page - 1) * per_page:page * per_page]
        listing = [{k: v for k, v in c.items() if k not in ("stats", "files")} for c in items]
        return httpx.Response(200, json=listing)

    def _commit(self, full_name: str, sha: str) -> httpx.Response:
        for commit in self.commits.get(full_name, []):
            if commit["sha"] == sha:
                return httpx.Response(200, json=commit)
        return httpx.Response(422, json={"message": "No commit found for SHA"})

    def client(self, **kwargs) -> GitHubClient:
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("retry_delay", 0)
        return GitHubClient(base_url=API, transport=httpx.MockTransport(self.handler), **kwargs)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "crawl.db"


@pytest.fixture
def config(db_path):
    # Listing-only traversal: one call per listing page and nothing else
    return CrawlerConfig(
        db_path=db_path,
        github_api=API,
        rate_floor=1,
        repo_page_size=1,
        commit_page_size=100,
        fetch_repo_details=False,
        fetch_commit_details=False,
        retry_attempts=0,
        retry_delay_seconds=0,
    )


async def open_db(path) -> CrawlDatabase:
    db = CrawlDatabase(path)
    await db.init()
    return db
