"""Mapping of GitHub API payloads into storage rows."""

import re
from dataclasses import astuple, dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional, Union

# Path fragments that mark a file as test code
TEST_PATH_PATTERN = re.compile(
    r"(^|/)(tests?|__tests__|spec|specs|testing)/"
    r"|(^|/)test_[^/]+$"
    r"|[._-](test|tests|spec)\.[A-Za-z0-9]+$"
)


@dataclass(frozen=True)
class RepositoryRow:
    """One row of the ``repositories`` table."""

    id: int
    owner_login: Optional[str]
    owner_id: Optional[int]
    name: Optional[str]
    full_name: str
    language: Optional[str]
    forks_count: Optional[int]
    stargazers_count: Optional[int]
    watchers_count: Optional[int]
    subscribers_count: Optional[int]
    size: Optional[int]
    has_issues: Optional[bool]
    has_wiki: Optional[bool]
    has_pages: Optional[bool]
    has_downloads: Optional[bool]
    pushed_at: Optional[int]
    created_at: Optional[int]
    updated_at: Optional[int]

    @classmethod
    def columns(cls) -> tuple:
        return tuple(f.name for f in fields(cls))

    def values(self) -> tuple:
        return astuple(self)


@dataclass(frozen=True)
class CommitRow:
    """One row of the ``commits`` table."""

    sha: str
    repo_id: int
    author_name: Optional[str]
    author_email: Optional[str]
    author_date: Optional[int]
    committer_name: Optional[str]
    committer_email: Optional[str]
    committer_date: Optional[int]
    author_login: Optional[str]
    author_id: Optional[int]
    committer_login: Optional[str]
    committer_id: Optional[int]
    additions: Optional[int]
    deletions: Optional[int]
    total: Optional[int]
    test_additions: Optional[int]
    test_deletions: Optional[int]
    test_changes: Optional[int]

    @classmethod
    def columns(cls) -> tuple:
        return tuple(f.name for f in fields(cls))

    def values(self) -> tuple:
        return astuple(self)


def parse_timestamp(value: Union[str, int, None]) -> Optional[int]:
    """Convert an ISO-8601 timestamp to epoch seconds."""
    if not value:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())


def is_test_path(filename: str) -> bool:
    return bool(TEST_PATH_PATTERN.search(filename))


def map_repository(payload: Dict[str, Any]) -> RepositoryRow:
    """Map a repository object from the listing or detail endpoint.

    The ``/repositories`` listing only carries a subset of the fields, so
    everything except the identity is optional.
    """
    if not isinstance(payload, dict) or "id" not in payload:
        raise ValueError(f"Repository payload without id: {payload!r}")

    owner = payload.get("owner") or {}
    full_name = payload.get("full_name")
    if not full_name:
        raise ValueError(f"Repository {payload['id']} has no full_name")

    return RepositoryRow(
        id=int(payload["id"]),
        owner_login=owner.get("login"),
        owner_id=owner.get("id"),
        name=payload.get("name"),
        full_name=full_name,
        language=payload.get("language"),
        forks_count=payload.get("forks_count"),
        stargazers_count=payload.get("stargazers_count"),
        watchers_count=payload.get("watchers_count"),
        subscribers_count=payload.get("subscribers_count"),
        size=payload.get("size"),
        has_issues=payload.get("has_issues"),
        has_wiki=payload.get("has_wiki"),
        has_pages=payload.get("has_pages"),
        has_downloads=payload.get("has_downloads"),
        pushed_at=parse_timestamp(payload.get("pushed_at")),
        created_at=parse_timestamp(payload.get("created_at")),
        updated_at=parse_timestamp(payload.get("updated_at")),
    )


def map_commit(payload: Dict[str, Any], repo_id: int) -> CommitRow:
    """Map a commit object into a row owned by ``repo_id``.

    Line counters come from ``stats`` and ``files`` when the payload has
    them (the single-commit endpoint); listing payloads leave them NULL.
    """
    sha = payload.get("sha") if isinstance(payload, dict) else None
    if not sha or len(sha) != 40:
        raise ValueError(f"Commit payload without a 40-character sha: {payload!r}")

    git_commit = payload.get("commit") or {}
    git_author = git_commit.get("author") or {}
    git_committer = git_commit.get("committer") or {}
    # Platform accounts are null when the email is not linked to a user
    author = payload.get("author") or {}
    committer = payload.get("committer") or {}

    stats = payload.get("stats")
    files = payload.get("files")
    test_additions = test_deletions = test_changes = None
    if files is not None:
        test_files = [f for f in files if is_test_path(f.get("filename", ""))]
        test_additions = sum(f.get("additions", 0) for f in test_files)
        test_deletions = sum(f.get("deletions", 0) for f in test_files)
        test_changes = sum(f.get("changes", 0) for f in test_files)

    return CommitRow(
        sha=sha,
        repo_id=repo_id,
        author_name=git_author.get("name"),
        author_email=git_author.get("email"),
        author_date=parse_timestamp(git_author.get("date")),
        committer_name=git_committer.get("name"),
        committer_email=git_committer.get("email"),
        committer_date=parse_timestamp(git_committer.get("date")),
        author_login=author.get("login"),
        author_id=author.get("id"),
        committer_login=committer.get("login"),
        committer_id=committer.get("id"),
        additions=stats.get("additions") if stats else None,
        deletions=stats.get("deletions") if stats else None,
        total=stats.get("total") if stats else None,
        test_additions=test_additions,
        test_deletions=test_deletions,
        test_changes=test_changes,
    )
