"""SQLite database for crawled records and cross-execution state.

Provides persistent storage for:
- Repository and commit rows
- Continuation tasks (resume positions between executions)
- Execution leases (the concurrency ceiling)
"""

import logging
import sqlite3
from pathlib import Path
from typing import Iterable, Optional

import aiosqlite

from commitcrawl.crawler.errors import StorageError
from commitcrawl.crawler.records import CommitRow, RepositoryRow

logger = logging.getLogger(__name__)


SCHEMA = """
-- repositories: refreshed on every visit; listing rows never blank out detail columns
CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY,
    owner_login TEXT,
    owner_id INTEGER,
    name TEXT,
    full_name TEXT,
    language TEXT,
    forks_count INTEGER,
    stargazers_count INTEGER,
    watchers_count INTEGER,
    subscribers_count INTEGER,
    size INTEGER,
    has_issues BOOLEAN,
    has_wiki BOOLEAN,
    has_pages BOOLEAN,
    has_downloads BOOLEAN,
    pushed_at INTEGER,
    created_at INTEGER,
    updated_at INTEGER
);

-- commits: written once per sha, immutable afterwards
CREATE TABLE IF NOT EXISTS commits (
    sha VARCHAR(40) PRIMARY KEY,
    repo_id INTEGER,
    author_name TEXT,
    author_email TEXT,
    author_date INTEGER,
    committer_name TEXT,
    committer_email TEXT,
    committer_date INTEGER,
    author_login TEXT,
    author_id INTEGER,
    committer_login TEXT,
    committer_id INTEGER,
    additions INTEGER,
    deletions INTEGER,
    total INTEGER,
    test_additions INTEGER,
    test_deletions INTEGER,
    test_changes INTEGER
);

CREATE INDEX IF NOT EXISTS idx_commits_repo ON commits(repo_id);

-- continuation_tasks: at most one unconsumed resume position per lineage
CREATE TABLE IF NOT EXISTS continuation_tasks (
    id VARCHAR(36) PRIMARY KEY,
    lineage VARCHAR(36) UNIQUE NOT NULL,
    discriminator VARCHAR(32) NOT NULL,
    payload TEXT NOT NULL,
    repository_id INTEGER NOT NULL,
    cursor INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_continuation_created ON continuation_tasks(created_at);

-- execution_leases: one row per in-flight execution
CREATE TABLE IF NOT EXISTS execution_leases (
    id VARCHAR(36) PRIMARY KEY,
    acquired_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
"""

TABLES = ("commits", "repositories", "continuation_tasks", "execution_leases")


class CrawlDatabase:
    """Async SQLite database owned by exactly one execution."""

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        """Open the connection and create missing tables.

        Raises:
            StorageError: if the database cannot be opened.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path, timeout=self.timeout)
            self._db.row_factory = aiosqlite.Row
            # Several executions share the file; WAL keeps readers off the writer's back.
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
        except (OSError, sqlite3.Error) as e:
            await self.close()
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "CrawlDatabase":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("Database is not open")
        return self._db

    async def reset_schema(self) -> None:
        """Drop and recreate every table.

        Only for a bootstrap run: this also discards other executions'
        leases and any pending continuations.
        """
        logger.warning("Dropping and recreating all tables in %s", self.db_path)
        for table in TABLES:
            await self.connection.execute(f"DROP TABLE IF EXISTS {table}")
        await self.connection.executescript(SCHEMA)
        await self.connection.commit()

    async def upsert_repositories(self, rows: Iterable[RepositoryRow]) -> int:
        """Insert or refresh repositories. Returns the number written.

        A NULL in an incoming row keeps the stored value, so a listing item
        written after the detail object does not erase its counters.
        """
        rows = list(rows)
        if not rows:
            return 0
        columns = RepositoryRow.columns()
        updates = ", ".join(
            f"{c} = COALESCE(excluded.{c}, repositories.{c})" for c in columns if c != "id"
        )
        await self.connection.executemany(
            f"""
            INSERT INTO repositories ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            [row.values() for row in rows],
        )
        await self.connection.commit()
        return len(rows)

    async def insert_commits(self, rows: Iterable[CommitRow]) -> int:
        """Insert commits, ignoring shas already stored. Returns rows added."""
        rows = list(rows)
        if not rows:
            return 0
        columns = CommitRow.columns()
        before = self.connection.total_changes
        await self.connection.executemany(
            f"""
            INSERT OR IGNORE INTO commits ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            """,
            [row.values() for row in rows],
        )
        await self.connection.commit()
        return self.connection.total_changes - before

    async def get_repository(self, repo_id: int) -> Optional[RepositoryRow]:
        async with self.connection.execute(
            "SELECT * FROM repositories WHERE id = ?", (repo_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return RepositoryRow(**{c: row[c] for c in RepositoryRow.columns()})

    async def get_commit(self, sha: str) -> Optional[CommitRow]:
        async with self.connection.execute(
            "SELECT * FROM commits WHERE sha = ?", (sha,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return CommitRow(**{c: row[c] for c in CommitRow.columns()})

    async def count(self, table: str) -> int:
        """Count rows of one of the crawler's tables."""
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        async with self.connection.execute(
            f"SELECT COUNT(*) AS count FROM {table}"
        ) as cursor:
            row = await cursor.fetchone()
            return row["count"]

    async def get_stats(self) -> dict:
        """Get crawl progress statistics."""
        stats = {table: await self.count(table) for table in TABLES}

        async with self.connection.execute(
            "SELECT MAX(id) AS max_id FROM repositories"
        ) as cursor:
            row = await cursor.fetchone()
            stats["highest_repository_id"] = row["max_id"]

        return stats
