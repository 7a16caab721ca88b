"""Persistent resume positions shared between executions."""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from commitcrawl.crawler.database import CrawlDatabase
from commitcrawl.crawler.errors import ContinuationRegressionError

logger = logging.getLogger(__name__)


@dataclass
class ContinuationTask:
    """A serialized "resume here" descriptor.

    Attributes:
        lineage: Id of the full scan this task continues.
        discriminator: Traversal phase to resume ("repositories" or "commits").
        payload: Opaque resume position, stored as JSON.
        repository_id: Position used to order tasks of one lineage.
        cursor: Progress within ``repository_id``; together they only grow.
        id: Unique token generated on creation.
        created_at: Epoch seconds; the oldest task is taken first.
    """

    lineage: str
    discriminator: str
    payload: Dict[str, Any]
    repository_id: int
    cursor: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)


class ContinuationStore:
    """Stores continuation tasks in the ``continuation_tasks`` table."""

    def __init__(self, db: CrawlDatabase):
        self.db = db

    async def save(self, task: ContinuationTask) -> str:
        """Persist a task and return its id.

        A lineage holds at most one unconsumed task. Saving again for the
        same lineage replaces the stored task only if it does not move the
        scan backwards.

        Raises:
            ContinuationRegressionError: if the stored task is further along.
        """
        conn = self.db.connection
        before = conn.total_changes
        await conn.execute(
            """
            INSERT INTO continuation_tasks
            (id, lineage, discriminator, payload, repository_id, cursor, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(lineage) DO UPDATE SET
                id = excluded.id,
                discriminator = excluded.discriminator,
                payload = excluded.payload,
                repository_id = excluded.repository_id,
                cursor = excluded.cursor,
                created_at = excluded.created_at
            WHERE excluded.repository_id > continuation_tasks.repository_id
               OR (excluded.repository_id = continuation_tasks.repository_id
                   AND excluded.cursor >= continuation_tasks.cursor)
            """,
            (
                task.id,
                task.lineage,
                task.discriminator,
                json.dumps(task.payload, sort_keys=True),
                task.repository_id,
                task.cursor,
                task.created_at,
            ),
        )
        await conn.commit()

        if conn.total_changes == before:
            async with conn.execute(
                "SELECT repository_id, cursor FROM continuation_tasks WHERE lineage = ?",
                (task.lineage,),
            ) as cursor:
                row = await cursor.fetchone()
            raise ContinuationRegressionError(
                task.lineage,
                (row["repository_id"], row["cursor"]),
                (task.repository_id, task.cursor),
            )

        logger.info(
            "Saved continuation %s (lineage %s, %s at repository %d)",
            task.id, task.lineage, task.discriminator, task.repository_id,
        )
        return task.id

    async def take(self) -> Optional[ContinuationTask]:
        """Remove and return the oldest task, or None if there is none.

        Read and delete happen in one statement, so two executions can
        never resume the same position.
        """
        conn = self.db.connection
        async with conn.execute(
            """
            DELETE FROM continuation_tasks
            WHERE id = (
                SELECT id FROM continuation_tasks
                ORDER BY created_at, rowid
                LIMIT 1
            )
            RETURNING id, lineage, discriminator, payload, repository_id, cursor, created_at
            """
        ) as cursor:
            row = await cursor.fetchone()
        await conn.commit()

        if row is None:
            return None
        return _row_to_task(row)

    async def pending(self) -> List[ContinuationTask]:
        """List unconsumed tasks, oldest first."""
        async with self.db.connection.execute(
            """
            SELECT id, lineage, discriminator, payload, repository_id, cursor, created_at
            FROM continuation_tasks
            ORDER BY created_at, rowid
            """
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_task(row) for row in rows]


def _row_to_task(row) -> ContinuationTask:
    return ContinuationTask(
        id=row["id"],
        lineage=row["lineage"],
        discriminator=row["discriminator"],
        payload=json.loads(row["payload"]),
        repository_id=row["repository_id"],
        cursor=row["cursor"],
        created_at=row["created_at"],
    )
