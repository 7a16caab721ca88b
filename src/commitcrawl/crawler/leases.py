"""Cross-execution concurrency ceiling backed by the ``execution_leases`` table."""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from commitcrawl.crawler.database import CrawlDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionLease:
    """One in-flight execution."""

    id: str
    acquired_at: float
    expires_at: float


class ConcurrencyRegistry:
    """Tracks active executions and enforces ``max_concurrency``.

    An execution killed by its host never releases its lease, so every
    lease carries a time-to-live and expired leases are swept before each
    acquisition.
    """

    def __init__(
        self,
        db: CrawlDatabase,
        max_concurrency: int,
        lease_ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.max_concurrency = max_concurrency
        self.lease_ttl_seconds = lease_ttl_seconds
        self._clock = clock

    async def acquire(self) -> Optional[ExecutionLease]:
        """Register a lease, or return None when the ceiling is reached."""
        await self.sweep_expired()

        now = self._clock()
        lease = ExecutionLease(
            id=str(uuid.uuid4()),
            acquired_at=now,
            expires_at=now + self.lease_ttl_seconds,
        )
        conn = self.db.connection
        # Count check and insert are one statement, so two executions
        # racing for the last slot cannot both win.
        cursor = await conn.execute(
            """
            INSERT INTO execution_leases (id, acquired_at, expires_at)
            SELECT ?, ?, ?
            WHERE (SELECT COUNT(*) FROM execution_leases) < ?
            """,
            (lease.id, lease.acquired_at, lease.expires_at, self.max_concurrency),
        )
        inserted = cursor.rowcount
        await cursor.close()
        await conn.commit()

        if inserted != 1:
            logger.info("Concurrency ceiling of %d reached", self.max_concurrency)
            return None

        logger.info("Acquired execution lease %s", lease.id)
        return lease

    async def release(self, lease: ExecutionLease) -> None:
        """Delete the lease. Releasing twice is harmless."""
        conn = self.db.connection
        await conn.execute("DELETE FROM execution_leases WHERE id = ?", (lease.id,))
        await conn.commit()
        logger.info("Released execution lease %s", lease.id)

    async def sweep_expired(self) -> int:
        """Delete leases past their time-to-live. Returns the number removed."""
        conn = self.db.connection
        cursor = await conn.execute(
            "DELETE FROM execution_leases WHERE expires_at <= ?", (self._clock(),)
        )
        removed = cursor.rowcount
        await cursor.close()
        await conn.commit()
        if removed:
            logger.warning("Swept %d orphaned execution lease(s)", removed)
        return removed

    async def active(self) -> List[ExecutionLease]:
        async with self.db.connection.execute(
            "SELECT id, acquired_at, expires_at FROM execution_leases ORDER BY acquired_at"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ExecutionLease(id=row["id"], acquired_at=row["acquired_at"], expires_at=row["expires_at"])
            for row in rows
        ]
