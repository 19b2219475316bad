"""
Grouped writes against the storage layer.

Every mutation in the ledger runs inside a write group: one transaction,
committed atomically, holding at most ``batch_max_ops_per_group`` write
operations.

``run_batched`` splits a bulk job into consecutive groups and commits them
one after another. Atomicity holds per group only: if group 3 of 5 fails,
groups 1-2 stay committed and groups 3-5 are not applied. Callers must make
their per-item writes idempotent so that re-running the whole job after a
partial failure converges on the fully applied state.
"""
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterator,
    List,
    Optional,
    Sequence,
    TypeVar,
)

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.errors import BatchCommitError, LedgerValidationError
from entitlement_ledger.database.connection import get_session_factory
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class WriteGroup:
    """
    One atomic unit of writes.

    Counts write operations and refuses to exceed the group ceiling. Reads
    go through ``session`` directly and are not counted.
    """

    def __init__(self, session: AsyncSession, max_ops: int):
        self.session = session
        self.max_ops = max_ops
        self.ops = 0

    def _count(self, n: int = 1) -> None:
        if self.ops + n > self.max_ops:
            raise LedgerValidationError(
                f"Write group exceeds {self.max_ops} operations",
                user_message="The operation is too large to apply at once.",
            )
        self.ops += n

    def add(self, instance: Any) -> None:
        self._count()
        self.session.add(instance)

    async def execute(self, statement: Any) -> Any:
        self._count()
        return await self.session.execute(statement)

    async def flush(self) -> None:
        await self.session.flush()


def partition(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``."""
    if size < 1:
        raise LedgerValidationError("Group size must be at least 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class BatchCoordinator:
    """Runs write groups against the storage backend."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.max_ops_per_group = self.settings.batch_max_ops_per_group

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[WriteGroup]:
        """
        Open a single write group.

        Commits when the block exits cleanly and rolls back if it raises.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield WriteGroup(session, self.max_ops_per_group)

    @asynccontextmanager
    async def reading(self) -> AsyncIterator[AsyncSession]:
        """Short-lived session for reads; nothing it does is committed."""
        async with self.session_factory() as session:
            yield session

    async def run_batched(
        self,
        items: Sequence[T],
        write_fn: Callable[[WriteGroup, List[T]], Awaitable[Any]],
        max_ops_per_group: Optional[int] = None,
        ops_per_item: int = 1,
    ) -> int:
        """
        Apply ``write_fn`` to ``items`` in sequentially committed groups.

        Args:
            items: Items to write
            write_fn: Async callable receiving the open group and its chunk
            max_ops_per_group: Group ceiling (defaults to the configured one)
            ops_per_item: Write operations ``write_fn`` performs per item;
                chunks are sized so a full chunk stays under the ceiling

        Returns:
            int: Number of items committed

        Raises:
            BatchCommitError: If a group fails. Earlier groups stay committed.
        """
        ceiling = max_ops_per_group or self.max_ops_per_group
        if ceiling > self.settings.batch_max_ops_per_group:
            raise LedgerValidationError(
                f"max_ops_per_group cannot exceed {self.settings.batch_max_ops_per_group}"
            )
        if ops_per_item < 1 or ops_per_item > ceiling:
            raise LedgerValidationError("ops_per_item must be between 1 and the group ceiling")

        chunk_size = ceiling // ops_per_item
        committed_items = 0
        committed_groups = 0

        for index, chunk in enumerate(partition(items, chunk_size), start=1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        group = WriteGroup(session, ceiling)
                        await write_fn(group, chunk)
            except Exception as e:
                metrics.record_batch_group("failed")
                logger.error(
                    "batch_group_failed",
                    group=index,
                    group_size=len(chunk),
                    committed_groups=committed_groups,
                    committed_items=committed_items,
                    error=str(e),
                )
                raise BatchCommitError(
                    f"Write group {index} failed after {committed_groups} committed groups: {e}",
                    committed_groups=committed_groups,
                    committed_items=committed_items,
                    failed_group=index,
                ) from e

            committed_groups += 1
            committed_items += len(chunk)
            metrics.record_batch_group("committed")
            logger.info(
                "batch_group_committed",
                group=index,
                group_size=len(chunk),
                committed_items=committed_items,
            )

        return committed_items
