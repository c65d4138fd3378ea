"""
WikiBlocks Backend — History Retention
========================================

What:  Deletes history records older than a retention window.
Why:   block_history grows with every keystroke-save; without a sweep it
       dominates the database.
How:   One DELETE ... WHERE created_at < cutoff statement per call, so the
       returned count is exactly what that statement removed.
"""

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks.database import mutation_scope
from wikiblocks.exceptions import ValidationError
from wikiblocks.services.history_store import HistoryStore
from wikiblocks.utils import Clock, require_id, utcnow

logger = logging.getLogger(__name__)


class RetentionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: HistoryStore,
        clock: Clock = utcnow,
    ):
        self._session_factory = session_factory
        self._store = store
        self._clock = clock

    async def cleanup_old_history(self, days_to_keep: Any, owner_id: Optional[Any] = None) -> int:
        """
        Delete records created strictly before now - days_to_keep.

        With `owner_id` the sweep only touches that owner's records; without
        it every owner is swept (operator maintenance only).

        Returns:
            Number of records deleted.
        """
        if isinstance(days_to_keep, bool) or not isinstance(days_to_keep, int) or days_to_keep < 0:
            raise ValidationError(
                message="days_to_keep must be a non-negative integer",
                field="days_to_keep",
            )
        if owner_id is not None:
            owner_id = require_id(owner_id, "owner_id")

        cutoff = self._clock() - timedelta(days=days_to_keep)
        async with mutation_scope(
            self._session_factory, "history cleanup", days_to_keep=days_to_keep, owner_id=owner_id
        ) as session:
            deleted = await self._store.delete_older_than(session, cutoff, owner_id)

        logger.info(
            f"Deleted {deleted} history records older than {days_to_keep} days",
            extra={"owner_id": owner_id, "cutoff": cutoff.isoformat()},
        )
        return deleted
