"""
Append-only order history ledger.

Entries are written inside the caller's session so that an entry and the
order mutation it describes commit or roll back together. The ledger
exposes no update or delete.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import (
    HistoryAction,
    OrderHistoryChange,
    OrderHistoryEntry,
    OrderStatus,
)

logger = get_logger(__name__)


class HistoryLedgerError(Exception):
    """History could not be written or read."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


@dataclass(frozen=True)
class FieldChange:
    """One field's value before and after a mutation."""

    field: str
    old_value: Any
    new_value: Any


def compute_field_diff(
    before: dict[str, Any],
    after: dict[str, Any],
    fields: Optional[Iterable[str]] = None,
) -> list[FieldChange]:
    """
    Compare two snapshots field by field.

    Args:
        before: Snapshot prior to the mutation
        after: Snapshot after the mutation
        fields: Fields to compare in order, defaults to the keys of ``after``

    Returns:
        Changes for every field whose value differs, in field order
    """
    keys = list(fields) if fields is not None else list(after)
    return [
        FieldChange(field=key, old_value=before.get(key), new_value=after.get(key))
        for key in keys
        if before.get(key) != after.get(key)
    ]


class HistoryLedger:
    """Reads and appends history entries through an open session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _next_sequence(self, order_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.max(OrderHistoryEntry.sequence), 0)).where(
                OrderHistoryEntry.order_id == order_id
            )
        )
        return int(result.scalar_one()) + 1

    async def append(
        self,
        order_id: uuid.UUID,
        action: HistoryAction,
        performed_by: str,
        from_status: Optional[OrderStatus] = None,
        to_status: Optional[OrderStatus] = None,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        changes: Iterable[FieldChange] = (),
    ) -> OrderHistoryEntry:
        """
        Append one entry for ``order_id`` and flush it.

        Args:
            order_id: Order the entry belongs to
            action: Kind of mutation
            performed_by: Acting user id
            from_status: Status before the mutation
            to_status: Status after the mutation
            reason: Reason supplied with the action
            notes: Free-form notes supplied with the action
            changes: Typed field diff

        Returns:
            Flushed history entry

        Raises:
            HistoryLedgerError: If the entry cannot be written
        """
        try:
            entry = OrderHistoryEntry(
                order_id=order_id,
                sequence=await self._next_sequence(order_id),
                action=action,
                from_status=from_status,
                to_status=to_status,
                performed_by=performed_by,
                reason=reason,
                notes=notes,
                changes=[
                    OrderHistoryChange(
                        position=position,
                        field=change.field,
                        old_value=change.old_value,
                        new_value=change.new_value,
                    )
                    for position, change in enumerate(changes)
                ],
            )
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to append history entry",
                order_id=str(order_id),
                action=action.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise HistoryLedgerError(
                "Failed to append history entry",
                order_id=str(order_id),
                action=action.value,
            ) from e

        logger.debug(
            "History entry appended",
            order_id=str(order_id),
            sequence=entry.sequence,
            action=action.value,
            changed_fields=[c.field for c in entry.changes],
        )
        return entry

    async def query(
        self, order_id: uuid.UUID, newest_first: bool = True
    ) -> list[OrderHistoryEntry]:
        """Entries for one order ordered by sequence."""
        order_by = (
            OrderHistoryEntry.sequence.desc()
            if newest_first
            else OrderHistoryEntry.sequence.asc()
        )
        try:
            result = await self.session.execute(
                select(OrderHistoryEntry)
                .where(OrderHistoryEntry.order_id == order_id)
                .order_by(order_by)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise HistoryLedgerError(
                "Failed to read order history", order_id=str(order_id)
            ) from e

    async def recent(
        self, limit: int = 10, order_ids: Optional[Iterable[uuid.UUID]] = None
    ) -> list[OrderHistoryEntry]:
        """Most recent entries across all orders, or across ``order_ids``."""
        stmt = select(OrderHistoryEntry)
        if order_ids is not None:
            ids = list(order_ids)
            if not ids:
                return []
            stmt = stmt.where(OrderHistoryEntry.order_id.in_(ids))
        try:
            result = await self.session.execute(
                stmt.order_by(
                    OrderHistoryEntry.created_at.desc(),
                    OrderHistoryEntry.sequence.desc(),
                ).limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise HistoryLedgerError("Failed to read recent history") from e
