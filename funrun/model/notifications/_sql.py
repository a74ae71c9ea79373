from __future__ import annotations
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..orm import ProcessedNotification


class NotificationLog:
    """
    Processed gateway reports, stored next to the orders they touched.
    Marking happens inside the reconciliation transaction, so a report is
    recorded if and only if its transition committed.
    """
    transactional = True

    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def seen(self, fingerprint: str) -> bool:
        row = (await self.db.execute(
            select(ProcessedNotification.fingerprint)
            .where(ProcessedNotification.fingerprint == fingerprint)
        )).first()
        return row is not None

    async def mark(self, fingerprint: str, order_number: str,
                   now: float) -> None:
        self.db.add(ProcessedNotification(
            fingerprint=fingerprint,
            order_number=order_number,
            created_at=now,
        ))
