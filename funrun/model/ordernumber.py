from __future__ import annotations
import secrets
import string
from datetime import tzinfo, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import local_date
from .errors import DuplicateGenerationExhausted
from .orm import Order

ORDER_PREFIX = "FR"
SUFFIX_LENGTH = 6
ORDER_NUMBER_MAX_ATTEMPTS = 5

_ALPHABET = string.ascii_uppercase + string.digits


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def format_order_number(now: float, suffix: str,
                        tz: tzinfo = timezone.utc) -> str:
    return f"{ORDER_PREFIX}-{local_date(now, tz)}-{suffix}"


async def order_number_exists(db: AsyncSession, order_number: str) -> bool:
    row = (await db.execute(
        select(Order.id).where(Order.order_number == order_number).limit(1)
    )).first()
    return row is not None


async def generate(
    db: AsyncSession,
    now: float,
    tz: tzinfo = timezone.utc,
    suffix: Callable[[], str] = random_suffix,
) -> str:
    """
    Unused "FR-YYYYMMDD-XXXXXX" for a new order. Must be called before the
    order row is inserted, inside the same transaction.
    """
    for _ in range(ORDER_NUMBER_MAX_ATTEMPTS):
        candidate = format_order_number(now, suffix(), tz)
        if not await order_number_exists(db, candidate):
            return candidate
    raise DuplicateGenerationExhausted(
        "order number", ORDER_NUMBER_MAX_ATTEMPTS
    )
