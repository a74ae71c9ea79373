import re
from datetime import timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import NOW
from funrun.model import ordernumber
from funrun.model.errors import DuplicateGenerationExhausted

PATTERN = re.compile(r"^FR-\d{8}-[A-Z0-9]{6}$")


def test_format_uses_event_date():
    assert ordernumber.format_order_number(NOW, "ABC123", timezone.utc) \
        == "FR-20251009-ABC123"
    # 18:53 UTC on the 9th is already the 10th in Jakarta (UTC+7)
    evening = NOW + 10 * 3600
    assert ordernumber.format_order_number(
        evening, "ABC123", timezone.utc
    ) == "FR-20251009-ABC123"
    assert ordernumber.format_order_number(
        evening, "ABC123", ZoneInfo("Asia/Jakarta")
    ) == "FR-20251010-ABC123"


def test_random_suffix_alphabet():
    for _ in range(50):
        suffix = ordernumber.random_suffix()
        assert re.fullmatch(r"[A-Z0-9]{6}", suffix)


async def test_generate_returns_unused_number(db):
    async with db.sessions() as s:
        n = await ordernumber.generate(s, NOW)
    assert PATTERN.match(n)


async def test_generate_skips_taken_numbers(db, add_category, add_order):
    cid = await add_category()
    await add_order(cid, order_number="FR-20251009-AAAAAA")
    suffixes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    async with db.sessions() as s:
        n = await ordernumber.generate(s, NOW, suffix=lambda: next(suffixes))
    assert n == "FR-20251009-BBBBBB"


async def test_generate_gives_up_after_five_collisions(db, add_category,
                                                       add_order):
    cid = await add_category()
    await add_order(cid, order_number="FR-20251009-AAAAAA")
    calls = []

    def same():
        calls.append(1)
        return "AAAAAA"

    async with db.sessions() as s:
        with pytest.raises(DuplicateGenerationExhausted):
            await ordernumber.generate(s, NOW, suffix=same)
    assert len(calls) == ordernumber.ORDER_NUMBER_MAX_ATTEMPTS
