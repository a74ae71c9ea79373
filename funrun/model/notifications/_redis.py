from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_notif(fingerprint: str) -> str: return f"notif:{fingerprint}"


class NotificationLog:
    """
    Processed gateway reports in Redis. Marked after the reconciliation
    transaction committed; a crash in between only costs one idempotent
    replay of the lifecycle transition.
    """
    transactional = False

    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, fingerprint: str) -> bool:
        return bool(await self.r.exists(k_notif(fingerprint)))

    async def mark(self, fingerprint: str, order_number: str,
                   now: float) -> None:
        # NX: the first writer wins, later marks keep the original record
        await self.r.set(
            k_notif(fingerprint), order_number, nx=True, ex=self.ttl
        )
