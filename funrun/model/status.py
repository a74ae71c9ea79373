from enum import Enum


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    DENIED = "denied"
    CHALLENGE = "challenge"


# no further gateway-driven transition expected from these
TERMINAL = frozenset({
    OrderStatus.PAID,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
    OrderStatus.DENIED,
})

# statuses that block the same registrant from buying again
LIVE = frozenset({
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.PENDING,
    OrderStatus.CHALLENGE,
    OrderStatus.PAID,
})

_PAYMENT_STATUS = {
    OrderStatus.AWAITING_PAYMENT: "pending",
    OrderStatus.PENDING: "pending",
    OrderStatus.PAID: "paid",
    OrderStatus.CANCELLED: "failed",
    OrderStatus.EXPIRED: "expired",
    OrderStatus.DENIED: "failed",
    OrderStatus.CHALLENGE: "pending",
}


def payment_status(status: str) -> str:
    """Coarse payment state shown to registrants."""
    try:
        return _PAYMENT_STATUS[OrderStatus(status)]
    except ValueError:
        return "pending"
