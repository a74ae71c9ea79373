from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    JSON,
    ForeignKey,
    CheckConstraint,
    Index,
)

from .status import OrderStatus


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class TicketCategory(Base):
    __tablename__ = "ticket_categories"
    __table_args__ = (
        CheckConstraint("sold >= 0 AND sold <= stock",
                        name="ck_ticket_categories_sold"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # smallest currency unit
    stock = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    # epoch seconds, NULL = unbounded
    sale_start_date = Column(Float, nullable=True)
    sale_end_date = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    @property
    def available(self) -> int:
        return self.stock - self.sold


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_bib", "status", "bib_number"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String, nullable=False, unique=True)
    bib_number = Column(String, nullable=True, unique=True)
    ticket_id = Column(
        Integer, ForeignKey("ticket_categories.id"), nullable=False
    )
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)

    # see OrderStatus
    status = Column(
        String, nullable=False, default=OrderStatus.AWAITING_PAYMENT.value
    )
    # True while `quantity` units are counted in ticket_categories.sold
    stock_held = Column(Boolean, nullable=False, default=True)

    payment_method = Column(String, nullable=True)
    payment_reference = Column(String, nullable=True)
    paid_at = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)

    # registrant form, not interpreted by the core
    form_data = Column(JSON, nullable=False, default=dict)

    race_pack_collected = Column(Boolean, nullable=False, default=False)
    race_pack_collected_at = Column(Float, nullable=True)
    race_pack_collected_by = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class ProcessedNotification(Base):
    __tablename__ = "processed_notifications"
    fingerprint = Column(String, primary_key=True)
    order_number = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)
