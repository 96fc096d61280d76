"""SQLAlchemy models for the rental booking engine."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .targets import BookingTarget, make_target


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ResourceStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    MAINTENANCE = "MAINTENANCE"
    UNAVAILABLE = "UNAVAILABLE"


class ItemStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RENTED = "RENTED"
    UNAVAILABLE = "UNAVAILABLE"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CHECKED_OUT = "CHECKED_OUT"
    RETURNED = "RETURNED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED, BookingStatus.CHECKED_OUT})
TERMINAL_STATUSES = frozenset({BookingStatus.RETURNED, BookingStatus.REJECTED, BookingStatus.CANCELLED})


class ResourceType(Base):
    __tablename__ = "resource_types"
    __table_args__ = (CheckConstraint("stock_count >= 0", name="ck_resource_types_stock_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(150))
    category: Mapped[Optional[str]] = mapped_column(String(100), default=None, index=True)
    stock_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[ResourceStatus] = mapped_column(SqlEnum(ResourceStatus), default=ResourceStatus.AVAILABLE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    items: Mapped[List["ResourceItem"]] = relationship(
        back_populates="resource_type",
        cascade="all, delete-orphan",
        order_by="ResourceItem.code",
    )
    bookings: Mapped[List["Booking"]] = relationship(back_populates="resource_type")


class ResourceItem(Base):
    __tablename__ = "resource_items"
    __table_args__ = (UniqueConstraint("resource_type_id", "code", name="uq_resource_items_type_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    resource_type_id: Mapped[int] = mapped_column(ForeignKey("resource_types.id", ondelete="CASCADE"), index=True)
    code: Mapped[str] = mapped_column(String(20))
    status: Mapped[ItemStatus] = mapped_column(SqlEnum(ItemStatus), default=ItemStatus.AVAILABLE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    resource_type: Mapped[ResourceType] = relationship(back_populates="items")
    bookings: Mapped[List["Booking"]] = relationship(back_populates="resource_item")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (CheckConstraint("start_time < end_time", name="ck_bookings_interval"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    requester_id: Mapped[str] = mapped_column(String(64), index=True)
    # Snapshot taken at request time; never re-resolved from the user directory.
    requester_name: Mapped[Optional[str]] = mapped_column(String(150), default=None)
    resource_type_id: Mapped[int] = mapped_column(ForeignKey("resource_types.id", ondelete="CASCADE"), index=True)
    resource_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("resource_items.id", ondelete="SET NULL"), default=None, index=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[BookingStatus] = mapped_column(SqlEnum(BookingStatus), default=BookingStatus.PENDING, index=True)

    request_note: Mapped[Optional[str]] = mapped_column(Text, default=None)
    reject_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, default=None)
    checkout_note: Mapped[Optional[str]] = mapped_column(Text, default=None)
    checkout_image_url: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    return_note: Mapped[Optional[str]] = mapped_column(Text, default=None)
    return_image_url: Mapped[Optional[str]] = mapped_column(String(500), default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=None, onupdate=utcnow)

    resource_type: Mapped[ResourceType] = relationship(back_populates="bookings")
    resource_item: Mapped[Optional[ResourceItem]] = relationship(back_populates="bookings")

    @property
    def target(self) -> BookingTarget:
        return make_target(self.resource_type_id, self.resource_item_id)
