"""Inventory accounting for resource types and their serialized items.

``reserve_on_checkout`` and ``release_on_return`` never commit: they run
inside the orchestrator's transaction so the stock change and the booking
status write land together or not at all. Each counter change is a single
conditional ``UPDATE`` (``... WHERE stock_count > 0``) issued after the
resource type row has been locked, so two checkouts racing for the last
unit cannot both succeed.

The administrative helpers (create, grow, status flips) own their
transaction and commit on success.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import get_settings
from .database import atomic
from .errors import InvalidLedgerChange, ItemNotFound, ItemUnavailable, OutOfStock, ResourceNotFound
from .models import ItemStatus, ResourceItem, ResourceStatus, ResourceType
from .targets import BookingTarget, SerializedItem

logger = logging.getLogger(__name__)


def format_item_code(sequence: int, width: Optional[int] = None) -> str:
    if width is None:
        width = get_settings().item_code_width
    return str(sequence).zfill(width)


class ResourceLedger:
    def __init__(self, db: Session) -> None:
        self.db = db

    # -- reads ---------------------------------------------------------

    def _lock_resource_row(self, resource_type_id: int) -> None:
        # SQLite ignores FOR UPDATE; a no-op write takes the database write lock instead.
        if self.db.get_bind().dialect.name == "sqlite":
            self.db.execute(
                update(ResourceType)
                .where(ResourceType.id == resource_type_id)
                .values(id=ResourceType.id)
                .execution_options(synchronize_session=False)
            )

    def get_resource_type(self, resource_type_id: int, *, lock: bool = False) -> ResourceType:
        stmt = select(ResourceType).where(ResourceType.id == resource_type_id)
        if lock:
            self._lock_resource_row(resource_type_id)
            stmt = stmt.with_for_update()
        resource = self.db.scalars(stmt.execution_options(populate_existing=True)).first()
        if resource is None:
            raise ResourceNotFound(resource_type_id)
        return resource

    def get_item(self, resource_type_id: int, item_id: int, *, lock: bool = False) -> ResourceItem:
        stmt = select(ResourceItem).where(
            ResourceItem.id == item_id,
            ResourceItem.resource_type_id == resource_type_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        item = self.db.scalars(stmt.execution_options(populate_existing=True)).first()
        if item is None:
            raise ItemNotFound(item_id, resource_type_id)
        return item

    def list_resource_types(self, category: Optional[str] = None) -> list[ResourceType]:
        stmt = select(ResourceType).order_by(ResourceType.created_at.desc(), ResourceType.id.desc())
        if category:
            stmt = stmt.where(ResourceType.category == category)
        return list(self.db.scalars(stmt))

    # -- booking side effects (caller owns the transaction) ------------

    def reserve_on_checkout(self, target: BookingTarget) -> ResourceType:
        """Take one unit out of stock for a checkout.

        Raises ``ItemUnavailable`` when the targeted item is not AVAILABLE and
        ``OutOfStock`` when the counter is already at zero.
        """

        type_id = target.resource_type_id
        self.get_resource_type(type_id, lock=True)

        if isinstance(target, SerializedItem):
            flipped = self.db.execute(
                update(ResourceItem)
                .where(
                    ResourceItem.id == target.item_id,
                    ResourceItem.resource_type_id == type_id,
                    ResourceItem.status == ItemStatus.AVAILABLE,
                )
                .values(status=ItemStatus.RENTED)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 0:
                item = self.get_item(type_id, target.item_id)
                raise ItemUnavailable(item.id, item.status)

        decremented = self.db.execute(
            update(ResourceType)
            .where(ResourceType.id == type_id, ResourceType.stock_count > 0)
            .values(stock_count=ResourceType.stock_count - 1)
            .execution_options(synchronize_session=False)
        )
        if decremented.rowcount == 0:
            raise OutOfStock(type_id)

        self._sync_availability(type_id)
        resource = self.get_resource_type(type_id)
        logger.info("Checked out one unit of resource %s (stock now %s)", type_id, resource.stock_count)
        return resource

    def release_on_return(self, target: BookingTarget) -> ResourceType:
        """Put one unit back in stock for a return."""

        type_id = target.resource_type_id
        self.get_resource_type(type_id, lock=True)

        if isinstance(target, SerializedItem):
            released = self.db.execute(
                update(ResourceItem)
                .where(
                    ResourceItem.id == target.item_id,
                    ResourceItem.resource_type_id == type_id,
                    ResourceItem.status == ItemStatus.RENTED,
                )
                .values(status=ItemStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )
            if released.rowcount == 0:
                logger.warning("Returned item %s of resource %s was not marked RENTED", target.item_id, type_id)

        self.db.execute(
            update(ResourceType)
            .where(ResourceType.id == type_id)
            .values(stock_count=ResourceType.stock_count + 1)
            .execution_options(synchronize_session=False)
        )

        self._sync_availability(type_id)
        resource = self.get_resource_type(type_id)
        logger.info("Returned one unit of resource %s (stock now %s)", type_id, resource.stock_count)
        return resource

    def _sync_availability(self, resource_type_id: int) -> None:
        # Only the AVAILABLE <-> UNAVAILABLE pair is automatic; MAINTENANCE is an admin decision.
        self.db.execute(
            update(ResourceType)
            .where(
                ResourceType.id == resource_type_id,
                ResourceType.stock_count == 0,
                ResourceType.status == ResourceStatus.AVAILABLE,
            )
            .values(status=ResourceStatus.UNAVAILABLE)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(ResourceType)
            .where(
                ResourceType.id == resource_type_id,
                ResourceType.stock_count > 0,
                ResourceType.status == ResourceStatus.UNAVAILABLE,
            )
            .values(status=ResourceStatus.AVAILABLE)
            .execution_options(synchronize_session=False)
        )

    # -- administration (owns its transaction) -------------------------

    def create_resource_type(
        self,
        name: str,
        stock_count: int = 1,
        category: Optional[str] = None,
        status: ResourceStatus = ResourceStatus.AVAILABLE,
    ) -> ResourceType:
        """Create a resource type and spawn ``stock_count`` serialized items."""

        if stock_count < 0:
            raise InvalidLedgerChange("Initial stock cannot be negative")
        if status == ResourceStatus.UNAVAILABLE:
            raise InvalidLedgerChange("UNAVAILABLE is derived from stock and cannot be set directly")
        if status == ResourceStatus.AVAILABLE and stock_count == 0:
            status = ResourceStatus.UNAVAILABLE

        with atomic(self.db):
            resource = ResourceType(name=name, category=category, stock_count=stock_count, status=status)
            resource.items = [
                ResourceItem(code=format_item_code(sequence), status=ItemStatus.AVAILABLE)
                for sequence in range(1, stock_count + 1)
            ]
            self.db.add(resource)
        self.db.refresh(resource)
        logger.info("Created resource %s (%s) with %s items", resource.id, name, stock_count)
        return resource

    def add_stock(self, resource_type_id: int, quantity: int) -> ResourceType:
        """Append ``quantity`` items, continuing the code sequence."""

        if quantity <= 0:
            raise InvalidLedgerChange("Stock can only grow by a positive quantity")

        with atomic(self.db):
            self.get_resource_type(resource_type_id, lock=True)
            codes = self.db.scalars(
                select(ResourceItem.code).where(ResourceItem.resource_type_id == resource_type_id)
            ).all()
            next_sequence = max((int(code) for code in codes if code.isdigit()), default=0) + 1
            for sequence in range(next_sequence, next_sequence + quantity):
                self.db.add(
                    ResourceItem(
                        resource_type_id=resource_type_id,
                        code=format_item_code(sequence),
                        status=ItemStatus.AVAILABLE,
                    )
                )
            self.db.execute(
                update(ResourceType)
                .where(ResourceType.id == resource_type_id)
                .values(stock_count=ResourceType.stock_count + quantity)
                .execution_options(synchronize_session=False)
            )
            self._sync_availability(resource_type_id)
        logger.info("Added %s items to resource %s", quantity, resource_type_id)
        resource = self.get_resource_type(resource_type_id)
        self.db.refresh(resource)
        return resource

    def set_status(self, resource_type_id: int, status: ResourceStatus) -> ResourceType:
        """Put a resource type into MAINTENANCE or take it back out."""

        if status == ResourceStatus.UNAVAILABLE:
            raise InvalidLedgerChange("UNAVAILABLE is derived from stock and cannot be set directly")

        with atomic(self.db):
            resource = self.get_resource_type(resource_type_id, lock=True)
            if status == ResourceStatus.MAINTENANCE:
                resource.status = ResourceStatus.MAINTENANCE
            else:
                resource.status = ResourceStatus.AVAILABLE if resource.stock_count > 0 else ResourceStatus.UNAVAILABLE
        logger.info("Resource %s status set to %s", resource_type_id, resource.status.value)
        return self.get_resource_type(resource_type_id)

    def set_item_status(self, resource_type_id: int, item_id: int, status: ItemStatus) -> ResourceItem:
        """Retire an item (UNAVAILABLE) or bring it back (AVAILABLE).

        RENTED is reachable only through a checkout and left only through a
        return, so neither side of that flip is accepted here.
        """

        if status == ItemStatus.RENTED:
            raise InvalidLedgerChange("Items become RENTED only through a checkout")

        with atomic(self.db):
            self.get_resource_type(resource_type_id, lock=True)
            item = self.get_item(resource_type_id, item_id, lock=True)
            if item.status == ItemStatus.RENTED:
                raise InvalidLedgerChange("A rented item is released only by its return")
            if item.status != status:
                delta = 1 if status == ItemStatus.AVAILABLE else -1
                item.status = status
                self.db.flush()
                adjusted = self.db.execute(
                    update(ResourceType)
                    .where(ResourceType.id == resource_type_id, ResourceType.stock_count + delta >= 0)
                    .values(stock_count=ResourceType.stock_count + delta)
                    .execution_options(synchronize_session=False)
                )
                if adjusted.rowcount == 0:
                    # Every remaining unit is out on an aggregate rental; retiring one would desync the count.
                    raise OutOfStock(resource_type_id)
                self._sync_availability(resource_type_id)
        logger.info("Item %s of resource %s set to %s", item_id, resource_type_id, status.value)
        return self.get_item(resource_type_id, item_id)
