"""What a booking points at: a whole resource type or one serialized item."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Aggregate:
    """Booking counted only against the resource type's stock."""

    resource_type_id: int

    @property
    def resource_item_id(self) -> None:
        return None


@dataclass(frozen=True)
class SerializedItem:
    """Booking pinned to one physical unit of a resource type."""

    resource_type_id: int
    item_id: int

    @property
    def resource_item_id(self) -> int:
        return self.item_id


BookingTarget = Union[Aggregate, SerializedItem]


def make_target(resource_type_id: int, resource_item_id: Optional[int] = None) -> BookingTarget:
    if resource_item_id is None:
        return Aggregate(resource_type_id)
    return SerializedItem(resource_type_id, resource_item_id)
