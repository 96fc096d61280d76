"""Pydantic schemas for the equipment and rentals services."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import BookingStatus, ItemStatus, ResourceStatus, to_naive_utc


class ResourceItemRead(BaseModel):
    id: int
    resource_type_id: int
    code: str
    status: ItemStatus

    model_config = {"from_attributes": True}


class ResourceTypeBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    category: Optional[str] = Field(None, max_length=100)


class ResourceTypeCreate(ResourceTypeBase):
    stock_count: int = Field(1, ge=0)
    status: ResourceStatus = ResourceStatus.AVAILABLE


class ResourceTypeRead(ResourceTypeBase):
    id: int
    stock_count: int
    status: ResourceStatus
    created_at: datetime
    items: List[ResourceItemRead] = []

    model_config = {"from_attributes": True}


class StockIncrease(BaseModel):
    quantity: int = Field(..., ge=1)


class ResourceStatusUpdate(BaseModel):
    status: ResourceStatus


class ItemStatusUpdate(BaseModel):
    status: ItemStatus


class BookingCreate(BaseModel):
    resource_type_id: int
    resource_item_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    request_note: Optional[str] = Field(None, max_length=2000)
    allow_overlap: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _as_naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=2000)
    evidence_note: Optional[str] = Field(None, max_length=2000)
    evidence_image_url: Optional[str] = Field(None, max_length=500)


class BookingRead(BaseModel):
    id: int
    requester_id: str
    requester_name: Optional[str] = None
    resource_type_id: int
    resource_item_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    request_note: Optional[str] = None
    reject_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    checkout_note: Optional[str] = None
    checkout_image_url: Optional[str] = None
    return_note: Optional[str] = None
    return_image_url: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingCreated(BaseModel):
    booking: BookingRead
    superseded_ids: List[int] = []


class BookingTransition(BaseModel):
    booking: BookingRead
    auto_rejected_ids: List[int] = []
    auto_rejected_requester_ids: List[str] = []
    message: Optional[str] = None
