"""Reusable FastAPI dependencies and error mapping for the services."""
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .database import get_db
from .errors import ConflictFailure, LookupFailure, RentalError, ValidationFailure
from .events import Actor, EventSink, build_event_sink
from .ledger import ResourceLedger
from .orchestrator import BookingOrchestrator

_event_sink: Optional[EventSink] = None


def get_event_sink() -> EventSink:
    global _event_sink
    if _event_sink is None:
        _event_sink = build_event_sink()
    return _event_sink


def get_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_name: Optional[str] = Header(None, alias="X-Actor-Name"),
) -> Actor:
    # Authentication happens upstream; this layer only needs to know who is asking.
    if not x_actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Actor-Id header")
    return Actor(id=x_actor_id, label=x_actor_name or x_actor_id)


def get_ledger(db: Session = Depends(get_db)) -> ResourceLedger:
    return ResourceLedger(db)


def get_orchestrator(
    db: Session = Depends(get_db),
    events: EventSink = Depends(get_event_sink),
) -> BookingOrchestrator:
    return BookingOrchestrator(db, events=events)


def status_code_for(exc: RentalError) -> int:
    if isinstance(exc, LookupFailure):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictFailure):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationFailure):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_400_BAD_REQUEST


def rental_error_handler(_: Request, exc: RentalError) -> JSONResponse:
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


def apply_error_handlers(app: FastAPI) -> None:
    """Render every core error as a structured JSON body."""

    app.add_exception_handler(RentalError, rental_error_handler)
