from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from gear_rental.config import get_settings
from gear_rental.database import Base, engine
from gear_rental.dependencies import apply_error_handlers, get_actor, get_orchestrator
from gear_rental.events import Actor
from gear_rental.logging_middleware import add_audit_middleware
from gear_rental.models import Booking, BookingStatus
from gear_rental.orchestrator import BookingOrchestrator, HandoverEvidence
from gear_rental.rate_limit import apply_rate_limiter, limiter
from gear_rental.schemas import BookingCreate, BookingCreated, BookingRead, BookingStatusUpdate, BookingTransition

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Rentals Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    apply_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "rentals")
    if settings.metrics_enabled:
        Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "rentals"}


@app.post("/rentals", response_model=BookingCreated, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_rental(
    request: Request,
    rental_in: BookingCreate,
    actor: Actor = Depends(get_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> BookingCreated:
    result = orchestrator.create_booking(
        actor,
        rental_in.resource_type_id,
        rental_in.start_time,
        rental_in.end_time,
        resource_item_id=rental_in.resource_item_id,
        note=rental_in.request_note,
        allow_overlap=rental_in.allow_overlap,
    )
    return BookingCreated(
        booking=BookingRead.model_validate(result.booking),
        superseded_ids=result.superseded_ids,
    )


@app.get("/rentals", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_rentals(
    request: Request,
    resource_type_id: Optional[int] = None,
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> List[Booking]:
    return orchestrator.list_bookings(resource_type_id=resource_type_id, status=status_filter)


@app.get("/rentals/me", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_my_rentals(
    request: Request,
    actor: Actor = Depends(get_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> List[Booking]:
    return orchestrator.list_bookings(requester_id=actor.id)


@app.get("/rentals/conflicts", response_model=List[BookingRead])
@limiter.limit("40/minute")
def rental_conflicts(
    request: Request,
    resource_type_id: int,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    resource_item_id: Optional[int] = None,
    exclude_rental_id: Optional[int] = None,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> List[Booking]:
    return orchestrator.find_conflicts(
        resource_type_id,
        start_time,
        end_time,
        resource_item_id=resource_item_id,
        exclude_booking_id=exclude_rental_id,
    )


@app.get("/rentals/{rental_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def get_rental(
    request: Request,
    rental_id: int,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> Booking:
    return orchestrator.get_booking(rental_id)


@app.patch("/rentals/{rental_id}/status", response_model=BookingTransition)
@limiter.limit("20/minute")
def update_rental_status(
    request: Request,
    rental_id: int,
    status_update: BookingStatusUpdate,
    actor: Actor = Depends(get_actor),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
) -> BookingTransition:
    evidence = None
    if status_update.evidence_note is not None or status_update.evidence_image_url is not None:
        evidence = HandoverEvidence(note=status_update.evidence_note, image_url=status_update.evidence_image_url)
    result = orchestrator.update_status(
        rental_id,
        status_update.status,
        actor=actor,
        reason=status_update.reason,
        evidence=evidence,
    )
    message = None
    if result.auto_rejected_ids:
        message = f"{len(result.auto_rejected_ids)} other requests were auto-rejected"
    return BookingTransition(
        booking=BookingRead.model_validate(result.booking),
        auto_rejected_ids=result.auto_rejected_ids,
        auto_rejected_requester_ids=result.auto_rejected_requester_ids,
        message=message,
    )
