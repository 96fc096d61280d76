from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from gear_rental.config import get_settings
from gear_rental.database import Base, engine
from gear_rental.dependencies import apply_error_handlers, get_actor, get_ledger
from gear_rental.events import Actor
from gear_rental.ledger import ResourceLedger
from gear_rental.logging_middleware import add_audit_middleware
from gear_rental.models import ResourceItem, ResourceType
from gear_rental.rate_limit import apply_rate_limiter, limiter
from gear_rental.schemas import (
    ItemStatusUpdate,
    ResourceItemRead,
    ResourceStatusUpdate,
    ResourceTypeCreate,
    ResourceTypeRead,
    StockIncrease,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Equipment Service", version="0.1.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    apply_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "equipment")
    if settings.metrics_enabled:
        Instrumentator().instrument(fastapi_app).expose(fastapi_app)
    return fastapi_app


app = create_app()


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "equipment"}


@app.post("/equipment", response_model=ResourceTypeRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def add_equipment(
    request: Request,
    equipment_in: ResourceTypeCreate,
    _: Actor = Depends(get_actor),
    ledger: ResourceLedger = Depends(get_ledger),
) -> ResourceType:
    return ledger.create_resource_type(
        equipment_in.name,
        stock_count=equipment_in.stock_count,
        category=equipment_in.category,
        status=equipment_in.status,
    )


@app.get("/equipment", response_model=List[ResourceTypeRead])
@limiter.limit("60/minute")
def list_equipment(
    request: Request,
    category: Optional[str] = None,
    ledger: ResourceLedger = Depends(get_ledger),
) -> List[ResourceType]:
    return ledger.list_resource_types(category=category)


@app.get("/equipment/{equipment_id}", response_model=ResourceTypeRead)
@limiter.limit("60/minute")
def get_equipment(
    request: Request,
    equipment_id: int,
    ledger: ResourceLedger = Depends(get_ledger),
) -> ResourceType:
    return ledger.get_resource_type(equipment_id)


@app.post("/equipment/{equipment_id}/stock", response_model=ResourceTypeRead)
@limiter.limit("15/minute")
def add_equipment_stock(
    request: Request,
    equipment_id: int,
    stock_in: StockIncrease,
    _: Actor = Depends(get_actor),
    ledger: ResourceLedger = Depends(get_ledger),
) -> ResourceType:
    return ledger.add_stock(equipment_id, stock_in.quantity)


@app.patch("/equipment/{equipment_id}/status", response_model=ResourceTypeRead)
@limiter.limit("15/minute")
def update_equipment_status(
    request: Request,
    equipment_id: int,
    status_in: ResourceStatusUpdate,
    _: Actor = Depends(get_actor),
    ledger: ResourceLedger = Depends(get_ledger),
) -> ResourceType:
    return ledger.set_status(equipment_id, status_in.status)


@app.patch("/equipment/{equipment_id}/items/{item_id}/status", response_model=ResourceItemRead)
@limiter.limit("15/minute")
def update_item_status(
    request: Request,
    equipment_id: int,
    item_id: int,
    status_in: ItemStatusUpdate,
    _: Actor = Depends(get_actor),
    ledger: ResourceLedger = Depends(get_ledger),
) -> ResourceItem:
    return ledger.set_item_status(equipment_id, item_id, status_in.status)
