import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.db.session import SessionLocal, get_db
from app.orders import sequence
from app.orders.enums import DocumentType, OrderState, TERMINAL_STATES
from app.orders.errors import (
    ConflictError,
    DependencyError,
    InvalidTransition,
    NotFoundError,
    OrderError,
    ValidationError,
)
from app.orders.schemas import (
    AdvanceAssetCommand,
    ApproveCommand,
    AssignTechnicianCommand,
    AttachAssetsCommand,
    CancelCommand,
    CreateOrderCommand,
    FinishCommand,
    HistoryEntryResponse,
    OrderSnapshot,
    PartsShortageCommand,
    ReplacePlanCommand,
    ResumeCommand,
    ScheduleCommand,
    StartCommand,
)
from app.orders.service import ServiceOrderOrchestrator
from app.orders.state_machine import TRANSITIONS, typical_flow

logger = logging.getLogger("osflow.api")

router = APIRouter(tags=["Service Orders"])

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DependencyError, status.HTTP_424_FAILED_DEPENDENCY),
)


@lru_cache
def get_orchestrator() -> ServiceOrderOrchestrator:
    return ServiceOrderOrchestrator(SessionLocal)


def _http_error(exc: OrderError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict())


def _call(operation, *args):
    try:
        return operation(*args)
    except OrderError as exc:
        logger.info("order command rejected code=%s message=%s", exc.code, exc.message)
        raise _http_error(exc) from exc


@router.get("/service-orders/workflow")
def workflow():
    return {
        "states": [state.value for state in OrderState],
        "terminal_states": sorted(state.value for state in TERMINAL_STATES),
        "transitions": [{"from": source.value, "to": target.value} for (source, target) in TRANSITIONS],
        "typical_flow": typical_flow(),
    }


@router.get("/service-orders/sequence/next")
def preview_next_code(document_type: DocumentType = DocumentType.SERVICE_ORDER, db: Session = Depends(get_db)):
    return {"code": sequence.preview_next_code(db, document_type, datetime.utcnow())}


@router.get("/service-orders/sequence/stats")
def sequence_statistics(document_type: Optional[DocumentType] = None, db: Session = Depends(get_db)):
    return sequence.counter_statistics(db, document_type)


@router.post("/service-orders", response_model=OrderSnapshot, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: CreateOrderCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.create_order, payload, x_actor_id)


@router.get("/service-orders/{order_id}", response_model=OrderSnapshot)
def get_order(order_id: str, orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator)):
    return _call(orchestrator.get_order, order_id)


@router.get("/service-orders/{order_id}/history", response_model=list[HistoryEntryResponse])
def get_history(order_id: str, orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator)):
    return _call(orchestrator.get_history, order_id)


@router.post("/service-orders/{order_id}/schedule", response_model=OrderSnapshot)
def schedule(
    order_id: str,
    payload: ScheduleCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.schedule, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/assign", response_model=OrderSnapshot)
def assign_technician(
    order_id: str,
    payload: AssignTechnicianCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.assign_technician, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/start", response_model=OrderSnapshot)
def start(
    order_id: str,
    payload: StartCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.start, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/parts-shortage", response_model=OrderSnapshot)
def report_parts_shortage(
    order_id: str,
    payload: PartsShortageCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.report_parts_shortage, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/resume", response_model=OrderSnapshot)
def resume(
    order_id: str,
    payload: ResumeCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.resume, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/finish", response_model=OrderSnapshot)
def finish(
    order_id: str,
    payload: FinishCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.finish, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/approve", response_model=OrderSnapshot)
def approve(
    order_id: str,
    payload: ApproveCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.approve, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/cancel", response_model=OrderSnapshot)
def cancel(
    order_id: str,
    payload: CancelCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.cancel, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/assets", response_model=OrderSnapshot)
def attach_assets(
    order_id: str,
    payload: AttachAssetsCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.attach_assets, order_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/assets/{asset_id}/advance", response_model=OrderSnapshot)
def advance_asset(
    order_id: str,
    asset_id: str,
    payload: AdvanceAssetCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.advance_asset, order_id, asset_id, payload, x_actor_id)


@router.post("/service-orders/{order_id}/activities/{item_id}/execute", response_model=OrderSnapshot)
def mark_activity_executed(
    order_id: str,
    item_id: str,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.mark_activity_executed, order_id, item_id, x_actor_id)


@router.put("/service-orders/{order_id}/plan", response_model=OrderSnapshot)
def replace_plan(
    order_id: str,
    payload: ReplacePlanCommand,
    x_actor_id: Optional[str] = Header(default=None),
    orchestrator: ServiceOrderOrchestrator = Depends(get_orchestrator),
):
    return _call(orchestrator.replace_plan, order_id, payload, x_actor_id)
