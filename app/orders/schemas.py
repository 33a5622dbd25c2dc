from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.orders.enums import AssetState, HistoryEvent, OrderState, PlanOrigin, Priority


class PartUsage(BaseModel):
    component_id: str
    qty: int = Field(gt=0)


class ManualActivityPayload(BaseModel):
    activity_id: str
    mandatory: bool = True
    sequence: Optional[int] = None


class CreateOrderCommand(BaseModel):
    client_id: str
    service_type: str
    asset_ids: List[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    description: Optional[str] = None
    asset_labels: Optional[Dict[str, str]] = None
    activities: Optional[List[ManualActivityPayload]] = None


class ScheduleCommand(BaseModel):
    scheduled_at: Optional[datetime] = None
    note: Optional[str] = None


class AssignTechnicianCommand(BaseModel):
    technician_id: Optional[str] = None
    note: Optional[str] = None


class StartCommand(BaseModel):
    technician_id: Optional[str] = None
    note: Optional[str] = None


class PartsShortageCommand(BaseModel):
    parts_shortage: bool = True
    note: Optional[str] = None
    parts_used: List[PartUsage] = Field(default_factory=list)


class ResumeCommand(BaseModel):
    parts_available: bool = True
    note: Optional[str] = None


class FinishCommand(BaseModel):
    note: Optional[str] = None
    parts_used: List[PartUsage] = Field(default_factory=list)


class ApproveCommand(BaseModel):
    approver_id: Optional[str] = None
    note: Optional[str] = None


class CancelCommand(BaseModel):
    reason: Optional[str] = None
    note: Optional[str] = None


class AttachAssetsCommand(BaseModel):
    asset_ids: List[str] = Field(default_factory=list)
    labels: Optional[Dict[str, str]] = None


class AdvanceAssetCommand(BaseModel):
    state: AssetState


class ReplacePlanCommand(BaseModel):
    activities: List[ManualActivityPayload] = Field(default_factory=list)
    admin_override: bool = False


class OrderAssetResponse(BaseModel):
    asset_id: str
    position: int
    label: Optional[str] = None
    state: AssetState
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PlanItemResponse(BaseModel):
    id: str
    activity_id: str
    sequence: int
    origin: PlanOrigin
    mandatory: bool
    executed: bool
    executed_at: Optional[datetime] = None
    executed_by: Optional[str] = None

    class Config:
        from_attributes = True


class HistoryEntryResponse(BaseModel):
    id: int
    event: HistoryEvent
    previous_state: Optional[OrderState] = None
    new_state: OrderState
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class OrderSnapshot(BaseModel):
    """Read model returned by every order command."""

    id: str
    code: str
    state: OrderState
    priority: Priority
    service_type: str
    asset_type: Optional[str] = None
    description: Optional[str] = None
    client_id: str
    asset_id: str
    technician_id: Optional[str] = None
    created_by: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    sla_due_at: Optional[datetime] = None
    start_time: Optional[datetime] = None
    finish_time: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int
    is_multi_asset: bool = False
    assets: List[OrderAssetResponse] = Field(default_factory=list)
    activities: List[PlanItemResponse] = Field(default_factory=list)
    asset_progress: dict = Field(default_factory=dict)
    allowed_transitions: List[OrderState] = Field(default_factory=list)

    class Config:
        from_attributes = True
