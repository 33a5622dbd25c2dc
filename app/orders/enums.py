from enum import Enum


class OrderState(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_PARTS = "AWAITING_PARTS"
    EXECUTED = "EXECUTED"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({OrderState.APPROVED, OrderState.CANCELLED})


class AssetState(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


# Prazo de atendimento (dias corridos a partir da data programada)
SLA_DAYS = {
    Priority.LOW: 30,
    Priority.MEDIUM: 15,
    Priority.HIGH: 5,
    Priority.URGENT: 2,
}


class PlanOrigin(str, Enum):
    CATALOG = "CATALOG"
    MANUAL = "MANUAL"


class HistoryEvent(str, Enum):
    ORDER_STATE = "ORDER_STATE"
    ASSET_STATE = "ASSET_STATE"
    ACTIVITY_PLAN = "ACTIVITY_PLAN"


class DocumentType(str, Enum):
    SERVICE_ORDER = "ORD"
    REPORT = "INF"
    REMISSION = "REM"
