import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from app.orders.enums import AssetState, HistoryEvent, OrderState, PlanOrigin, Priority

Base = declarative_base()


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=20, validate_strings=True)


class Client(Base):
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    document = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Technician(Base):
    __tablename__ = "technicians"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Asset(Base):
    __tablename__ = "assets"
    __table_args__ = (UniqueConstraint("tag", name="uq_asset_tag"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    client_id = Column(String, ForeignKey("clients.id"), nullable=True)
    tag = Column(String, nullable=False)
    name = Column(String, nullable=False)
    asset_type = Column(String, nullable=False)
    status = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    client = relationship("Client")


class CatalogActivity(Base):
    __tablename__ = "catalog_activities"
    __table_args__ = (UniqueConstraint("code", name="uq_catalog_activity_code"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, nullable=False)
    name = Column(String, nullable=False)
    service_type = Column(String, nullable=False)
    asset_type = Column(String, nullable=False)
    execution_order = Column(Integer, nullable=False, default=0)
    mandatory = Column(Boolean, nullable=False, default=True)
    component_id = Column(String, ForeignKey("components.id"), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Component(Base):
    __tablename__ = "components"
    __table_args__ = (UniqueConstraint("sku", name="uq_component_sku"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sku = Column(String, nullable=False)
    name = Column(String, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ServiceOrder(Base):
    __tablename__ = "service_orders"
    __table_args__ = (UniqueConstraint("code", name="uq_service_order_code"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, nullable=False)
    state = Column(_enum(OrderState), nullable=False, default=OrderState.DRAFT)
    priority = Column(_enum(Priority), nullable=False, default=Priority.MEDIUM)
    service_type = Column(String, nullable=False)
    asset_type = Column(String, nullable=True)
    description = Column(String, nullable=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False)
    asset_id = Column(String, ForeignKey("assets.id"), nullable=False)
    technician_id = Column(String, ForeignKey("technicians.id"), nullable=True)
    created_by = Column(String, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    sla_due_at = Column(DateTime, nullable=True)
    start_time = Column(DateTime, nullable=True)
    finish_time = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    client = relationship("Client")
    technician = relationship("Technician")
    assets = relationship(
        "OrderAsset",
        back_populates="order",
        order_by="OrderAsset.position",
        cascade="all, delete-orphan",
    )
    activities = relationship(
        "ActivityPlanItem",
        back_populates="order",
        order_by="ActivityPlanItem.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def is_multi_asset(self) -> bool:
        return bool(self.assets)


class OrderAsset(Base):
    __tablename__ = "service_order_assets"
    __table_args__ = (UniqueConstraint("order_id", "asset_id", name="uq_order_asset"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String, ForeignKey("service_orders.id"), nullable=False, index=True)
    asset_id = Column(String, ForeignKey("assets.id"), nullable=False)
    position = Column(Integer, nullable=False, default=1)
    label = Column(String, nullable=True)
    state = Column(_enum(AssetState), nullable=False, default=AssetState.PENDING)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("ServiceOrder", back_populates="assets")
    asset = relationship("Asset")


class ActivityPlanItem(Base):
    __tablename__ = "service_order_activities"
    __table_args__ = (UniqueConstraint("order_id", "sequence", name="uq_order_activity_sequence"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String, ForeignKey("service_orders.id"), nullable=False, index=True)
    activity_id = Column(String, ForeignKey("catalog_activities.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    origin = Column(_enum(PlanOrigin), nullable=False, default=PlanOrigin.CATALOG)
    mandatory = Column(Boolean, nullable=False, default=True)
    executed = Column(Boolean, nullable=False, default=False)
    executed_at = Column(DateTime, nullable=True)
    executed_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("ServiceOrder", back_populates="activities")
    activity = relationship("CatalogActivity")


class StateHistoryEntry(Base):
    __tablename__ = "service_order_state_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("service_orders.id"), nullable=False, index=True)
    event = Column(_enum(HistoryEvent), nullable=False, default=HistoryEvent.ORDER_STATE)
    previous_state = Column(_enum(OrderState), nullable=True)
    new_state = Column(_enum(OrderState), nullable=False)
    actor_id = Column(String, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OrderSequenceCounter(Base):
    __tablename__ = "order_sequence_counters"
    __table_args__ = (
        UniqueConstraint("document_type", "year", "month", name="uq_sequence_counter_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_type = Column(String, nullable=False)
    year = Column(Integer, nullable=False)
    month = Column(Integer, nullable=False)
    current_value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
