"""Contracts the order engine consumes, with the default implementations.

Directory, catalog and stock ledger run against the same SQLAlchemy session
as the order transaction, so whatever they touch rolls back with it. The
notifier is only ever called after commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import requests
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db import models
from app.orders.errors import DependencyError, NotFoundError, ValidationError

logger = logging.getLogger("osflow.collaborators")


@dataclass(frozen=True)
class ActivityDefinition:
    activity_id: str
    code: str
    name: str
    execution_order: int
    mandatory: bool
    component_id: Optional[str] = None


class Directory:
    def is_active_technician(self, db: Session, technician_id: str) -> bool:
        raise NotImplementedError

    def get_client(self, db: Session, client_id: str) -> models.Client:
        raise NotImplementedError

    def get_asset(self, db: Session, asset_id: str) -> models.Asset:
        raise NotImplementedError


class ActivityCatalog:
    def activities_for(self, db: Session, service_type: str, asset_type: str) -> list[ActivityDefinition]:
        raise NotImplementedError


class Notifier:
    def notify(self, order_id: str, event_type: str, payload: dict) -> None:
        raise NotImplementedError


class StockLedger:
    def reserve_or_consume(self, db: Session, component_id: str, qty: int) -> None:
        raise NotImplementedError


class SqlDirectory(Directory):
    def is_active_technician(self, db: Session, technician_id: str) -> bool:
        technician = db.query(models.Technician).filter(models.Technician.id == technician_id).first()
        if not technician:
            raise NotFoundError("Tecnico nao encontrado", {"technician_id": technician_id})
        return bool(technician.is_active)

    def get_client(self, db: Session, client_id: str) -> models.Client:
        client = db.query(models.Client).filter(models.Client.id == client_id).first()
        if not client:
            raise NotFoundError("Cliente nao encontrado", {"client_id": client_id})
        return client

    def get_asset(self, db: Session, asset_id: str) -> models.Asset:
        asset = db.query(models.Asset).filter(models.Asset.id == asset_id).first()
        if not asset:
            raise NotFoundError("Equipamento nao encontrado", {"asset_id": asset_id})
        return asset


class SqlActivityCatalog(ActivityCatalog):
    def activities_for(self, db: Session, service_type: str, asset_type: str) -> list[ActivityDefinition]:
        rows = (
            db.query(models.CatalogActivity)
            .filter(
                models.CatalogActivity.service_type == service_type,
                models.CatalogActivity.asset_type == asset_type,
                models.CatalogActivity.is_active.is_(True),
            )
            .order_by(models.CatalogActivity.execution_order.asc(), models.CatalogActivity.code.asc())
            .all()
        )
        return [
            ActivityDefinition(
                activity_id=row.id,
                code=row.code,
                name=row.name,
                execution_order=row.execution_order,
                mandatory=row.mandatory,
                component_id=row.component_id,
            )
            for row in rows
        ]


class SqlStockLedger(StockLedger):
    def reserve_or_consume(self, db: Session, component_id: str, qty: int) -> None:
        if qty <= 0:
            raise ValidationError("Quantidade deve ser maior que zero", {"component_id": component_id})
        result = db.execute(
            update(models.Component)
            .where(models.Component.id == component_id, models.Component.stock_quantity >= qty)
            .values(
                stock_quantity=models.Component.stock_quantity - qty,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        exists = db.query(models.Component.id).filter(models.Component.id == component_id).first()
        if not exists:
            raise DependencyError("Componente nao rastreado no estoque", {"component_id": component_id})
        raise DependencyError(
            "Estoque insuficiente para o componente",
            {"component_id": component_id, "requested": qty},
        )


class LoggingNotifier(Notifier):
    def notify(self, order_id: str, event_type: str, payload: dict) -> None:
        logger.info("notification order_id=%s event=%s payload=%s", order_id, event_type, payload)


class WebhookNotifier(Notifier):
    def __init__(self, url: str, timeout: Optional[float] = None) -> None:
        self.url = url
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    def notify(self, order_id: str, event_type: str, payload: dict) -> None:
        body = {"order_id": order_id, "event_type": event_type, "payload": payload}
        try:
            resp = requests.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DependencyError(f"Falha ao enviar notificacao: {exc}") from exc
        if resp.status_code >= 400:
            raise DependencyError(
                "Servico de notificacao recusou o evento",
                {"status_code": resp.status_code},
            )


def default_notifier() -> Notifier:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotifier()
