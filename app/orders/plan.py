"""Activity plan (checklist) resolution and storage for service orders."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from app.db import models
from app.orders.collaborators import ActivityCatalog
from app.orders.enums import OrderState, PlanOrigin, TERMINAL_STATES
from app.orders.errors import NotFoundError, ValidationError

logger = logging.getLogger("osflow.plan")

# Estados em que o plano ainda pode ser reescrito sem override administrativo
EDITABLE_STATES = frozenset({OrderState.DRAFT, OrderState.SCHEDULED, OrderState.ASSIGNED})


@dataclass(frozen=True)
class PlanEntry:
    activity_id: str
    mandatory: bool = True


@dataclass(frozen=True)
class ManualActivity:
    activity_id: str
    mandatory: bool = True
    sequence: Optional[int] = None


@dataclass(frozen=True)
class ResolvedPlan:
    origin: PlanOrigin
    asset_type: Optional[str] = None
    entries: tuple[PlanEntry, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.entries


def ensure_homogeneous(assets: Sequence[models.Asset]) -> str:
    """Return the asset type shared by every asset or reject the first one that differs."""
    if not assets:
        raise ValidationError("Informe ao menos um equipamento")
    expected = assets[0].asset_type
    for asset in assets[1:]:
        if asset.asset_type != expected:
            raise ValidationError(
                f"Equipamento {asset.tag or asset.id} e do tipo {asset.asset_type}, "
                f"mas a ordem cobre equipamentos do tipo {expected}",
                {"asset_id": asset.id, "asset_type": asset.asset_type, "expected_asset_type": expected},
            )
    return expected


def resolve_plan(
    db: Session,
    catalog: ActivityCatalog,
    service_type: str,
    asset_types: Sequence[str],
) -> ResolvedPlan:
    if not service_type:
        raise ValidationError("Tipo de servico obrigatorio")
    if not asset_types:
        raise ValidationError("Informe ao menos um tipo de equipamento")
    asset_type = asset_types[0]
    for index, other in enumerate(asset_types[1:], start=2):
        if other != asset_type:
            raise ValidationError(
                f"Equipamento na posicao {index} e do tipo {other}, esperado {asset_type}",
                {"position": index, "asset_type": other, "expected_asset_type": asset_type},
            )

    definitions = catalog.activities_for(db, service_type, asset_type)
    if not definitions:
        logger.info("empty catalog plan service_type=%s asset_type=%s", service_type, asset_type)
    ordered = sorted(definitions, key=lambda item: item.execution_order)
    return ResolvedPlan(
        origin=PlanOrigin.CATALOG,
        asset_type=asset_type,
        entries=tuple(PlanEntry(activity_id=item.activity_id, mandatory=item.mandatory) for item in ordered),
    )


def manual_plan(
    db: Session,
    activities: Sequence[ManualActivity],
    asset_type: Optional[str] = None,
) -> ResolvedPlan:
    if not activities:
        raise ValidationError("Plano manual sem atividades")
    seen: set[str] = set()
    duplicates = []
    for item in activities:
        if item.activity_id in seen:
            duplicates.append(item.activity_id)
        seen.add(item.activity_id)
    if duplicates:
        raise ValidationError("Atividade repetida no plano", {"activity_ids": sorted(set(duplicates))})

    known = {
        row_id
        for (row_id,) in db.query(models.CatalogActivity.id)
        .filter(models.CatalogActivity.id.in_(sorted(seen)))
        .all()
    }
    unknown = sorted(seen - known)
    if unknown:
        raise NotFoundError("Atividade nao encontrada no catalogo", {"activity_ids": unknown})

    # sort() e estavel: itens sem sequencia mantem a posicao relativa enviada
    indexed = list(enumerate(activities))
    indexed.sort(key=lambda pair: (pair[1].sequence is None, pair[1].sequence or 0, pair[0]))
    return ResolvedPlan(
        origin=PlanOrigin.MANUAL,
        asset_type=asset_type,
        entries=tuple(PlanEntry(activity_id=item.activity_id, mandatory=item.mandatory) for _, item in indexed),
    )


def store_plan(db: Session, order: models.ServiceOrder, plan: ResolvedPlan) -> list[models.ActivityPlanItem]:
    if order.activities:
        for item in list(order.activities):
            order.activities.remove(item)
        # as linhas antigas saem antes de reaproveitar as sequencias 1..N
        db.flush()
    items = []
    for sequence, entry in enumerate(plan.entries, start=1):
        item = models.ActivityPlanItem(
            id=str(uuid.uuid4()),
            activity_id=entry.activity_id,
            sequence=sequence,
            origin=plan.origin,
            mandatory=entry.mandatory,
            executed=False,
        )
        order.activities.append(item)
        items.append(item)
    return items


def replace_plan(
    db: Session,
    order: models.ServiceOrder,
    plan: ResolvedPlan,
    admin_override: bool = False,
) -> list[models.ActivityPlanItem]:
    state = OrderState(order.state)
    if state in TERMINAL_STATES:
        raise ValidationError("Plano de ordem encerrada nao pode ser alterado", {"state": state.value})
    if state not in EDITABLE_STATES and not admin_override:
        raise ValidationError(
            "Plano de atividades bloqueado apos o inicio da execucao",
            {"state": state.value},
        )
    return store_plan(db, order, plan)


def mark_executed(
    order: models.ServiceOrder,
    item_id: str,
    actor_id: str,
    at: Optional[datetime] = None,
) -> models.ActivityPlanItem:
    state = OrderState(order.state)
    if state != OrderState.IN_PROGRESS:
        raise ValidationError(
            "Atividades so podem ser executadas com a ordem em andamento",
            {"state": state.value},
        )
    item = next((row for row in order.activities if row.id == item_id), None)
    if item is None:
        raise NotFoundError("Atividade nao encontrada na ordem", {"item_id": item_id})
    if not item.executed:
        item.executed = True
        item.executed_at = at or datetime.utcnow()
        item.executed_by = actor_id
    return item


def pending_mandatory(order: models.ServiceOrder) -> list[models.ActivityPlanItem]:
    return [item for item in order.activities if item.mandatory and not item.executed]
