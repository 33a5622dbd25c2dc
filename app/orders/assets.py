"""Assets covered by a service order and their individual progress.

An order without ``OrderAsset`` rows is a single-asset order and its
``asset_id`` column is authoritative. Once rows exist, ``asset_id`` is only a
pointer to the asset in position 1.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from app.db import models
from app.orders import audit
from app.orders.enums import AssetState, HistoryEvent, OrderState, TERMINAL_STATES
from app.orders.errors import InvalidTransition, NotFoundError, ValidationError

logger = logging.getLogger("osflow.assets")

ASSET_TRANSITIONS = {
    AssetState.PENDING: AssetState.IN_PROGRESS,
    AssetState.IN_PROGRESS: AssetState.COMPLETED,
}


def _label(asset: models.Asset, labels: Optional[dict]) -> str:
    if labels and labels.get(asset.id):
        return labels[asset.id]
    return f"{asset.name} ({asset.tag})"


def sync_primary_asset(order: models.ServiceOrder) -> None:
    if order.assets:
        first = min(order.assets, key=lambda row: row.position)
        order.asset_id = first.asset_id


def attach_assets(
    db: Session,
    order: models.ServiceOrder,
    assets: Sequence[models.Asset],
    actor_id: Optional[str],
    labels: Optional[dict] = None,
    at: Optional[datetime] = None,
) -> list[models.OrderAsset]:
    state = OrderState(order.state)
    if state != OrderState.DRAFT:
        raise ValidationError(
            "Equipamentos so podem ser vinculados com a ordem em rascunho",
            {"state": state.value},
        )
    if not assets:
        raise ValidationError("Informe ao menos um equipamento")

    ids = [asset.id for asset in assets]
    duplicated = sorted({asset_id for asset_id in ids if ids.count(asset_id) > 1})
    if duplicated:
        raise ValidationError("Equipamento repetido na requisicao", {"asset_ids": duplicated})

    attached = {row.asset_id for row in order.assets}
    already = sorted(attached.intersection(ids))
    if already:
        raise ValidationError("Equipamento ja vinculado a ordem", {"asset_ids": already})

    for asset in assets:
        if order.asset_type and asset.asset_type != order.asset_type:
            raise ValidationError(
                f"Equipamento {asset.tag or asset.id} e do tipo {asset.asset_type}, "
                f"mas o plano da ordem foi resolvido para {order.asset_type}",
                {"asset_id": asset.id, "asset_type": asset.asset_type, "expected_asset_type": order.asset_type},
            )

    to_attach = list(assets)
    if not order.assets and order.asset_id and order.asset_id not in ids:
        # ordem legada passando a multi-equipamento: o equipamento principal vira a posicao 1
        primary = db.query(models.Asset).filter(models.Asset.id == order.asset_id).first()
        if primary is not None:
            to_attach.insert(0, primary)

    next_position = max((row.position for row in order.assets), default=0) + 1
    created = []
    for offset, asset in enumerate(to_attach):
        row = models.OrderAsset(
            id=str(uuid.uuid4()),
            asset_id=asset.id,
            position=next_position + offset,
            label=_label(asset, labels),
            state=AssetState.PENDING,
        )
        order.assets.append(row)
        created.append(row)
    sync_primary_asset(order)

    audit.append(
        db,
        order.id,
        state,
        state,
        actor_id,
        note="Equipamentos vinculados: " + ", ".join(row.label for row in created),
        event=HistoryEvent.ASSET_STATE,
        at=at,
    )
    logger.info("assets attached order_id=%s count=%s", order.id, len(created))
    return created


def advance_asset(
    db: Session,
    order: models.ServiceOrder,
    asset_id: str,
    new_sub_state: AssetState | str,
    actor_id: Optional[str],
    at: Optional[datetime] = None,
) -> models.OrderAsset:
    order_state = OrderState(order.state)
    if order_state in TERMINAL_STATES:
        raise ValidationError("Ordem encerrada nao aceita progresso de equipamentos", {"state": order_state.value})
    try:
        target = AssetState(new_sub_state)
    except ValueError as exc:
        raise ValidationError("Estado de equipamento invalido", {"state": str(new_sub_state)}) from exc

    row = next((item for item in order.assets if item.asset_id == asset_id), None)
    if row is None:
        raise NotFoundError("Equipamento nao vinculado a ordem", {"asset_id": asset_id})

    current = AssetState(row.state)
    if ASSET_TRANSITIONS.get(current) != target:
        raise InvalidTransition(current, target, f"equipamento {row.label}")

    now = at or datetime.utcnow()
    row.state = target
    if target == AssetState.IN_PROGRESS:
        row.started_at = now
    elif target == AssetState.COMPLETED:
        row.finished_at = now

    audit.append(
        db,
        order.id,
        order_state,
        order_state,
        actor_id,
        note=f"Equipamento {row.label}: {current.value} -> {target.value}",
        event=HistoryEvent.ASSET_STATE,
        at=now,
    )
    return row


def incomplete_assets(order: models.ServiceOrder) -> list[models.OrderAsset]:
    return [row for row in order.assets if AssetState(row.state) != AssetState.COMPLETED]


def asset_progress(order: models.ServiceOrder) -> dict:
    total = len(order.assets)
    completed = total - len(incomplete_assets(order))
    return {"total": total, "completed": completed}
