"""Entry point for every service order command.

Each public method runs in its own session: load and lock the order, let the
state machine and the asset/plan components change it, commit, and only then
hand the notification to a background worker. A stale ``version`` is retried
with a fresh session.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.db import models
from app.orders import assets as asset_ledger
from app.orders import audit, plan, sequence
from app.orders.collaborators import (
    ActivityCatalog,
    Directory,
    Notifier,
    SqlActivityCatalog,
    SqlDirectory,
    SqlStockLedger,
    StockLedger,
    default_notifier,
)
from app.orders.enums import DocumentType, HistoryEvent, OrderState, PlanOrigin
from app.orders.errors import ConflictError, NotFoundError, ValidationError
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
from app.orders.state_machine import OrderStateMachine, TransitionRequest, allowed_targets

logger = logging.getLogger("osflow.orders")

_notification_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="osflow-notify")


def build_snapshot(order: models.ServiceOrder) -> OrderSnapshot:
    snapshot = OrderSnapshot.model_validate(order, from_attributes=True)
    return snapshot.model_copy(
        update={
            "is_multi_asset": order.is_multi_asset,
            "asset_progress": asset_ledger.asset_progress(order),
            "allowed_transitions": allowed_targets(order.state),
        }
    )


def _manual_activities(payload) -> list[plan.ManualActivity]:
    return [
        plan.ManualActivity(activity_id=item.activity_id, mandatory=item.mandatory, sequence=item.sequence)
        for item in payload
    ]


class ServiceOrderOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        directory: Optional[Directory] = None,
        catalog: Optional[ActivityCatalog] = None,
        notifier: Optional[Notifier] = None,
        stock_ledger: Optional[StockLedger] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        max_retries: Optional[int] = None,
        schedule_horizon_days: Optional[int] = None,
        block_empty_plan: Optional[bool] = None,
        dispatch: Optional[Callable[[Callable[[], None]], object]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.directory = directory or SqlDirectory()
        self.catalog = catalog or SqlActivityCatalog()
        self.notifier = notifier or default_notifier()
        self.stock_ledger = stock_ledger or SqlStockLedger()
        self.dispatch = dispatch or _notification_pool.submit
        self.clock = clock
        self.max_retries = settings.ORDER_CONFLICT_RETRIES if max_retries is None else max_retries
        self.block_empty_plan = settings.BLOCK_EMPTY_ACTIVITY_PLAN if block_empty_plan is None else block_empty_plan
        horizon = settings.SCHEDULE_HORIZON_DAYS if schedule_horizon_days is None else schedule_horizon_days
        self.state_machine = OrderStateMachine(self.directory, clock=clock, schedule_horizon_days=horizon or None)

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _load(self, db: Session, order_ref: str, lock: bool = True) -> models.ServiceOrder:
        query = db.query(models.ServiceOrder).filter(
            or_(models.ServiceOrder.id == order_ref, models.ServiceOrder.code == order_ref)
        )
        if lock:
            query = query.with_for_update()
        order = query.first()
        if not order:
            raise NotFoundError("Ordem de servico nao encontrada", {"order_id": order_ref})
        return order

    def _execute(self, action: str, work: Callable[[Session], tuple]) -> OrderSnapshot:
        attempts = max(1, self.max_retries + 1)
        for attempt in range(1, attempts + 1):
            db = self.session_factory()
            try:
                order, event_type, payload = work(db)
                db.flush()
                snapshot = build_snapshot(order)
                db.commit()
            except (StaleDataError, ConflictError) as exc:
                db.rollback()
                logger.warning("conflict on %s attempt=%s/%s: %s", action, attempt, attempts, exc)
                if attempt == attempts:
                    if isinstance(exc, ConflictError):
                        raise
                    raise ConflictError(
                        "Ordem alterada por outra operacao, tente novamente",
                        {"action": action},
                    ) from exc
                continue
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
            self.dispatch(partial(self._notify, snapshot, event_type, payload))
            return snapshot
        raise ConflictError("Ordem alterada por outra operacao, tente novamente", {"action": action})

    def _notify(self, snapshot: OrderSnapshot, event_type: str, payload: dict) -> None:
        body = {"code": snapshot.code, "state": snapshot.state.value, **payload}
        try:
            self.notifier.notify(snapshot.id, event_type, body)
        except Exception:
            logger.exception("notification failed order_id=%s event=%s", snapshot.id, event_type)

    def _consume_parts(self, db: Session, parts_used) -> None:
        for part in parts_used:
            self.stock_ledger.reserve_or_consume(db, part.component_id, part.qty)

    def _transition(self, order_ref: str, target: OrderState, request: TransitionRequest, after=None):
        def work(db: Session):
            order = self._load(db, order_ref)
            previous = OrderState(order.state)
            self.state_machine.transition(db, order, target, request)
            if after:
                after(db, order)
            payload = {"previous_state": previous.value, "actor_id": request.actor_id}
            return order, f"ORDER_{target.value}", payload

        return self._execute(target.value.lower(), work)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def create_order(self, command: CreateOrderCommand, actor_id: Optional[str]) -> OrderSnapshot:
        def work(db: Session):
            self.directory.get_client(db, command.client_id)
            ids = list(command.asset_ids)
            if not ids:
                raise ValidationError("Informe ao menos um equipamento")
            duplicated = sorted({asset_id for asset_id in ids if ids.count(asset_id) > 1})
            if duplicated:
                raise ValidationError("Equipamento repetido na requisicao", {"asset_ids": duplicated})
            assets = [self.directory.get_asset(db, asset_id) for asset_id in ids]
            asset_type = plan.ensure_homogeneous(assets)

            if command.activities:
                resolved = plan.manual_plan(db, _manual_activities(command.activities), asset_type)
            else:
                resolved = plan.resolve_plan(db, self.catalog, command.service_type, [a.asset_type for a in assets])
                if resolved.is_empty and self.block_empty_plan:
                    raise ValidationError(
                        "Nenhuma atividade de catalogo para o servico e tipo de equipamento",
                        {"service_type": command.service_type, "asset_type": asset_type},
                    )

            now = self.clock()
            order = models.ServiceOrder(
                id=str(uuid.uuid4()),
                code=sequence.next_code(db, DocumentType.SERVICE_ORDER, now),
                state=OrderState.DRAFT,
                priority=command.priority,
                service_type=command.service_type,
                asset_type=asset_type,
                description=command.description,
                client_id=command.client_id,
                asset_id=assets[0].id,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            db.add(order)
            audit.append(db, order.id, None, OrderState.DRAFT, actor_id, note="Ordem criada", at=now)
            if len(assets) > 1:
                asset_ledger.attach_assets(db, order, assets, actor_id, labels=command.asset_labels, at=now)
            if resolved.origin == PlanOrigin.MANUAL:
                plan.store_plan(db, order, resolved)
            logger.info(
                "order created code=%s assets=%s plan=%s actor=%s",
                order.code,
                len(assets),
                resolved.origin.value,
                actor_id,
            )
            return order, "ORDER_CREATED", {"actor_id": actor_id}

        return self._execute("create_order", work)

    def schedule(self, order_id: str, command: ScheduleCommand, actor_id: Optional[str]) -> OrderSnapshot:
        def materialize_plan(db: Session, order: models.ServiceOrder):
            if order.activities:
                return
            resolved = plan.resolve_plan(db, self.catalog, order.service_type, [order.asset_type])
            plan.store_plan(db, order, resolved)

        request = TransitionRequest(actor_id=actor_id, note=command.note, scheduled_at=command.scheduled_at)
        return self._transition(order_id, OrderState.SCHEDULED, request, after=materialize_plan)

    def assign_technician(
        self, order_id: str, command: AssignTechnicianCommand, actor_id: Optional[str]
    ) -> OrderSnapshot:
        request = TransitionRequest(actor_id=actor_id, note=command.note, technician_id=command.technician_id)
        return self._transition(order_id, OrderState.ASSIGNED, request)

    def start(self, order_id: str, command: StartCommand, actor_id: Optional[str]) -> OrderSnapshot:
        request = TransitionRequest(actor_id=actor_id, note=command.note, technician_id=command.technician_id)
        return self._transition(order_id, OrderState.IN_PROGRESS, request)

    def report_parts_shortage(
        self, order_id: str, command: PartsShortageCommand, actor_id: Optional[str]
    ) -> OrderSnapshot:
        request = TransitionRequest(actor_id=actor_id, note=command.note, parts_shortage=command.parts_shortage)
        return self._transition(
            order_id,
            OrderState.AWAITING_PARTS,
            request,
            after=lambda db, order: self._consume_parts(db, command.parts_used),
        )

    def resume(self, order_id: str, command: ResumeCommand, actor_id: Optional[str]) -> OrderSnapshot:
        request = TransitionRequest(actor_id=actor_id, note=command.note, parts_available=command.parts_available)
        return self._transition(order_id, OrderState.IN_PROGRESS, request)

    def finish(self, order_id: str, command: FinishCommand, actor_id: Optional[str]) -> OrderSnapshot:
        request = TransitionRequest(actor_id=actor_id, note=command.note)
        return self._transition(
            order_id,
            OrderState.EXECUTED,
            request,
            after=lambda db, order: self._consume_parts(db, command.parts_used),
        )

    def approve(self, order_id: str, command: ApproveCommand, actor_id: Optional[str]) -> OrderSnapshot:
        request = TransitionRequest(
            actor_id=actor_id,
            note=command.note,
            approver_id=command.approver_id or actor_id,
        )
        return self._transition(order_id, OrderState.APPROVED, request)

    def cancel(self, order_id: str, command: CancelCommand, actor_id: Optional[str]) -> OrderSnapshot:
        request = TransitionRequest(
            actor_id=actor_id,
            note=command.note or command.reason,
            reason=command.reason,
        )
        return self._transition(order_id, OrderState.CANCELLED, request)

    # ------------------------------------------------------------------
    # assets and activity plan
    # ------------------------------------------------------------------

    def attach_assets(self, order_id: str, command: AttachAssetsCommand, actor_id: Optional[str]) -> OrderSnapshot:
        def work(db: Session):
            order = self._load(db, order_id)
            assets = [self.directory.get_asset(db, asset_id) for asset_id in command.asset_ids]
            now = self.clock()
            created = asset_ledger.attach_assets(db, order, assets, actor_id, labels=command.labels, at=now)
            order.updated_at = now
            payload = {"actor_id": actor_id, "asset_ids": [row.asset_id for row in created]}
            return order, "ASSETS_ATTACHED", payload

        return self._execute("attach_assets", work)

    def advance_asset(
        self, order_id: str, asset_id: str, command: AdvanceAssetCommand, actor_id: Optional[str]
    ) -> OrderSnapshot:
        def work(db: Session):
            order = self._load(db, order_id)
            now = self.clock()
            row = asset_ledger.advance_asset(db, order, asset_id, command.state, actor_id, at=now)
            order.updated_at = now
            payload = {"actor_id": actor_id, "asset_id": asset_id, "asset_state": row.state.value}
            return order, "ASSET_ADVANCED", payload

        return self._execute("advance_asset", work)

    def mark_activity_executed(self, order_id: str, item_id: str, actor_id: Optional[str]) -> OrderSnapshot:
        def work(db: Session):
            order = self._load(db, order_id)
            now = self.clock()
            plan.mark_executed(order, item_id, actor_id, at=now)
            order.updated_at = now
            return order, "ACTIVITY_EXECUTED", {"actor_id": actor_id, "item_id": item_id}

        return self._execute("mark_activity_executed", work)

    def replace_plan(self, order_id: str, command: ReplacePlanCommand, actor_id: Optional[str]) -> OrderSnapshot:
        def work(db: Session):
            order = self._load(db, order_id)
            resolved = plan.manual_plan(db, _manual_activities(command.activities), order.asset_type)
            items = plan.replace_plan(db, order, resolved, admin_override=command.admin_override)
            now = self.clock()
            order.updated_at = now
            note = f"Plano de atividades substituido ({len(items)} atividades)"
            if command.admin_override:
                note += " com override administrativo"
            state = OrderState(order.state)
            audit.append(db, order.id, state, state, actor_id, note=note, event=HistoryEvent.ACTIVITY_PLAN, at=now)
            return order, "PLAN_REPLACED", {"actor_id": actor_id, "admin_override": command.admin_override}

        return self._execute("replace_plan", work)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> OrderSnapshot:
        db = self.session_factory()
        try:
            return build_snapshot(self._load(db, order_id, lock=False))
        finally:
            db.close()

    def get_history(self, order_id: str) -> list[HistoryEntryResponse]:
        db = self.session_factory()
        try:
            order = self._load(db, order_id, lock=False)
            return [HistoryEntryResponse.model_validate(entry) for entry in audit.history(db, order.id)]
        finally:
            db.close()
