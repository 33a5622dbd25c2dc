"""Lifecycle controller for service orders.

DRAFT -> SCHEDULED -> ASSIGNED -> IN_PROGRESS -> EXECUTED -> APPROVED, with
IN_PROGRESS <-> AWAITING_PARTS and CANCELLED reachable from every
non-terminal state. Each transition evaluates its guard before touching the
order, then applies its side effects and appends one history entry; the
caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.db import models
from app.orders import audit
from app.orders.assets import incomplete_assets
from app.orders.collaborators import Directory
from app.orders.enums import SLA_DAYS, OrderState, Priority, TERMINAL_STATES
from app.orders.errors import DependencyError, InvalidTransition, ValidationError
from app.orders.plan import pending_mandatory

logger = logging.getLogger("osflow.state_machine")


@dataclass
class TransitionRequest:
    actor_id: Optional[str] = None
    note: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    technician_id: Optional[str] = None
    approver_id: Optional[str] = None
    reason: Optional[str] = None
    parts_shortage: bool = False
    parts_available: bool = False


TRANSITIONS: dict[tuple[OrderState, OrderState], str] = {
    (OrderState.DRAFT, OrderState.SCHEDULED): "_schedule",
    (OrderState.SCHEDULED, OrderState.ASSIGNED): "_assign",
    (OrderState.ASSIGNED, OrderState.IN_PROGRESS): "_start",
    (OrderState.IN_PROGRESS, OrderState.AWAITING_PARTS): "_await_parts",
    (OrderState.AWAITING_PARTS, OrderState.IN_PROGRESS): "_resume",
    (OrderState.IN_PROGRESS, OrderState.EXECUTED): "_finish",
    (OrderState.EXECUTED, OrderState.APPROVED): "_approve",
}
for _state in OrderState:
    if _state not in TERMINAL_STATES:
        TRANSITIONS[(_state, OrderState.CANCELLED)] = "_cancel"


def is_terminal(state: OrderState | str) -> bool:
    return OrderState(state) in TERMINAL_STATES


def allowed_targets(state: OrderState | str) -> list[OrderState]:
    current = OrderState(state)
    return [target for (source, target) in TRANSITIONS if source == current]


def typical_flow() -> list[dict]:
    steps = [
        (OrderState.DRAFT, "Ordem criada, aguardando programacao"),
        (OrderState.SCHEDULED, "Data programada, aguardando tecnico"),
        (OrderState.ASSIGNED, "Tecnico atribuido, aguardando inicio em campo"),
        (OrderState.IN_PROGRESS, "Tecnico executando em campo"),
        (OrderState.EXECUTED, "Trabalho finalizado, aguardando aprovacao"),
        (OrderState.APPROVED, "Aprovada pelo supervisor. Estado final."),
    ]
    return [
        {"step": index, "state": state.value, "description": description}
        for index, (state, description) in enumerate(steps, start=1)
    ]


def sla_due_at(priority: Priority | str, scheduled_at: datetime) -> datetime:
    return scheduled_at + timedelta(days=SLA_DAYS[Priority(priority)])


class OrderStateMachine:
    def __init__(
        self,
        directory: Directory,
        clock: Callable[[], datetime] = datetime.utcnow,
        schedule_horizon_days: Optional[int] = None,
    ) -> None:
        self.directory = directory
        self.clock = clock
        self.schedule_horizon_days = schedule_horizon_days

    def transition(
        self,
        db: Session,
        order: models.ServiceOrder,
        target: OrderState | str,
        request: TransitionRequest,
    ) -> models.StateHistoryEntry:
        current = OrderState(order.state)
        try:
            target = OrderState(target)
        except ValueError as exc:
            raise ValidationError("Estado de destino invalido", {"to_state": str(target)}) from exc

        handler_name = TRANSITIONS.get((current, target))
        if handler_name is None:
            raise InvalidTransition(current, target)

        now = self.clock()
        apply_effects = getattr(self, handler_name)(db, order, request, now)
        apply_effects()
        order.state = target
        order.updated_at = now
        entry = audit.append(db, order.id, current, target, request.actor_id, note=request.note, at=now)
        logger.info(
            "order transition order_id=%s code=%s %s -> %s actor=%s",
            order.id,
            order.code,
            current.value,
            target.value,
            request.actor_id,
        )
        return entry

    # Cada guarda valida tudo antes de devolver a funcao que aplica os efeitos.

    def _schedule(self, db, order, request, now):
        if request.scheduled_at is None:
            raise ValidationError("Data programada obrigatoria")
        scheduled_at = request.scheduled_at
        if scheduled_at.date() < now.date():
            raise InvalidTransition(order.state, OrderState.SCHEDULED, "data programada no passado")
        if self.schedule_horizon_days is not None:
            if (scheduled_at.date() - now.date()).days > self.schedule_horizon_days:
                raise InvalidTransition(
                    order.state,
                    OrderState.SCHEDULED,
                    f"data programada alem de {self.schedule_horizon_days} dias",
                )

        def effects():
            order.scheduled_at = scheduled_at
            order.sla_due_at = sla_due_at(order.priority, scheduled_at)

        return effects

    def _assign(self, db, order, request, now):
        technician_id = (request.technician_id or "").strip()
        if not technician_id:
            raise ValidationError("Tecnico obrigatorio")
        if not self.directory.is_active_technician(db, technician_id):
            raise DependencyError("Tecnico inativo", {"technician_id": technician_id})

        def effects():
            order.technician_id = technician_id

        return effects

    def _start(self, db, order, request, now):
        technician_id = request.technician_id or request.actor_id
        if not technician_id:
            raise ValidationError("Tecnico obrigatorio para iniciar a ordem")
        if technician_id != order.technician_id:
            raise InvalidTransition(order.state, OrderState.IN_PROGRESS, "tecnico diferente do atribuido")

        def effects():
            order.start_time = now

        return effects

    def _await_parts(self, db, order, request, now):
        if not request.parts_shortage:
            raise InvalidTransition(order.state, OrderState.AWAITING_PARTS, "falta de pecas nao informada")
        return lambda: None

    def _resume(self, db, order, request, now):
        if not request.parts_available:
            raise InvalidTransition(order.state, OrderState.IN_PROGRESS, "pecas nao confirmadas")
        return lambda: None

    def _finish(self, db, order, request, now):
        pending_assets = incomplete_assets(order)
        if pending_assets:
            raise InvalidTransition(
                order.state,
                OrderState.EXECUTED,
                "equipamentos pendentes: " + ", ".join(row.label or row.asset_id for row in pending_assets),
            )
        pending = pending_mandatory(order)
        if pending:
            raise InvalidTransition(
                order.state,
                OrderState.EXECUTED,
                f"{len(pending)} atividade(s) obrigatoria(s) nao executada(s)",
            )

        def effects():
            order.finish_time = now

        return effects

    def _approve(self, db, order, request, now):
        approver_id = (request.approver_id or "").strip()
        if not approver_id:
            raise ValidationError("Aprovador obrigatorio")
        if approver_id == order.technician_id:
            raise InvalidTransition(order.state, OrderState.APPROVED, "aprovador nao pode ser o tecnico executor")

        def effects():
            order.approved_at = now
            order.approved_by = approver_id

        return effects

    def _cancel(self, db, order, request, now):
        reason = (request.reason or "").strip()
        if not reason:
            raise ValidationError("Motivo do cancelamento obrigatorio")

        def effects():
            order.cancelled_at = now
            order.cancellation_reason = reason

        return effects
