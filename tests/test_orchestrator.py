import threading
import time
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.db import models
from app.orders.enums import AssetState, HistoryEvent, OrderState, PlanOrigin
from app.orders.errors import (
    ConflictError,
    DependencyError,
    InvalidTransition,
    NotFoundError,
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
    ManualActivityPayload,
    PartsShortageCommand,
    PartUsage,
    ReplacePlanCommand,
    ResumeCommand,
    ScheduleCommand,
    StartCommand,
)
from app.orders.service import ServiceOrderOrchestrator
from conftest import NOW, RecordingNotifier, run_inline

DISPATCHER = "despachante"


def _create(orchestrator, demo, tags=("AC-001",), **kwargs):
    command = CreateOrderCommand(
        client_id=demo.client_id,
        service_type=kwargs.pop("service_type", "PREVENTIVA"),
        asset_ids=[demo.assets[tag] for tag in tags],
        **kwargs,
    )
    return orchestrator.create_order(command, DISPATCHER)


def _until_in_progress(orchestrator, demo, tags=("AC-001",)):
    order = _create(orchestrator, demo, tags)
    orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)
    technician = demo.technicians["carlos"]
    orchestrator.assign_technician(order.id, AssignTechnicianCommand(technician_id=technician), DISPATCHER)
    return orchestrator.start(order.id, StartCommand(), technician)


def _stock(session_factory, component_id):
    db = session_factory()
    try:
        return db.get(models.Component, component_id).stock_quantity
    finally:
        db.close()


def test_create_single_asset_order(orchestrator, demo, notifier):
    order = _create(orchestrator, demo, description="Preventiva mensal")

    assert order.code == "ORD-202603-0001"
    assert order.state == OrderState.DRAFT
    assert order.asset_id == demo.assets["AC-001"]
    assert order.asset_type == "SPLIT"
    assert order.is_multi_asset is False
    assert order.assets == []
    assert order.activities == []
    assert order.version == 1
    assert order.allowed_transitions == [OrderState.SCHEDULED, OrderState.CANCELLED]

    history = orchestrator.get_history(order.id)
    assert [(h.previous_state, h.new_state) for h in history] == [(None, OrderState.DRAFT)]
    assert history[0].actor_id == DISPATCHER
    assert notifier.events[0][1] == "ORDER_CREATED"
    assert notifier.events[0][2]["code"] == "ORD-202603-0001"


def test_create_multi_asset_order(orchestrator, demo):
    order = _create(orchestrator, demo, tags=("AC-001", "AC-002", "AC-003"))

    assert order.is_multi_asset
    assert [(a.position, a.state) for a in order.assets] == [
        (1, AssetState.PENDING),
        (2, AssetState.PENDING),
        (3, AssetState.PENDING),
    ]
    assert order.asset_id == demo.assets["AC-001"]
    assert order.asset_progress == {"total": 3, "completed": 0}

    history = orchestrator.get_history(order.code)
    assert [h.event for h in history] == [HistoryEvent.ORDER_STATE, HistoryEvent.ASSET_STATE]
    assert history[-1].new_state == OrderState.DRAFT


def test_create_rejections_do_not_consume_codes(orchestrator, demo, notifier):
    with pytest.raises(ValidationError) as exc:
        _create(orchestrator, demo, tags=("AC-001", "CH-001"))
    assert exc.value.details["asset_id"] == demo.assets["CH-001"]

    with pytest.raises(ValidationError):
        _create(orchestrator, demo, tags=("AC-001", "AC-001"))
    with pytest.raises(ValidationError):
        _create(orchestrator, demo, tags=())

    with pytest.raises(NotFoundError):
        orchestrator.create_order(
            CreateOrderCommand(client_id="cliente-x", service_type="PREVENTIVA", asset_ids=[demo.assets["AC-001"]]),
            DISPATCHER,
        )
    with pytest.raises(NotFoundError):
        orchestrator.create_order(
            CreateOrderCommand(client_id=demo.client_id, service_type="PREVENTIVA", asset_ids=["equip-x"]),
            DISPATCHER,
        )

    assert notifier.events == []
    assert _create(orchestrator, demo).code == "ORD-202603-0001"


def test_manual_plan_at_creation(orchestrator, demo):
    order = _create(
        orchestrator,
        demo,
        activities=[
            ManualActivityPayload(activity_id=demo.activities["COR-SPL-02"], sequence=9, mandatory=False),
            ManualActivityPayload(activity_id=demo.activities["COR-SPL-01"], sequence=3),
        ],
    )
    assert [(a.sequence, a.activity_id, a.origin) for a in order.activities] == [
        (1, demo.activities["COR-SPL-01"], PlanOrigin.MANUAL),
        (2, demo.activities["COR-SPL-02"], PlanOrigin.MANUAL),
    ]

    scheduled = orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=3)), DISPATCHER)
    assert [a.activity_id for a in scheduled.activities] == [
        demo.activities["COR-SPL-01"],
        demo.activities["COR-SPL-02"],
    ]


def test_empty_catalog_plan_can_be_blocked(session_factory, demo, notifier):
    lenient = ServiceOrderOrchestrator(session_factory, notifier=notifier, clock=lambda: NOW, block_empty_plan=False)
    order = _create(lenient, demo, service_type="INSTALACAO")
    assert order.state == OrderState.DRAFT

    strict = ServiceOrderOrchestrator(session_factory, notifier=notifier, clock=lambda: NOW, block_empty_plan=True)
    with pytest.raises(ValidationError):
        _create(strict, demo, service_type="INSTALACAO")


def test_full_multi_asset_lifecycle(orchestrator, demo, notifier, session_factory):
    tags = ("AC-001", "AC-002", "AC-003")
    carlos = demo.technicians["carlos"]
    filter_id = demo.components["FLT-G4"]

    order = _create(orchestrator, demo, tags=tags, priority="HIGH")
    order = orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=2)), DISPATCHER)
    assert order.sla_due_at == NOW + timedelta(days=7)
    assert [a.sequence for a in order.activities] == [1, 2, 3, 4]
    assert all(a.origin == PlanOrigin.CATALOG for a in order.activities)

    orchestrator.assign_technician(order.id, AssignTechnicianCommand(technician_id=carlos), DISPATCHER)
    order = orchestrator.start(order.id, StartCommand(), carlos)
    assert order.start_time == NOW

    with pytest.raises(InvalidTransition):
        orchestrator.finish(order.id, FinishCommand(), carlos)

    for tag in tags:
        orchestrator.advance_asset(order.id, demo.assets[tag], AdvanceAssetCommand(state="IN_PROGRESS"), carlos)
        order = orchestrator.advance_asset(order.id, demo.assets[tag], AdvanceAssetCommand(state="COMPLETED"), carlos)
    assert order.asset_progress == {"total": 3, "completed": 3}

    with pytest.raises(InvalidTransition):
        orchestrator.finish(order.id, FinishCommand(), carlos)

    for item in order.activities:
        if item.mandatory:
            order = orchestrator.mark_activity_executed(order.id, item.id, carlos)

    order = orchestrator.finish(
        order.id,
        FinishCommand(note="Filtros trocados", parts_used=[PartUsage(component_id=filter_id, qty=3)]),
        carlos,
    )
    assert order.state == OrderState.EXECUTED
    assert order.finish_time == NOW
    assert _stock(session_factory, filter_id) == 37

    with pytest.raises(InvalidTransition):
        orchestrator.approve(order.id, ApproveCommand(), carlos)
    order = orchestrator.approve(order.id, ApproveCommand(), "supervisor")
    assert order.state == OrderState.APPROVED
    assert order.approved_by == "supervisor"
    assert order.allowed_transitions == []

    history = orchestrator.get_history(order.id)
    assert history[-1].new_state == OrderState.APPROVED
    assert [h.new_state for h in history if h.event == HistoryEvent.ORDER_STATE] == [
        OrderState.DRAFT,
        OrderState.SCHEDULED,
        OrderState.ASSIGNED,
        OrderState.IN_PROGRESS,
        OrderState.EXECUTED,
        OrderState.APPROVED,
    ]
    assert len([h for h in history if h.event == HistoryEvent.ASSET_STATE]) == 7
    assert [event for _, event, _ in notifier.events if event.startswith("ORDER_")][-2:] == [
        "ORDER_EXECUTED",
        "ORDER_APPROVED",
    ]


def test_parts_shortage_round_trip(orchestrator, demo, session_factory):
    carlos = demo.technicians["carlos"]
    gas_id = demo.components["GAS-R410A"]
    order = _until_in_progress(orchestrator, demo)

    order = orchestrator.report_parts_shortage(
        order.id,
        PartsShortageCommand(note="Sem gas", parts_used=[PartUsage(component_id=gas_id, qty=2)]),
        carlos,
    )
    assert order.state == OrderState.AWAITING_PARTS
    assert _stock(session_factory, gas_id) == 23

    with pytest.raises(InvalidTransition):
        orchestrator.resume(order.id, ResumeCommand(parts_available=False), carlos)
    order = orchestrator.resume(order.id, ResumeCommand(), carlos)
    assert order.state == OrderState.IN_PROGRESS


def test_stock_refusal_rolls_back_finish(orchestrator, demo, session_factory):
    carlos = demo.technicians["carlos"]
    capacitor_id = demo.components["CAP-35UF"]
    order = _until_in_progress(orchestrator, demo)
    for item in order.activities:
        orchestrator.mark_activity_executed(order.id, item.id, carlos)
    before = len(orchestrator.get_history(order.id))

    with pytest.raises(DependencyError):
        orchestrator.finish(
            order.id,
            FinishCommand(parts_used=[PartUsage(component_id=capacitor_id, qty=10)]),
            carlos,
        )
    with pytest.raises(DependencyError):
        orchestrator.finish(
            order.id,
            FinishCommand(parts_used=[PartUsage(component_id="peca-sem-estoque", qty=1)]),
            carlos,
        )

    assert orchestrator.get_order(order.id).state == OrderState.IN_PROGRESS
    assert len(orchestrator.get_history(order.id)) == before
    assert _stock(session_factory, capacitor_id) == 6


def test_inactive_technician_is_refused(orchestrator, demo):
    order = _create(orchestrator, demo)
    orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)

    with pytest.raises(DependencyError):
        orchestrator.assign_technician(
            order.id, AssignTechnicianCommand(technician_id=demo.technicians["joao"]), DISPATCHER
        )
    current = orchestrator.get_order(order.id)
    assert current.state == OrderState.SCHEDULED
    assert current.technician_id is None


def test_schedule_in_the_past_is_rejected(orchestrator, demo, notifier):
    order = _create(orchestrator, demo)
    with pytest.raises(InvalidTransition):
        orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW - timedelta(days=3)), DISPATCHER)
    with pytest.raises(ValidationError):
        orchestrator.schedule(order.id, ScheduleCommand(), DISPATCHER)
    assert orchestrator.get_order(order.id).state == OrderState.DRAFT
    assert [event for _, event, _ in notifier.events] == ["ORDER_CREATED"]


def test_cancel_is_terminal(orchestrator, demo):
    order = _create(orchestrator, demo)
    with pytest.raises(ValidationError):
        orchestrator.cancel(order.id, CancelCommand(reason=""), DISPATCHER)

    order = orchestrator.cancel(order.id, CancelCommand(reason="Cliente desistiu"), DISPATCHER)
    assert order.state == OrderState.CANCELLED
    assert order.cancellation_reason == "Cliente desistiu"

    with pytest.raises(InvalidTransition):
        orchestrator.cancel(order.id, CancelCommand(reason="De novo"), DISPATCHER)
    with pytest.raises(InvalidTransition):
        orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)

    cancelled = [h for h in orchestrator.get_history(order.id) if h.new_state == OrderState.CANCELLED]
    assert len(cancelled) == 1
    assert cancelled[0].note == "Cliente desistiu"


def test_attach_assets_only_while_draft(orchestrator, demo):
    order = _create(orchestrator, demo)
    order = orchestrator.attach_assets(
        order.id, AttachAssetsCommand(asset_ids=[demo.assets["AC-002"]]), DISPATCHER
    )
    assert [a.asset_id for a in order.assets] == [demo.assets["AC-001"], demo.assets["AC-002"]]

    with pytest.raises(ValidationError):
        orchestrator.attach_assets(order.id, AttachAssetsCommand(asset_ids=[demo.assets["CH-001"]]), DISPATCHER)

    orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)
    with pytest.raises(ValidationError):
        orchestrator.attach_assets(order.id, AttachAssetsCommand(asset_ids=[demo.assets["AC-003"]]), DISPATCHER)


def test_replace_plan_needs_override_after_start(orchestrator, demo):
    carlos = demo.technicians["carlos"]
    order = _until_in_progress(orchestrator, demo)
    command = ReplacePlanCommand(activities=[ManualActivityPayload(activity_id=demo.activities["COR-SPL-01"])])

    with pytest.raises(ValidationError):
        orchestrator.replace_plan(order.id, command, carlos)

    command.admin_override = True
    order = orchestrator.replace_plan(order.id, command, "admin")
    assert [(a.sequence, a.origin) for a in order.activities] == [(1, PlanOrigin.MANUAL)]
    assert orchestrator.get_history(order.id)[-1].event == HistoryEvent.ACTIVITY_PLAN


def test_notifier_failure_does_not_fail_operation(session_factory, demo):
    orchestrator = ServiceOrderOrchestrator(
        session_factory, notifier=RecordingNotifier(fail=True), clock=lambda: NOW
    )
    order = _create(orchestrator, demo)
    order = orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)
    assert orchestrator.get_order(order.id).state == OrderState.SCHEDULED


def test_unknown_order(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.get_order("nao-existe")
    with pytest.raises(NotFoundError):
        orchestrator.cancel("nao-existe", CancelCommand(reason="x"), DISPATCHER)


def test_conflict_is_retried(orchestrator, demo):
    order = _create(orchestrator, demo)
    real_transition = orchestrator.state_machine.transition
    calls = []

    def flaky(db, current, target, request):
        calls.append(target)
        if len(calls) == 1:
            raise StaleDataError("versao desatualizada")
        return real_transition(db, current, target, request)

    with patch.object(orchestrator.state_machine, "transition", side_effect=flaky):
        order = orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)

    assert len(calls) == 2
    assert order.state == OrderState.SCHEDULED
    assert order.version == 2


def test_conflict_surfaces_after_retries(orchestrator, demo, notifier):
    order = _create(orchestrator, demo)

    with patch.object(orchestrator.state_machine, "transition", side_effect=StaleDataError("versao")) as mocked:
        with pytest.raises(ConflictError):
            orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)

    assert mocked.call_count == 3
    assert orchestrator.get_order(order.id).state == OrderState.DRAFT
    assert len(orchestrator.get_history(order.id)) == 1
    assert [event for _, event, _ in notifier.events] == ["ORDER_CREATED"]


def test_stale_version_is_detected(orchestrator, demo, session_factory):
    order = _create(orchestrator, demo)
    db = session_factory()
    try:
        stale = db.get(models.ServiceOrder, order.id)
        orchestrator.cancel(order.id, CancelCommand(reason="Cliente desistiu"), DISPATCHER)
        stale.description = "edicao concorrente"
        with pytest.raises(StaleDataError):
            db.commit()
        db.rollback()
    finally:
        db.close()

    current = orchestrator.get_order(order.id)
    assert current.state == OrderState.CANCELLED
    assert current.version == 2


class BlockingNotifier(RecordingNotifier):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.delivered = threading.Event()

    def notify(self, order_id, event_type, payload):
        self.release.wait(5)
        super().notify(order_id, event_type, payload)
        self.delivered.set()


def test_slow_notifier_does_not_delay_command(session_factory, demo):
    notifier = BlockingNotifier()
    orchestrator = ServiceOrderOrchestrator(session_factory, notifier=notifier, clock=lambda: NOW)

    started = time.monotonic()
    order = _create(orchestrator, demo)
    elapsed = time.monotonic() - started

    assert elapsed < 2
    assert notifier.events == []
    notifier.release.set()
    assert notifier.delivered.wait(5)
    assert notifier.events[0][:2] == (order.id, "ORDER_CREATED")


def test_cancel_races_with_start(orchestrator, demo):
    carlos = demo.technicians["carlos"]
    for _ in range(4):
        order = _create(orchestrator, demo)
        orchestrator.schedule(order.id, ScheduleCommand(scheduled_at=NOW + timedelta(days=1)), DISPATCHER)
        orchestrator.assign_technician(order.id, AssignTechnicianCommand(technician_id=carlos), DISPATCHER)

        barrier = threading.Barrier(2)
        outcomes = {}

        def run(name, command):
            barrier.wait()
            try:
                command()
                outcomes[name] = "ok"
            except InvalidTransition:
                outcomes[name] = "refused"

        threads = [
            threading.Thread(
                target=run,
                args=("cancel", lambda: orchestrator.cancel(order.id, CancelCommand(reason="Cliente desistiu"), DISPATCHER)),
            ),
            threading.Thread(
                target=run,
                args=("start", lambda: orchestrator.start(order.id, StartCommand(), carlos)),
            ),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert outcomes["cancel"] == "ok"
        assert outcomes["start"] in ("ok", "refused")

        current = orchestrator.get_order(order.id)
        history = orchestrator.get_history(order.id)
        transitions = [entry.new_state for entry in history if entry.event == HistoryEvent.ORDER_STATE]
        assert current.state == OrderState.CANCELLED
        assert history[-1].new_state == current.state
        if outcomes["start"] == "ok":
            assert transitions[-2:] == [OrderState.IN_PROGRESS, OrderState.CANCELLED]
        else:
            assert OrderState.IN_PROGRESS not in transitions
            assert current.start_time is None
