from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db import models
from app.db.init_db import seed_initial_data
from app.orders.collaborators import Notifier
from app.orders.service import ServiceOrderOrchestrator

NOW = datetime(2026, 3, 10, 9, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []

    def notify(self, order_id, event_type, payload):
        if self.fail:
            raise RuntimeError("canal de notificacao indisponivel")
        self.events.append((order_id, event_type, payload))


def run_inline(task):
    task()


@pytest.fixture()
def db_session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    models.Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = SessionLocal()
    yield db
    db.close()
    engine.dispose()


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{(tmp_path / 'osflow-test.db').as_posix()}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    models.Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def load_demo(db) -> SimpleNamespace:
    """Seed the demo catalog and return the ids the tests refer to."""
    seed_initial_data(db)
    assets = {row.tag: row.id for row in db.query(models.Asset).all()}
    technicians = {row.name.split()[0].lower(): row.id for row in db.query(models.Technician).all()}
    components = {row.sku: row.id for row in db.query(models.Component).all()}
    activities = {row.code: row.id for row in db.query(models.CatalogActivity).all()}
    return SimpleNamespace(
        client_id=db.query(models.Client).first().id,
        assets=assets,
        technicians=technicians,
        components=components,
        activities=activities,
    )


@pytest.fixture()
def demo(session_factory):
    db = session_factory()
    try:
        ids = load_demo(db)
    finally:
        db.close()
    return ids


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def orchestrator(session_factory, notifier):
    return ServiceOrderOrchestrator(
        session_factory,
        notifier=notifier,
        clock=lambda: NOW,
        max_retries=2,
        schedule_horizon_days=90,
        block_empty_plan=False,
        dispatch=run_inline,
    )
