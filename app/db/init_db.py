import logging
from typing import Optional

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from app.db import models
from app.db.session import SessionLocal

logger = logging.getLogger("osflow.seed")

DEMO_CLIENT = {"name": "Hospital Santa Clara", "document": "12.345.678/0001-90"}

DEMO_TECHNICIANS = [
    {"name": "Carlos Almeida", "email": "carlos.almeida@osflow.local", "is_active": True},
    {"name": "Fernanda Rocha", "email": "fernanda.rocha@osflow.local", "is_active": True},
    {"name": "Joao Pereira", "email": "joao.pereira@osflow.local", "is_active": False},
]

DEMO_ASSETS = [
    {"tag": "AC-001", "name": "Split Recepcao", "asset_type": "SPLIT"},
    {"tag": "AC-002", "name": "Split UTI", "asset_type": "SPLIT"},
    {"tag": "AC-003", "name": "Split Centro Cirurgico", "asset_type": "SPLIT"},
    {"tag": "CH-001", "name": "Chiller Central", "asset_type": "CHILLER"},
]

DEMO_COMPONENTS = [
    {"sku": "FLT-G4", "name": "Filtro G4", "stock_quantity": 40},
    {"sku": "GAS-R410A", "name": "Gas refrigerante R410A (kg)", "stock_quantity": 25},
    {"sku": "CAP-35UF", "name": "Capacitor 35uF", "stock_quantity": 6},
]

# (code, name, service_type, asset_type, execution_order, mandatory, component sku)
DEMO_ACTIVITIES = [
    ("PRV-SPL-01", "Limpeza de filtros", "PREVENTIVA", "SPLIT", 1, True, "FLT-G4"),
    ("PRV-SPL-02", "Limpeza da serpentina", "PREVENTIVA", "SPLIT", 2, True, None),
    ("PRV-SPL-03", "Medicao de corrente do compressor", "PREVENTIVA", "SPLIT", 3, True, None),
    ("PRV-SPL-04", "Verificacao de dreno", "PREVENTIVA", "SPLIT", 4, False, None),
    ("COR-SPL-01", "Diagnostico de falha", "CORRETIVA", "SPLIT", 1, True, None),
    ("COR-SPL-02", "Recarga de gas", "CORRETIVA", "SPLIT", 2, False, "GAS-R410A"),
    ("PRV-CHL-01", "Analise de vibracao", "PREVENTIVA", "CHILLER", 1, True, None),
    ("PRV-CHL-02", "Verificacao de pressao do circuito", "PREVENTIVA", "CHILLER", 2, True, None),
]


def ensure_missing_columns(engine) -> None:
    """Add columns created after the first deploy of a local SQLite database."""
    if engine.dialect.name != "sqlite":
        return
    inspector = inspect(engine)
    preparer = engine.dialect.identifier_preparer
    existing_tables = set(inspector.get_table_names())
    for table_name, table in models.Base.metadata.tables.items():
        if table_name not in existing_tables:
            continue
        existing_columns = {col["name"] for col in inspector.get_columns(table_name)}
        for column in table.columns:
            if column.name in existing_columns or not column.nullable:
                continue
            col_type = column.type.compile(dialect=engine.dialect)
            with engine.begin() as connection:
                connection.execute(
                    text(
                        f"ALTER TABLE {preparer.quote(table_name)} "
                        f"ADD COLUMN {preparer.quote(column.name)} {col_type}"
                    )
                )
            logger.info("column added table=%s column=%s", table_name, column.name)


def seed_initial_data(db: Optional[Session] = None) -> None:
    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    try:
        client = db.query(models.Client).filter(models.Client.name == DEMO_CLIENT["name"]).first()
        if not client:
            client = models.Client(**DEMO_CLIENT)
            db.add(client)
            db.flush()

        for data in DEMO_TECHNICIANS:
            technician = db.query(models.Technician).filter(models.Technician.email == data["email"]).first()
            if not technician:
                db.add(models.Technician(**data))

        for data in DEMO_ASSETS:
            asset = db.query(models.Asset).filter(models.Asset.tag == data["tag"]).first()
            if not asset:
                db.add(models.Asset(client_id=client.id, **data))

        for data in DEMO_COMPONENTS:
            component = db.query(models.Component).filter(models.Component.sku == data["sku"]).first()
            if not component:
                db.add(models.Component(**data))
        db.flush()

        _seed_activity_catalog(db)
        db.commit()
        logger.info("demo data ready client=%s", client.name)
    finally:
        if owns_session:
            db.close()


def _seed_activity_catalog(db: Session) -> None:
    components = {row.sku: row.id for row in db.query(models.Component).all()}
    existing = {row.code for row in db.query(models.CatalogActivity.code).all()}
    for code, name, service_type, asset_type, execution_order, mandatory, sku in DEMO_ACTIVITIES:
        if code in existing:
            continue
        db.add(
            models.CatalogActivity(
                code=code,
                name=name,
                service_type=service_type,
                asset_type=asset_type,
                execution_order=execution_order,
                mandatory=mandatory,
                component_id=components.get(sku) if sku else None,
            )
        )
