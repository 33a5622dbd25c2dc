import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db import models
from app.db.init_db import ensure_missing_columns, seed_initial_data
from app.db.session import engine
from app.orders.router import router as service_orders_router

if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO)

logger = logging.getLogger("osflow")

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="OSFlow - Ciclo de vida de ordens de servico multi-equipamento",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    models.Base.metadata.create_all(bind=engine)
    ensure_missing_columns(engine)
    if settings.SEED_DEMO_DATA:
        seed_initial_data()
    if settings.ENV.lower() == "production" and settings.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        logger.warning("SQLALCHEMY_DATABASE_URI aponta para SQLite em producao.")


app.include_router(service_orders_router, prefix="/api")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.get("/api/health")
def health():
    return {"status": "ok"}
