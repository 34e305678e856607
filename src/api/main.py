import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api import state
from api.routers import analysis, events, imports, ops
from api.workers import start_workers, stop_workers
from smart_schedule.errors import (
    ConflictError,
    ConversionPreconditionError,
    ExternalServiceError,
    NotFoundError,
    ParseError,
    ScheduleError,
    ValidationError,
)
from storage import db
from storage.memory_repository import InMemoryRepository
from storage.postgres_repository import PostgresRepository

# Logging configuration
logging.basicConfig(
    level=state.settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Smart Schedule")

app.include_router(ops.router)
app.include_router(imports.router)
app.include_router(analysis.router)
app.include_router(events.router)

ERROR_STATUS = (
    (ValidationError, 422),
    (ParseError, 422),
    (ConversionPreconditionError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExternalServiceError, 502),
)


@app.exception_handler(ScheduleError)
async def schedule_error_handler(request: Request, exc: ScheduleError) -> JSONResponse:
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.on_event("startup")
async def startup() -> None:
    settings = state.settings

    if settings.database_url:
        await db.init_db_pool(settings.database_url)
        await db.init_schema()
        state.repository = PostgresRepository()
        logger.info("Using PostgreSQL repository")
    elif state.repository is None:
        state.repository = InMemoryRepository()
        logger.info("DATABASE_URL not set, using in-memory repository")

    if settings.run_workers:
        start_workers()


@app.on_event("shutdown")
async def shutdown() -> None:
    await stop_workers()
    if state.settings.database_url:
        await db.close_db_pool()
