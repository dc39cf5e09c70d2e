from __future__ import annotations

import os
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

if __name__ == "__main__" and __package__ is None:
    sys.path.append(str(Path(__file__).resolve().parents[1]))

from stock_ledger.db import Base, engine, make_session_factory
from stock_ledger.exceptions import StockLedgerError
from stock_ledger.ledger_config import load_ledger_config
from stock_ledger.logging_config import LogContext, configure_logging, get_logger
from stock_ledger.routers.adjustments import router as adjustments_router
from stock_ledger.routers.counts import router as counts_router
from stock_ledger.routers.health import router as health_router
from stock_ledger.routers.locations import router as locations_router
from stock_ledger.routers.movements import router as movements_router
from stock_ledger.routers.products import router as products_router
from stock_ledger.routers.reports import router as reports_router
from stock_ledger.routers.stock import router as stock_router
from stock_ledger.routers.transfers import router as transfers_router
from stock_ledger.services.location_service import LocationService

logger = get_logger(__name__)


def run_startup_tasks(bind: Optional[Engine] = None) -> None:
    """Create tables and seed the configured locations."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)

    db = make_session_factory(bind)()
    try:
        LocationService(db).seed(load_ledger_config())
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO").upper())
    run_startup_tasks()
    logger.info("startup_complete")
    yield


app = FastAPI(title="Stock Ledger", lifespan=lifespan)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    with LogContext.bind(request_id=request_id, actor_id=request.headers.get("X-Actor-Id")):
        response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(StockLedgerError)
async def stock_ledger_error_handler(request: Request, exc: StockLedgerError) -> JSONResponse:
    level = "warning" if exc.status_code < 500 else "error"
    getattr(logger, level)("request_failed", extra={"path": request.url.path, "error_code": exc.code})
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


app.include_router(health_router)
app.include_router(products_router)
app.include_router(locations_router)
app.include_router(movements_router)
app.include_router(adjustments_router)
app.include_router(transfers_router)
app.include_router(counts_router)
app.include_router(stock_router)
app.include_router(reports_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stock_ledger.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "1") == "1",
    )
