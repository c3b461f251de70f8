import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from expense_scan.api.queue import router as queue_router
from expense_scan.api.receipts import router as receipts_router
from expense_scan.core.db import init_db
from expense_scan.services.errors import (
    ExpenseScanError,
    NotFoundError,
    PermanentServiceError,
    PersistenceError,
    TransientServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="Expense Scan", lifespan=lifespan)

app.include_router(receipts_router)
app.include_router(queue_router)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(ExpenseScanError)
async def domain_error_handler(request: Request, exc: ExpenseScanError):
    if isinstance(exc, ValidationError):
        return _error(400, str(exc))
    if isinstance(exc, NotFoundError):
        return _error(404, str(exc))
    if isinstance(exc, (TransientServiceError, PermanentServiceError)):
        return _error(502, str(exc))
    if isinstance(exc, PersistenceError):
        logger.error("persistence failure path=%s: %s", request.url.path, exc)
        return _error(500, str(exc))
    logger.error("unhandled domain error path=%s: %s", request.url.path, exc)
    return _error(500, str(exc))


@app.get("/health")
def health():
    return {"status": "ok"}
