from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from landed.api.routes_config import router as config_router
from landed.api.routes_maintenance import router as maintenance_router
from landed.api.routes_payments import router as payments_router
from landed.api.routes_quotes import router as quotes_router
from landed.api.routes_refunds import router as refunds_router
from landed.core.config import get_settings
from landed.core.errors import (
    AmountOutOfRange,
    ConfigurationMissing,
    InvalidInput,
    InvalidTransition,
    LandedError,
    NotFound,
    RefundExceedsApproved,
)
from landed.core.logging import configure_logging
from landed.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


def status_for(exc: LandedError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (InvalidTransition, RefundExceedsApproved)):
        return 409
    if isinstance(exc, AmountOutOfRange):
        return 422
    if isinstance(exc, ConfigurationMissing):
        return 503
    return 400


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("landed cost service ready: env=%s", settings.env)


@app.exception_handler(LandedError)
async def landed_error_handler(_: Request, exc: LandedError):
    status_code = status_for(exc)
    if status_code == 503:
        logger.error("configuration missing: %s context=%s", exc.message, exc.detail)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        }
        for error in exc.errors()
    ]
    field = None
    if errors:
        field = ".".join(part for part in errors[0]["loc"] if part not in ("body", "query", "path")) or None
    invalid = InvalidInput("invalid request", field=field, detail={"errors": errors})
    return await landed_error_handler(request, invalid)


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(quotes_router)
app.include_router(payments_router)
app.include_router(refunds_router)
app.include_router(config_router)
app.include_router(maintenance_router)
