from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from beacon.observability import configure_logging

from .config import Settings, load_settings
from .routes.location import router as location_router
from .store import LocationHistory

logger = logging.getLogger("geobeacon.collector")

REQUIRED_FIELDS = ("entityId", "lat", "lon")


def create_app(_settings: Settings | None = None) -> FastAPI:
    # Tests inject a Settings object instead of mutating the environment.
    settings = _settings or load_settings()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        configure_logging(level=settings.log_level, log_format=settings.log_format, service_name="geobeacon-collector")
        logger.info("collector started (history_limit=%s)", settings.history_limit)
        yield

    app = FastAPI(title="geobeacon mock collector", lifespan=lifespan)
    app.state.history = LocationHistory(limit=settings.history_limit)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        missing = sorted(
            {
                str(err["loc"][-1])
                for err in exc.errors()
                if err.get("type") == "missing" and err.get("loc") and str(err["loc"][-1]) in REQUIRED_FIELDS
            }
        )
        if missing:
            message = "Missing required fields: " + ", ".join(REQUIRED_FIELDS)
        else:
            message = "Request validation failed"
        logger.warning("rejected update: %s", message, extra={"fields": {"missing": missing}})
        return JSONResponse(
            status_code=400,
            content={"error": message, "details": jsonable_errors(exc)},
        )

    app.include_router(location_router)
    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    out: list[dict] = []
    for err in exc.errors():
        out.append(
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": str(err.get("msg", "")),
                "type": str(err.get("type", "")),
            }
        )
    return out


# ASGI entrypoint: `uvicorn collector.app.main:app --port 3000`
app = create_app()
