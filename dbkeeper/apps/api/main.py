from __future__ import annotations

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from dbkeeper.apps.api.errors import (
    http_exception_handler,
    record_conflict_handler,
    record_exists_handler,
    record_not_found_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from dbkeeper.apps.api.response import get_request_id
from dbkeeper.apps.api.routes.health import router as health_router
from dbkeeper.apps.api.routes.records import router as records_router
from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import RecordAlreadyExistsError, RecordConflictError, RecordNotFoundError
from dbkeeper.core.logging import configure_logging
from dbkeeper.persistence.store import RecordStore, SqlRecordStore


def create_app(store: RecordStore | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="dbkeeper API")
    app.state.store = store if store is not None else SqlRecordStore()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RecordNotFoundError, record_not_found_handler)
    app.add_exception_handler(RecordAlreadyExistsError, record_exists_handler)
    app.add_exception_handler(RecordConflictError, record_conflict_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(records_router)
    return app


def main() -> None:
    settings = get_settings()
    uvicorn.run("dbkeeper.apps.api.main:create_app", factory=True, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
