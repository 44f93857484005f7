from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger_recon.api.router import router as api_router
from ledger_recon.bootstrap import bootstrap
from ledger_recon.core.config import settings
from ledger_recon.core.errors import (
    ConsistencyError,
    LedgerError,
    MatchingAmbiguity,
    ParseError,
    ProviderError,
)
from ledger_recon.core.logging import (
    RequestContextMiddleware,
    configure_logging,
    get_logger,
    log_event,
)
from ledger_recon.core.storage import StorageError

logger = get_logger(__name__)

_ERROR_STATUS: list[tuple[type[LedgerError], int]] = [
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (MatchingAmbiguity, status.HTTP_409_CONFLICT),
    (ParseError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    code = next(
        (c for cls, c in _ERROR_STATUS if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    log_event(
        logger,
        "http.request.domain_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=code,
        error=str(exc),
    )
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, ProviderError):
        body["retryable"] = exc.retryable
    return JSONResponse(status_code=code, content=body)


def create_app() -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        yield

    app = FastAPI(title="Ledger Recon", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.include_router(api_router)
    return app


app = create_app()
