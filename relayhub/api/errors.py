"""Exception handlers shared by the API routers."""

from typing import Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.ledger.errors import LedgerError
from ..core.recovery import ErrorCategory, RecoverableError, UnrecoverableError

KIND_STATUS: Dict[str, int] = {
    "UnauthorizedRelayer": 403,
    "Unauthorized": 403,
    "UnauthorizedGateway": 403,
    "InsufficientCredits": 402,
    "AlreadyApproved": 409,
    "AlreadyExecuted": 409,
    "InvalidNonce": 409,
    "ChainAlreadyRegistered": 409,
    "GatewayPaused": 423,
}


# Relayer-side refusals that are not ledger rejections.
UNRECOVERABLE_STATUS: Dict[ErrorCategory, int] = {
    ErrorCategory.AUTHENTICATION: 403,
    ErrorCategory.FATAL: 503,
}


def ledger_error_status(exc: LedgerError) -> int:
    return KIND_STATUS.get(exc.kind, 400)


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=ledger_error_status(exc), content={"error": exc.to_dict()})


async def recoverable_error_handler(request: Request, exc: RecoverableError) -> JSONResponse:
    status_code = 429 if exc.category == ErrorCategory.RATE_LIMIT else 503
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "kind": exc.category.value,
                "message": exc.message,
                "details": exc.context.details,
            }
        },
        headers=headers,
    )


async def unrecoverable_error_handler(request: Request, exc: UnrecoverableError) -> JSONResponse:
    status_code = UNRECOVERABLE_STATUS.get(exc.category, 400)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "kind": getattr(exc, "kind", exc.category.value),
                "message": exc.message,
                "details": exc.context.details,
            }
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    # Starlette picks the most specific class, so LedgerError wins over its base.
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(UnrecoverableError, unrecoverable_error_handler)
    app.add_exception_handler(RecoverableError, recoverable_error_handler)
