"""
Shared helpers for the local API route modules.

Translates sync layer errors to HTTP errors and mutation results to responses.
"""
import logging

from fastapi import HTTPException
from fastapi.responses import JSONResponse

from crmsync.services.errors import (
    EntityNotFound,
    PayloadInvalid,
    RequestRejected,
    SyncError,
    UndoExpired,
)
from crmsync.services.sync_coordinator import MutationResult

logger = logging.getLogger(__name__)


def _format_validation_errors(errors: list) -> list[str]:
    formatted = []
    for error in errors:
        if isinstance(error, dict):
            loc = ".".join(str(part) for part in error.get("loc", ()))
            formatted.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
        else:
            formatted.append(str(error))
    return formatted


def to_http_error(error: SyncError) -> HTTPException:
    """Map a sync layer error to the HTTPException the route should raise."""
    if isinstance(error, EntityNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, PayloadInvalid):
        return HTTPException(status_code=422, detail=_format_validation_errors(error.errors))
    if isinstance(error, UndoExpired):
        return HTTPException(status_code=410, detail=str(error))
    if isinstance(error, RequestRejected):
        return HTTPException(
            status_code=502,
            detail={"status_code": error.status_code, "message": error.message},
        )
    logger.error(f"Unhandled sync error: {error}")
    return HTTPException(status_code=500, detail=str(error))


def mutation_response(result: MutationResult, confirmed_status: int = 200) -> JSONResponse:
    """Queued mutations answer 202 Accepted, confirmed ones confirmed_status."""
    status_code = 202 if result.queued else confirmed_status
    return JSONResponse(status_code=status_code, content=result.to_dict())
