import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from computegrid.api.schemas import ErrorResponse
from computegrid.core.errors import (
    AdmissionError,
    DuplicateSubmission,
    GridError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

# documented on every route that can fail with a GridError
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Implausible timing, bad signature or wrong task kind"},
    403: {"model": ErrorResponse, "description": "Node may not receive or submit work"},
    404: {"model": ErrorResponse, "description": "Unknown node, task or assignment"},
    409: {"model": ErrorResponse, "description": "Result already submitted"},
    500: {"model": ErrorResponse, "description": "Store failure"},
}


def status_for(exc: GridError) -> int:
    if isinstance(exc, AdmissionError):
        return 403
    if isinstance(exc, DuplicateSubmission):
        return 409
    if isinstance(exc, NotFoundError):
        return 404
    # plausibility, signature and canary type errors
    return 400


def error_body(error: str, code: str, **extra) -> dict:
    return ErrorResponse(error=error, code=code, **extra).model_dump(exclude_none=True)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GridError)
    async def grid_error_handler(request: Request, exc: GridError):
        return JSONResponse(status_code=status_for(exc), content=error_body(**exc.to_dict()))

    @app.exception_handler(ValueError)
    async def malformed_handler(request: Request, exc: ValueError):
        # results that cannot be canonically serialized
        return JSONResponse(status_code=422, content=error_body(str(exc), "malformed_request"))

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Store failure on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content=error_body("Internal store error", "store_error"))
