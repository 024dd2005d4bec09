from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from edictflow.core.errors import AlreadyTerminal, EdictflowError

logger = structlog.get_logger()


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(EdictflowError)
    async def edictflow_error_handler(request: Request, exc: EdictflowError) -> JSONResponse:
        if isinstance(exc, AlreadyTerminal):
            logger.info(
                "transition_race_lost", path=request.url.path, message=exc.message, **exc.details
            )
        elif exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, message=exc.message, **exc.details)
        content = {"detail": exc.message, "error": type(exc).__name__, **exc.details}
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))
