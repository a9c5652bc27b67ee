from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from carslab_crm.core.exceptions import CrmException
from carslab_crm.core.logging_setup import logger


def error_body(message: str, code: str) -> dict[str, object]:
    return {
        "success": False,
        "message": message,
        "code": code,
        "timestamp": datetime.utcnow().isoformat(),
    }


async def crm_exception_handler(request: Request, exc: CrmException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unexpected error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=error_body("Internal server error", "INTERNAL_ERROR"))


def register_exception_handlers(application: FastAPI) -> None:
    application.add_exception_handler(CrmException, crm_exception_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)
