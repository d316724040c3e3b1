from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.errors import LifecycleError
from app.core.logger import logger


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
