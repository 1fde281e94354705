import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .core.errors import ConversionError

logger = logging.getLogger("asset_converter.errors")

def register_error_handlers(app: FastAPI):
    @app.exception_handler(ConversionError)
    async def conversion_exc_handler(request: Request, exc: ConversionError):
        # a 5xx here means the service could not set the job up, not a bad request
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s path=%s status=%s job=%s message=%r",
            type(exc).__name__, request.url.path, exc.status_code, exc.job_id, exc.message
        )
        content = {"status": "ERROR", "message": exc.message}
        if exc.job_id is not None:
            content["id"] = exc.job_id
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(HTTPException)
    async def http_exc_handler(request: Request, exc: HTTPException):
        logger.warning(
            "HTTPException path=%s status=%s job=%s detail=%r",
            request.url.path, exc.status_code, request.path_params.get("id", "-"), exc.detail
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail) if exc.detail else "HTTP error"},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        logger.warning(
            "ValidationError path=%s job=%s errors=%s",
            request.url.path, request.path_params.get("id", "-"), exc.errors()
        )
        return JSONResponse(
            status_code=422,
            content={"error": "Validation error", "details": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error at path=%s job=%s", request.url.path, request.path_params.get("id", "-"))
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic v2 may put the raw exception object under "ctx"
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]
