import logging
import os
import re
import time
from typing import Callable
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .core.errors import JobNotFound

# Configure root logger once (simple, readable format)
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("asset_converter.request")

# progress polling is chatty; keep it out of INFO
QUIET_PREFIXES = ("/progress/",)

JOB_ROUTE = re.compile(r"^/(?:process/(?P<type>[^/]+)|progress)/(?P<id>[^/]+)$")


def job_fields(request: Request, path: str) -> str:
    """' job=<id> type=<type> state=<state>' for job routes, else ''."""
    m = JOB_ROUTE.match(path)
    if not m:
        return ""
    job_id, job_type, state = m["id"], m["type"] or "-", "-"
    registry = getattr(request.app.state, "registry", None)
    if registry is not None:
        try:
            job = registry.get(job_id)
        except JobNotFound:
            pass
        else:
            job_type, state = job.type.value, job.state.value
    return f" job={job_id} type={job_type} state={state}"


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        client = request.client.host if request.client else "-"
        method = request.method
        path = request.url.path
        level = logging.DEBUG if path.startswith(QUIET_PREFIXES) else logging.INFO

        try:
            response = await call_next(request)
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.log(
                level,
                "client=%s method=%s path=%s status=%s duration_ms=%.2f%s",
                client, method, path, response.status_code, duration_ms, job_fields(request, path)
            )
            return response
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000.0
            logger.exception(
                "client=%s method=%s path=%s status=%s duration_ms=%.2f%s UNHANDLED",
                client, method, path, 500, duration_ms, job_fields(request, path)
            )
            raise

def register_request_logging(app):
    app.add_middleware(RequestLogMiddleware)
