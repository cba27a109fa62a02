"""
opsdash.api.errors — Exception → JSON response mapping
=======================================================

Handlers never build error responses themselves; they raise a
:class:`~opsdash.errors.DashboardError` and the handlers registered here turn
it into::

    {"success": false, "error": "<kind>", "message": "<text>"}

Unexpected exceptions become a generic 500 carrying the request's trace id;
the traceback goes to the log, never to the client.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from opsdash.errors import DashboardError

logger = logging.getLogger(__name__)


def _trace_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _describe(error: dict) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{loc}: {error.get('msg', 'invalid')}" if loc else str(error.get("msg", "invalid"))


async def dashboard_error_handler(request: Request, exc: DashboardError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s → %d %s: %s", request.method, request.url.path,
                       exc.status_code, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [_describe(e) for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "validation_error",
            "message": "; ".join(fields) or "Invalid request",
            "fields": fields,
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _trace_id(request)
    logger.exception("Unhandled error on %s %s [trace %s]",
                     request.method, request.url.path, trace_id, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": "Internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Request-ID": trace_id} if trace_id else None,
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DashboardError, dashboard_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
