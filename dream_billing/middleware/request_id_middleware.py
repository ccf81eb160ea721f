"""
Request ID Middleware

Generates (or accepts) a request id per HTTP request, exposes it on
``request.state.request_id`` and in the logging context, and echoes it in
the ``X-Request-ID`` response header.
"""

import logging
import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from dream_billing.config.logging_config import request_id_var

logger = logging.getLogger(__name__)

_MAX_REQUEST_ID_LENGTH = 128

# Alphanumeric, dots, underscores, hyphens; anything else is replaced
_VALID_REQUEST_ID_RE = re.compile(r"^[a-zA-Z0-9._-]{1,128}$")


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        raw_request_id = request.headers.get("X-Request-ID", "")[:_MAX_REQUEST_ID_LENGTH]
        if raw_request_id and _VALID_REQUEST_ID_RE.match(raw_request_id):
            request_id = raw_request_id
        else:
            if raw_request_id:
                logger.debug("Client-supplied request ID failed validation and was replaced")
            request_id = _new_request_id()

        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = request_id
        return response


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or _new_request_id()
