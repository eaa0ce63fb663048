import os
import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from structlog.contextvars import bind_contextvars, clear_contextvars

# request ids land in an indexed String(64) column
_VALID_RID = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")
SERVICE_NAME = os.getenv("SERVICE_NAME", "api")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        clear_contextvars()
        incoming = request.headers.get("X-Request-ID", "")
        rid = incoming if _VALID_RID.match(incoming) else str(uuid.uuid4())
        bind_contextvars(request_id=rid, service=SERVICE_NAME)
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
