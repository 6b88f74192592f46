from __future__ import annotations
import logging
import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from ..observability.logging import request_id_var
from ..config import get_settings

S = get_settings()
log = logging.getLogger("app.request")


def _client_ip(req: Request) -> str:
    # prefer X-Forwarded-For (first hop), fallback to uvicorn client
    h = req.headers.get("x-forwarded-for")
    if h:
        return h.split(",")[0].strip()
    return req.client.host if req.client else "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, echoes it back and writes one access line per request."""

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(S.REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = rid
        token = request_id_var.set(rid)
        start = time.perf_counter()
        ctx = f"path={request.url.path} method={request.method} ip={_client_ip(request)}"

        try:
            response = await call_next(request)
        except Exception:
            ms = int((time.perf_counter() - start) * 1000)
            log.error("unhandled_error", exc_info=True, extra={"extra": f"{ctx} ms={ms}"})
            raise
        finally:
            request_id_var.reset(token)

        ms = int((time.perf_counter() - start) * 1000)
        response.headers[S.REQUEST_ID_HEADER] = rid
        log.info("request", extra={"request_id": rid, "extra": f"{ctx} status={response.status_code} ms={ms}"})
        return response
