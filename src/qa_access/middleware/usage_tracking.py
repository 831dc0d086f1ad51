"""Per-request bookkeeping: request id for log correlation and API call counting."""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..credits.usage import ApiCallCounter
from ..observability.logging import clear_log_context, new_request_id
from ..security.tenant import get_tenant_scope

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class UsageTrackingMiddleware(BaseHTTPMiddleware):
    """Count one API call against the instance the guard scoped the request to.

    Requests rejected before scoping (rate limited, unauthenticated, denied)
    have no instance attached and are not counted.
    """

    def __init__(self, app, counter: ApiCallCounter):
        super().__init__(app)
        self.counter = counter

    async def dispatch(self, request: Request, call_next):
        request_id = new_request_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            response = await call_next(request)
            scope = get_tenant_scope(request)
            if scope.instance_id:
                self.counter.record(scope.instance_id)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_log_context()
