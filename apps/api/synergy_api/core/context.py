from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from synergy_api.context import reset_actor_user_id, set_actor_user_id
from synergy_api.core.auth import resolve_caller


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        caller = resolve_caller(request)
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=caller.sub,
        )
        token = set_actor_user_id(caller.sub)
        try:
            response = await call_next(request)
        finally:
            reset_actor_user_id(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
