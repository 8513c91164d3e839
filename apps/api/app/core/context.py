from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import workspace_id_from_path


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    workspace_id: str | None = None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None) or ""
        request.state.context = RequestContext(
            request_id=correlation_id,
            correlation_id=correlation_id,
            user_id=None,
            workspace_id=workspace_id_from_path(request.url.path),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
