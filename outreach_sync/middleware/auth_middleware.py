"""Authentication middleware: protects all routes except public paths."""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from outreach_sync.services import auth_service
from outreach_sync.utils.logger import log

# Paths that never require authentication
PUBLIC_PREFIXES = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
)


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if any(path.startswith(p) for p in PUBLIC_PREFIXES):
            return await call_next(request)

        token = auth_service.parse_bearer(request.headers.get("authorization"))
        caller = auth_service.resolve_caller(token)

        if caller:
            # Attach caller to request state for downstream use
            request.state.caller = caller
            return await call_next(request)

        log.warning(f"Rejected unauthenticated request to {path}")
        return JSONResponse(
            status_code=401,
            content={"error": "Not authenticated"},
        )
