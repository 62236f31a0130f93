"""Auth guard for application routes.

Requests under a protected path prefix need a stored token set with a
non-empty access token. Expiry and signatures are not checked; that is left
to the consuming application.
"""

import logging
from typing import Iterable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from kinde_auth import endpoints, flow

logger = logging.getLogger(__name__)


class AuthGuardMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to protected path prefixes."""

    def __init__(self, app, protected_prefixes: Iterable[str] = ()):
        super().__init__(app)
        self.protected_prefixes = tuple(protected_prefixes)

    def is_protected(self, path: str) -> bool:
        return any(
            path == prefix.rstrip("/") or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.protected_prefixes
        )

    async def dispatch(self, request: Request, call_next):
        if not self.is_protected(request.url.path):
            return await call_next(request)

        store = endpoints.get_store()
        if store is None:
            logger.error("[AUTH] Protected route requested but storage is not available")
            return JSONResponse({"error": "KV storage not available"}, status_code=500)

        try:
            session_id = endpoints.session_id_from(request, endpoints.get_config())
            authenticated = await flow.is_authenticated(store, session_id)
        except Exception:
            logger.exception(f"[AUTH] Error checking authentication for {request.url.path}")
            return JSONResponse({"error": "Internal error"}, status_code=500)

        if authenticated:
            return await call_next(request)

        logger.info(f"[AUTH] Request rejected: not authenticated ({request.url.path})")
        return JSONResponse(
            {"error": "unauthorized", "error_description": "Login required"},
            status_code=401,
        )
