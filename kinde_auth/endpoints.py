"""HTTP endpoints for the Kinde authorization flow.

A single route under /api/auth dispatches on the final path segment:
- /login, /register: start the flow
- /kinde_callback: provider callback
- /logout: clear tokens

/api/session exposes the authentication state to page loads.
"""

import logging
from dataclasses import asdict
from typing import Optional

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from config import AuthConfig, ConfigProvider, load_config
from logging_config import endpoint_context
from kinde_auth import flow
from kinde_auth.errors import AuthFlowError, StorageUnavailable
from kinde_auth.storage import TransientStore
from kinde_auth.tokens import user_from_tokens

logger = logging.getLogger(__name__)

# Router for auth endpoints
router = APIRouter(prefix="/api/auth", tags=["auth"])

# Router for the session query surface
session_router = APIRouter(prefix="/api", tags=["session"])

# These will be set by init_auth_routes()
_config_provider: ConfigProvider = load_config
_store: Optional[TransientStore] = None
_http_client: Optional[httpx.AsyncClient] = None


def init_auth_routes(
    store: Optional[TransientStore],
    config_provider: ConfigProvider = load_config,
    http_client: Optional[httpx.AsyncClient] = None,
):
    """Initialize auth routes with their store and config source.

    Args:
        store: Transient store, or None when no backend is provisioned
        config_provider: Callable returning a fresh AuthConfig per request
        http_client: Optional shared client for the token exchange

    Must be called before including the router in the app.
    """
    global _config_provider, _store, _http_client
    _config_provider = config_provider
    _store = store
    _http_client = http_client


def get_store() -> Optional[TransientStore]:
    return _store


def get_config() -> AuthConfig:
    return _config_provider()


def session_id_from(request: Request, config: AuthConfig) -> Optional[str]:
    """Session scope for the token set, when session cookies are enabled."""
    if not config.session_cookie:
        return None
    return request.cookies.get(config.session_cookie) or None


def error_response(error: AuthFlowError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code)


@router.get("/{path:path}")
async def auth_endpoint(path: str, request: Request):
    """Dispatch on the last path segment; every failure becomes a JSON error."""
    endpoint = path.rstrip("/").rsplit("/", 1)[-1]
    with endpoint_context(endpoint):
        return await _dispatch(endpoint, request)


async def _dispatch(endpoint: str, request: Request):
    try:
        if _store is None:
            raise StorageUnavailable()

        config = get_config()
        params = request.query_params
        session_id = session_id_from(request, config)

        if endpoint in ("login", "register"):
            return await flow.start_authorization(
                config,
                _store,
                variant=endpoint,
                org_code=params.get("org_code"),
                post_login_redirect=params.get("post_login_redirect_url"),
                session_id=session_id,
            )
        if endpoint == "kinde_callback":
            return await flow.complete_authorization(config, _store, params, _http_client)
        if endpoint == "logout":
            return await flow.logout(config, _store, session_id)

        return JSONResponse({"error": "Unknown auth endpoint"}, status_code=404)

    except AuthFlowError as e:
        if e.status_code >= 500:
            logger.error(f"[AUTH] /{endpoint} failed: {e.message}")
        return error_response(e)
    except Exception:
        logger.exception(f"[AUTH] Unexpected error handling /{endpoint}")
        return JSONResponse({"error": "Internal error"}, status_code=500)


@session_router.get("/session")
async def session_state(request: Request):
    """Authentication state for page loads. Never redirects."""
    if _store is None:
        return {"authenticated": False, "user": None, "error": "Storage not available"}

    try:
        config = get_config()
        session_id = session_id_from(request, config)
        with endpoint_context("session"):
            tokens = await flow.load_tokens(_store, session_id)
    except Exception:
        logger.exception("[SESSION] Error checking authentication")
        return {"authenticated": False, "user": None, "error": "Error checking authentication"}

    user = user_from_tokens(tokens) if tokens else None
    return {
        "authenticated": tokens is not None,
        "user": asdict(user) if user else None,
    }
