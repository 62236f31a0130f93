"""Kinde Auth Server.

Runs the server side of the OAuth2/OIDC authorization code flow against
Kinde. It handles:
- Auth endpoints (/api/auth/login, /register, /kinde_callback, /logout)
- Authentication state for page loads (/api/session)
- Optional auth guard for configured application paths

OAuth state, PKCE verifiers and tokens live in a transient key-value store
(in-memory or a Supabase table), never in request-handler memory.
"""
import os
import logging
from pathlib import Path
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import create_client, Client

from config import ConfigProvider, load_config

# Load environment: .env (local override) or .env.public (bundled defaults)
_env_file = Path(".env")
if _env_file.exists():
    load_dotenv(_env_file)
else:
    _package_dir = Path(__file__).parent
    _public_env = _package_dir / ".env.public"
    if _public_env.exists():
        load_dotenv(_public_env)

VERSION = "1.0.0"

# Environment variables
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

# Initialize Supabase client (optional: storage backend and log sink)
supabase: Client = None
if SUPABASE_URL and SUPABASE_KEY:
    supabase = create_client(SUPABASE_URL, SUPABASE_KEY)

from logging_config import setup_logging
setup_logging(supabase_client=supabase)
logger = logging.getLogger(__name__)

from kinde_auth.endpoints import init_auth_routes, router as auth_router, session_router
from kinde_auth.middleware import AuthGuardMiddleware
from kinde_auth.storage import TransientStore, create_storage


def create_app(
    store: Optional[TransientStore] = None,
    config_provider: ConfigProvider = load_config,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the FastAPI app around a store and a config source."""
    startup_config = config_provider()
    if not startup_config.is_valid():
        logger.warning(
            f"[STARTUP] Missing settings: {', '.join(startup_config.missing_fields())}"
        )
    logger.info(f"[STARTUP] Issuer: {startup_config.issuer_url or '(unset)'}")
    logger.info(f"[STARTUP] PKCE enabled: {startup_config.pkce_enabled}")
    logger.info(f"[STARTUP] Storage available: {store is not None}")

    app = FastAPI(
        title="Kinde Auth Server",
        description="Server-side OAuth2/OIDC authorization code flow for Kinde",
        version=VERSION,
    )

    if CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET"],
            allow_headers=["*"],
        )

    if startup_config.protected_paths:
        app.add_middleware(
            AuthGuardMiddleware,
            protected_prefixes=startup_config.protected_paths,
        )

    init_auth_routes(store, config_provider=config_provider, http_client=http_client)
    app.include_router(auth_router)
    app.include_router(session_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "kinde-auth", "storage": store is not None}

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        return {
            "name": "Kinde Auth Server",
            "version": VERSION,
            "endpoints": {
                "login": "/api/auth/login",
                "register": "/api/auth/register",
                "callback": "/api/auth/kinde_callback",
                "logout": "/api/auth/logout",
                "session": "/api/session",
            },
        }

    return app


_config = load_config()
app = create_app(
    store=create_storage(supabase_client=supabase, namespace=_config.storage_namespace),
)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting auth server on {HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT)
