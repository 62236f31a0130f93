#!/usr/bin/env python3
"""Kinde Auth Server CLI.

Usage:
    kinde-auth serve    Run the auth server
    kinde-auth status   Show configuration, storage and provider status
    kinde-auth logout   Clear stored tokens (shared storage backends only)
"""
import argparse
import asyncio
import os
import sys
from pathlib import Path

import requests
import uvicorn
from dotenv import load_dotenv
from supabase import create_client

from config import CONFIG_FILE, ENV_VARS, load_config

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
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")


# ============== Helper Functions ==============

def fetch_discovery(issuer: str) -> dict:
    """Fetch the provider's OpenID discovery document.

    Returns dict with:
        - success: bool
        - document: parsed JSON on success
        - error: error message on failure
    """
    try:
        response = requests.get(
            f"{issuer}/.well-known/openid-configuration",
            timeout=10
        )
        response.raise_for_status()
        return {"success": True, "document": response.json()}
    except requests.RequestException as e:
        return {"success": False, "error": f"Network error: {e}"}
    except ValueError:
        return {"success": False, "error": "Discovery document is not JSON"}


def mask(value: str) -> str:
    """Show only the first characters of an identifier."""
    if not value:
        return "(unset)"
    return value[:6] + "..." if len(value) > 6 else value


def build_store(config):
    from kinde_auth.storage import create_storage

    client = None
    if SUPABASE_URL and SUPABASE_KEY:
        client = create_client(SUPABASE_URL, SUPABASE_KEY)
    return create_storage(supabase_client=client, namespace=config.storage_namespace)


# ============== Commands ==============

def cmd_serve(host: str, port: int, reload: bool = False):
    """Run the auth server in the foreground."""
    print(f"Starting Kinde auth server on http://{host}:{port}")
    uvicorn.run("main:app", host=host, port=port, reload=reload, log_level="info")


def cmd_status():
    """Show current configuration and provider status."""
    config = load_config()

    print("\n" + "=" * 50)
    print("  Kinde Auth Server Status")
    print("=" * 50)

    print("\n[Config]")
    print(f"  Issuer:        {config.issuer_url or '(unset)'}")
    print(f"  Client ID:     {mask(config.client_id)}")
    print(f"  Client secret: {'set' if config.client_secret else '(unset)'}")
    print(f"  Redirect URL:  {config.redirect_url or '(unset)'}")
    print(f"  Scope:         {config.scope}")
    print(f"  PKCE:          {'enabled' if config.pkce_enabled else 'disabled'}")
    print(f"  Token scope:   {'per session (' + config.session_cookie + ')' if config.session_cookie else 'single tenant'}")
    print(f"  File:          {CONFIG_FILE} (exists: {CONFIG_FILE.exists()})")
    missing = config.missing_fields()
    if missing:
        print(f"  Missing:       {', '.join(missing)}")

    print("\n[Storage]")
    backend = os.getenv("AUTH_STORAGE_BACKEND", "memory")
    print(f"  Backend:       {backend}")
    if backend == "supabase" and not (SUPABASE_URL and SUPABASE_KEY):
        print("  Status:        Not available (SUPABASE_URL / SUPABASE_KEY unset)")
    elif backend == "none":
        print("  Status:        Disabled, all auth endpoints will return 500")

    print("\n[Provider]")
    if config.issuer_url:
        result = fetch_discovery(config.issuer)
        if result["success"]:
            document = result["document"]
            print("  Status:        Reachable")
            print(f"  Authorize:     {document.get('authorization_endpoint', '?')}")
            print(f"  Token:         {document.get('token_endpoint', '?')}")
            methods = document.get("code_challenge_methods_supported") or []
            if config.pkce_enabled and "S256" not in methods:
                print("  WARNING:       Provider does not advertise S256 PKCE support")
        else:
            print(f"  Status:        Unreachable ({result['error']})")
    else:
        print(f"  Status:        Not configured (set {ENV_VARS['issuer_url']})")

    print("\n" + "=" * 50 + "\n")


def cmd_logout(session_id: str = None):
    """Delete the stored token set."""
    from kinde_auth.tokens import token_key

    config = load_config()
    if os.getenv("AUTH_STORAGE_BACKEND", "memory") == "memory":
        print("In-memory storage lives inside the server process; restart it to clear tokens.")
        return

    store = build_store(config)
    if store is None:
        print("[ERROR] Storage not available.")
        sys.exit(1)

    result = asyncio.run(store.delete(token_key(session_id)))
    if result.failed:
        print(f"[ERROR] Could not clear tokens: {result.error}")
        sys.exit(1)
    print("Stored tokens cleared.")


def cmd_version():
    """Show version information."""
    print(f"kinde-auth v{VERSION}")


# ============== Main Entry Point ==============

def main():
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="kinde-auth",
        description="Kinde Auth Server - server-side OAuth2 authorization code flow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  kinde-auth serve --port 8000
  kinde-auth status
  kinde-auth logout --session <id>
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "status", "logout", "version"],
        help="Command to run (default: serve)"
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    parser.add_argument("--session", default=None, help="Session id for per-session token storage")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args.host, args.port, args.reload)
    elif args.command == "status":
        cmd_status()
    elif args.command == "logout":
        cmd_logout(args.session)
    elif args.command == "version":
        cmd_version()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
