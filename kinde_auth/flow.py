"""Authorization code flow against the Kinde identity provider.

This module contains the request handlers behind the auth router:
- start_authorization: register pending state and redirect to /oauth2/auth
- complete_authorization: validate the callback, exchange the code, store tokens
- logout: drop stored tokens and redirect to the provider logout page
- is_authenticated / get_user: read-only queries for page loads

Pending state lives in the transient store under `state:<id>`,
`redirect:<id>` and `code_verifier:<id>`, all with the same TTL. A state is
consumed on first lookup, whatever the outcome of the exchange.
"""

import logging
import time
from typing import Mapping, Optional
from urllib.parse import urlencode, urlparse

import httpx
from fastapi.responses import RedirectResponse

from config import AuthConfig
from kinde_auth.errors import (
    ConfigurationError,
    InvalidRequest,
    InvalidState,
    MalformedUpstreamResponse,
    MissingCodeVerifier,
    ProviderError,
    StorageOperationError,
    UpstreamError,
)
from kinde_auth.pkce import generate_pkce_pair, random_token
from kinde_auth.storage import STATE_TTL_SECONDS, TransientStore
from kinde_auth.tokens import TokenSet, UserProfile, token_key, user_from_tokens

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/oauth2/auth"
TOKEN_PATH = "/oauth2/token"
LOGOUT_PATH = "/logout"

VARIANTS = ("login", "register")
SESSION_ID_LENGTH = 32
NO_STORE = {"Cache-Control": "no-store"}


def state_key(state: str) -> str:
    return f"state:{state}"


def redirect_key(state: str) -> str:
    return f"redirect:{state}"


def verifier_key(state: str) -> str:
    return f"code_verifier:{state}"


def redirect_response(url: str) -> RedirectResponse:
    """302 that intermediaries must not cache."""
    return RedirectResponse(url=url, status_code=302, headers=NO_STORE)


def require_config(config: AuthConfig) -> None:
    missing = config.missing_fields()
    if missing:
        # Names only, never values
        logger.error(f"[CONFIG] Missing required settings: {', '.join(missing)}")
        raise ConfigurationError()


def _origin(url: str) -> Optional[tuple[str, str]]:
    parsed = urlparse(url)
    if parsed.scheme in ("http", "https") and parsed.netloc:
        return parsed.scheme, parsed.netloc.lower()
    return None


def resolve_post_login_redirect(config: AuthConfig, requested: Optional[str]) -> str:
    """Accept a caller override only for same-site targets.

    Relative paths are allowed, as are absolute URLs on the origin of the
    callback URL or of the configured default. Anything else falls back to
    the default.
    """
    if not requested:
        return config.post_login_redirect_url

    if requested.startswith("/") and not requested.startswith("//") and "\\" not in requested:
        return requested

    allowed = {_origin(config.redirect_url), _origin(config.post_login_redirect_url)}
    allowed.discard(None)
    if _origin(requested) in allowed:
        return requested

    logger.warning(f"[LOGIN] Ignoring off-site post_login_redirect_url: {requested}")
    return config.post_login_redirect_url


def build_authorization_url(
    config: AuthConfig,
    state: str,
    variant: str = "login",
    code_challenge: Optional[str] = None,
    org_code: Optional[str] = None,
) -> str:
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_url,
        "response_type": "code",
        "scope": config.scope,
        "state": state,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    if org_code:
        params["org_code"] = org_code
    if variant == "register":
        params["prompt"] = "create"
    return f"{config.issuer}{AUTHORIZE_PATH}?{urlencode(params)}"


def build_logout_url(config: AuthConfig) -> str:
    if not config.issuer_url:
        return config.post_logout_redirect_url
    query = urlencode({"redirect": config.post_logout_redirect_url})
    return f"{config.issuer}{LOGOUT_PATH}?{query}"


def _set_session_cookie(response: RedirectResponse, config: AuthConfig, session_id: str) -> None:
    response.set_cookie(
        key=config.session_cookie,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=config.redirect_url.startswith("https://"),
        path="/",
    )


# ============== Login / Register ==============

async def start_authorization(
    config: AuthConfig,
    store: TransientStore,
    variant: str = "login",
    org_code: Optional[str] = None,
    post_login_redirect: Optional[str] = None,
    session_id: Optional[str] = None,
) -> RedirectResponse:
    """Register a pending authorization and redirect to the provider."""
    if variant not in VARIANTS:
        raise InvalidRequest(f"Unsupported authorization variant: {variant}")
    require_config(config)

    new_session = False
    if config.session_cookie and not session_id:
        session_id = random_token(SESSION_ID_LENGTH)
        new_session = True

    state = random_token()
    redirect_to = resolve_post_login_redirect(config, post_login_redirect)

    pending = [
        (state_key(state), {"created_at": int(time.time() * 1000), "session": session_id}),
        (redirect_key(state), redirect_to),
    ]
    challenge = None
    if config.pkce_enabled:
        verifier, challenge = generate_pkce_pair()
        pending.append((verifier_key(state), verifier))

    written = []
    for key, value in pending:
        result = await store.put(key, value, STATE_TTL_SECONDS)
        if not result.ok:
            # Never leave a state behind without its bound redirect/verifier
            for done in written:
                await store.delete(done)
            logger.error(f"[LOGIN] Could not register pending state: {result.error}")
            raise StorageOperationError("Failed to store authorization state")
        written.append(key)

    url = build_authorization_url(config, state, variant, challenge, org_code)
    logger.info(f"[LOGIN] Started {variant} flow (pkce={config.pkce_enabled})")

    response = redirect_response(url)
    if new_session:
        _set_session_cookie(response, config, session_id)
    return response


# ============== Callback ==============

async def exchange_code(
    config: AuthConfig,
    code: str,
    code_verifier: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """POST the authorization code to the token endpoint.

    Sends `code_verifier` when one is given, otherwise `client_secret`;
    never both.
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_url,
        "client_id": config.client_id,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier
    else:
        data["client_secret"] = config.client_secret

    url = f"{config.issuer}{TOKEN_PATH}"
    headers = {"Accept": "application/json"}

    try:
        if http_client is not None:
            response = await http_client.post(
                url, data=data, headers=headers, timeout=config.http_timeout
            )
        else:
            async with httpx.AsyncClient(timeout=config.http_timeout) as client:
                response = await client.post(url, data=data, headers=headers)
    except httpx.TimeoutException:
        logger.error(f"[CALLBACK] Token endpoint timed out after {config.http_timeout}s")
        raise UpstreamError()
    except httpx.HTTPError as e:
        logger.error(f"[CALLBACK] Token endpoint request failed: {e}")
        raise UpstreamError()

    if not response.is_success:
        logger.error(
            f"[CALLBACK] Token exchange failed: {response.status_code} {response.text[:500]}"
        )
        raise UpstreamError()

    try:
        payload = response.json()
    except ValueError:
        logger.error("[CALLBACK] Token endpoint returned non-JSON body")
        raise UpstreamError()

    if not isinstance(payload, dict) or not payload.get("access_token"):
        logger.error("[CALLBACK] Token response has no access_token")
        raise MalformedUpstreamResponse()
    return payload


async def complete_authorization(
    config: AuthConfig,
    store: TransientStore,
    params: Mapping[str, str],
    http_client: Optional[httpx.AsyncClient] = None,
) -> RedirectResponse:
    """Handle the provider callback and persist the resulting token set."""
    error = params.get("error")
    if error:
        logger.warning(f"[CALLBACK] Provider returned error: {error}")
        raise ProviderError(error, params.get("error_description"))

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        raise InvalidRequest()
    require_config(config)

    pending = await store.get(state_key(state))
    if not pending.found:
        logger.warning(f"[CALLBACK] Unknown or expired state, possible replay or CSRF: {state}")
        raise InvalidState()

    redirect_result = await store.get(redirect_key(state))
    redirect_to = redirect_result.value if redirect_result.found else None
    if not isinstance(redirect_to, str) or not redirect_to:
        redirect_to = config.post_login_redirect_url

    code_verifier = None
    if config.pkce_enabled:
        verifier_result = await store.get(verifier_key(state))
        if verifier_result.found and isinstance(verifier_result.value, str):
            code_verifier = verifier_result.value

    session_id = None
    if isinstance(pending.value, dict):
        session_id = pending.value.get("session")

    # Single use: consume before the exchange so a failure cannot be replayed
    for key in (state_key(state), redirect_key(state), verifier_key(state)):
        await store.delete(key)

    if config.pkce_enabled and not code_verifier:
        logger.warning("[CALLBACK] PKCE enabled but no code verifier stored for state")
        raise MissingCodeVerifier()

    payload = await exchange_code(config, code, code_verifier, http_client)
    tokens = TokenSet.from_token_response(payload)

    result = await store.put(token_key(session_id), tokens.to_dict(), ttl_seconds=None)
    if not result.ok:
        raise StorageOperationError("Failed to store tokens")

    logger.info("[CALLBACK] Token exchange succeeded, redirecting to application")
    return redirect_response(redirect_to)


# ============== Logout ==============

async def logout(
    config: AuthConfig,
    store: TransientStore,
    session_id: Optional[str] = None,
) -> RedirectResponse:
    """Forget stored tokens and send the user to the provider logout page.

    Storage failures are logged but never block the redirect.
    """
    result = await store.delete(token_key(session_id))
    if result.failed:
        logger.warning(f"[LOGOUT] Could not delete stored tokens: {result.error}")
    else:
        logger.info("[LOGOUT] Stored tokens cleared")

    if not config.issuer_url:
        logger.warning("[LOGOUT] No issuer configured, redirecting to post-logout URL")

    response = redirect_response(build_logout_url(config))
    if config.session_cookie:
        response.delete_cookie(config.session_cookie, path="/")
    return response


# ============== Queries ==============

async def load_tokens(store: Optional[TransientStore], session_id: Optional[str] = None) -> Optional[TokenSet]:
    if store is None:
        return None
    result = await store.get(token_key(session_id))
    if not result.found:
        return None
    return TokenSet.from_stored(result.value)


async def is_authenticated(store: Optional[TransientStore], session_id: Optional[str] = None) -> bool:
    """True when a token set with a non-empty access token is stored.

    Expiry and signatures are not checked here.
    """
    return await load_tokens(store, session_id) is not None


async def get_user(store: Optional[TransientStore], session_id: Optional[str] = None) -> Optional[UserProfile]:
    tokens = await load_tokens(store, session_id)
    if tokens is None:
        return None
    return user_from_tokens(tokens)
