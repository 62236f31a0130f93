"""Config management for kinde-auth-server.

Settings come from the environment (optionally via a .env file) and may be
overlaid by a JSON file. Handlers receive an immutable AuthConfig built per
request through a provider callable, so tests can inject their own.
"""
import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Callable, Optional


CONFIG_DIR = Path.home() / ".kinde-auth"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_SCOPE = "openid profile email offline"
DEFAULT_POST_LOGIN_REDIRECT = "/dashboard"
DEFAULT_POST_LOGOUT_REDIRECT = "/"

# AuthConfig field -> environment variable
ENV_VARS = {
    "issuer_url": "KINDE_ISSUER_URL",
    "client_id": "KINDE_CLIENT_ID",
    "client_secret": "KINDE_CLIENT_SECRET",
    "redirect_url": "KINDE_REDIRECT_URL",
    "scope": "KINDE_SCOPE",
    "post_login_redirect_url": "KINDE_POST_LOGIN_REDIRECT_URL",
    "post_logout_redirect_url": "KINDE_POST_LOGOUT_REDIRECT_URL",
    "pkce_enabled": "KINDE_PKCE_ENABLED",
    "http_timeout": "KINDE_HTTP_TIMEOUT",
    "session_cookie": "KINDE_SESSION_COOKIE",
    "storage_namespace": "KINDE_STORAGE_NAMESPACE",
    "protected_paths": "KINDE_PROTECTED_PATHS",
}


@dataclass(frozen=True)
class AuthConfig:
    """Immutable provider and redirect settings."""

    issuer_url: str = ""
    client_id: str = ""
    client_secret: Optional[str] = field(default=None, repr=False)
    redirect_url: str = ""
    scope: str = DEFAULT_SCOPE
    post_login_redirect_url: str = DEFAULT_POST_LOGIN_REDIRECT
    post_logout_redirect_url: str = DEFAULT_POST_LOGOUT_REDIRECT
    pkce_enabled: bool = False
    http_timeout: float = 5.0
    session_cookie: Optional[str] = None
    storage_namespace: str = "kinde:"
    protected_paths: tuple[str, ...] = ()

    @property
    def issuer(self) -> str:
        return self.issuer_url.rstrip("/")

    def missing_fields(self) -> list[str]:
        """Names of required settings that are unset."""
        missing = [
            ENV_VARS[name]
            for name in ("issuer_url", "client_id", "redirect_url")
            if not getattr(self, name)
        ]
        if not self.pkce_enabled and not self.client_secret:
            missing.append(ENV_VARS["client_secret"])
        return missing

    def is_valid(self) -> bool:
        return not self.missing_fields()


ConfigProvider = Callable[[], AuthConfig]


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_paths(value) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    return tuple(p.strip() for p in items if p.strip())


def _coerce(name: str, value):
    if name == "pkce_enabled":
        return _parse_bool(value)
    if name == "http_timeout":
        return float(value)
    if name == "protected_paths":
        return _parse_paths(value)
    return value


def config_from_env(environ: Optional[dict] = None) -> AuthConfig:
    """Build config from environment variables, keeping defaults for unset ones."""
    environ = os.environ if environ is None else environ
    values = {}
    for name, var in ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        values[name] = _coerce(name, raw)
    return AuthConfig(**values)


def config_from_file(path: Path = CONFIG_FILE, base: Optional[AuthConfig] = None) -> AuthConfig:
    """Overlay values from a JSON file onto `base`.

    A missing or unreadable file leaves `base` untouched.
    """
    base = base or AuthConfig()
    path = Path(path)
    if not path.exists():
        return base

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError):
        return base
    if not isinstance(data, dict):
        return base

    known = {f.name for f in fields(AuthConfig)}
    overrides = {k: _coerce(k, v) for k, v in data.items() if k in known and v is not None}
    return replace(base, **overrides)


def load_config() -> AuthConfig:
    """Environment first, then the JSON file from KINDE_AUTH_CONFIG_FILE or ~/.kinde-auth."""
    config = config_from_env()
    path = os.getenv("KINDE_AUTH_CONFIG_FILE")
    return config_from_file(Path(path) if path else CONFIG_FILE, base=config)

