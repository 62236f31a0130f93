"""Error taxonomy for the authorization flow.

Handlers raise these; the router turns them into JSON responses so nothing
escapes the handler boundary as an unhandled fault.
"""

from typing import Optional


class AuthFlowError(Exception):
    """Base class carrying the HTTP status and the client-safe message."""

    status_code = 500
    message = "Internal error"

    def __init__(self, message: Optional[str] = None, extra: Optional[dict] = None):
        self.message = message or self.message
        self.extra = extra or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.message}
        body.update(self.extra)
        return body


class ConfigurationError(AuthFlowError):
    """Required settings are missing. The message never names secret values."""

    message = "Authentication is not configured"


class StorageUnavailable(AuthFlowError):
    message = "KV storage not available"


class StorageOperationError(AuthFlowError):
    message = "Storage operation failed"


class InvalidRequest(AuthFlowError):
    status_code = 400
    message = "Missing required parameters"


class ProviderError(AuthFlowError):
    """The provider redirected back with an `error` parameter."""

    status_code = 400

    def __init__(self, error: str, description: Optional[str] = None):
        extra = {"error_description": description} if description else None
        super().__init__(error, extra)


class InvalidState(AuthFlowError):
    status_code = 401
    message = "Invalid state parameter"


class MissingCodeVerifier(AuthFlowError):
    status_code = 401
    message = "Code verifier not found"


class UpstreamError(AuthFlowError):
    message = "Token exchange failed"


class MalformedUpstreamResponse(AuthFlowError):
    message = "Malformed token response"
