"""Gateway error taxonomy and upstream failure classification."""

from typing import Dict, Iterable, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    error_type: str = "server_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, object]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            }
        }


class NoCredentialsError(GatewayError):
    """Pool is empty or every entry is inactive."""

    status_code = 503
    error_type = "no_credentials"

    def __init__(self, provider_name: str):
        super().__init__(
            f"No usable {provider_name} credentials; capture or add an account first"
        )
        self.provider_name = provider_name


class InvalidRequestError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"


class UnsupportedModelError(InvalidRequestError):
    def __init__(self, model: str):
        super().__init__(f"Unsupported model: {model}")
        self.model = model


class UpstreamError(GatewayError):
    """Upstream backend returned an error or could not be reached."""

    status_code = 502
    error_type = "upstream_error"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionInvalidError(UpstreamError):
    """Upstream rejected the session or credential (auth-class failure)."""


class UpstreamAuthError(GatewayError):
    status_code = 401
    error_type = "upstream_auth_error"


class UpstreamEmptyResponseError(GatewayError):
    def __init__(self, provider_name: str):
        super().__init__(f"{provider_name} returned an empty response")
        self.provider_name = provider_name


AUTH_STATUS_CODES = frozenset({401, 403, 410})


def is_session_invalid(
    exc: BaseException,
    status_codes: Iterable[int] = AUTH_STATUS_CODES,
    markers: Iterable[str] = (),
) -> bool:
    """Return True if ``exc`` carries an auth-class failure signature.

    A status code from ``status_codes`` or any of the lowercase ``markers``
    appearing in the message counts as a session/credential failure.
    """
    if isinstance(exc, SessionInvalidError):
        return True
    status = getattr(exc, "status", None)
    if status is not None and status in frozenset(status_codes):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in markers)
