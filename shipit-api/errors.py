from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when the gateway cannot be wired. Never caught."""


class GatewayError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class Unauthenticated(GatewayError):
    status_code = 401
    code = "UNAUTHENTICATED"

    def __init__(self, message: str, login_url: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.login_url = login_url


class Forbidden(GatewayError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(GatewayError):
    status_code = 404
    code = "NOT_FOUND"


class BackendError(GatewayError):
    status_code = 502
    code = "SEARCH_BACKEND_ERROR"


class NotificationError(Exception):
    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel
        self.message = message
