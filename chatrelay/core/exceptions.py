"""Core exceptions for the gateway."""

from typing import Optional


class ProxyError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UpstreamError(ProxyError):
    """The upstream answered with a non-2xx status or could not be reached.

    ``status_code`` is the upstream status (502 for transport failures) and
    ``body`` the raw upstream response text, if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 502,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConfigurationError(ProxyError):
    """Raised when there's an issue with the configuration."""
    pass


class InvalidRequestError(ProxyError):
    """An inbound request body failed validation.

    ``param`` names the offending field (``model``, ``messages.0.role``...).
    """

    def __init__(
        self,
        message: str,
        code: str = "invalid_request",
        param: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.param = param
