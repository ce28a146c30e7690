"""
ERRORS MODULE
=============

Exceptions raised by the services, each carrying the HTTP status the API layer
should answer with. app.main turns any AssistantError into an HTTP error response;
everything else becomes a 500.

  InvalidRequestError    400  malformed turn input, bad conversation id
  MissingTokenError      401  no user token supplied
  InsufficientQuotaError 402  quota service refused or remaining quota <= 0
  UpstreamError          502  completion/content/quota service failed (upstream status kept)
  ConfigurationError     500  required credentials are missing
  ToolArgumentError      -    tool arguments failed validation (reported to the model, never to the client)
"""

from typing import Optional


class AssistantError(Exception):
    """Base class for errors that map to an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidRequestError(AssistantError):
    status_code = 400


class MissingTokenError(AssistantError):
    status_code = 401


class InsufficientQuotaError(AssistantError):
    status_code = 402


class ConfigurationError(AssistantError):
    status_code = 500


class UpstreamError(AssistantError):
    """
    A network service we depend on failed (non-success status, transport error, timeout).

    status_code is the upstream status when there was one, otherwise 502.
    """

    status_code = 502

    # Upstream statuses worth passing through to the client as-is: the client can retry later.
    PASSTHROUGH_STATUSES = (429, 503, 504)

    def __init__(self, message: str, status_code: Optional[int] = None, service: str = "upstream"):
        super().__init__(message, status_code)
        self.service = service

    @property
    def client_status(self) -> int:
        """Status to report to our own caller."""
        return self.status_code if self.status_code in self.PASSTHROUGH_STATUSES else 500


class ToolArgumentError(ValueError):
    """Tool arguments are missing, mistyped or not valid JSON."""
