"""
Typed error taxonomy for the M-Pesa gateway integration.

  ConfigError      required credential/URL missing, never retried
  ValidationError  bad amount/phone/field, raised before any network call
  NetworkError     timeout, connection failure, abort (retriable)
  GatewayError     definitive non-success answer from Daraja, never retried

Optional context fields (code, status, data) are only set when the caller
supplies them. Unset fields read as None; the ``has_*`` helpers keep
"absent", "None" and "present but falsy" distinct.
"""

from typing import Any

UNSET: Any = object()


class MpesaError(Exception):
    """Base exception for everything the gateway layer raises."""

    retriable = False

    def __init__(
        self,
        message: str,
        code: Any = UNSET,
        status: Any = UNSET,
        data: Any = UNSET,
    ):
        super().__init__(message)
        self.message = message
        self._fields: dict[str, Any] = {}
        if code is not UNSET:
            self._fields["code"] = code
        if status is not UNSET:
            self._fields["status"] = status
        if data is not UNSET:
            self._fields["data"] = data

    @property
    def code(self) -> Any:
        return self._fields.get("code")

    @property
    def status(self) -> Any:
        return self._fields.get("status")

    @property
    def data(self) -> Any:
        return self._fields.get("data")

    @property
    def has_code(self) -> bool:
        return "code" in self._fields

    @property
    def has_status(self) -> bool:
        return "status" in self._fields

    @property
    def has_data(self) -> bool:
        return "data" in self._fields

    def to_dict(self) -> dict[str, Any]:
        """Structured view for logs and audit entries (only fields that were set)."""
        return {"type": type(self).__name__, "message": self.message, **self._fields}


class ConfigError(MpesaError):
    """A required credential, URL or short code is missing."""


class ValidationError(MpesaError):
    """Caller input rejected before any network call."""


class NetworkError(MpesaError):
    """Timeout, connection reset or abort at the transport level."""

    retriable = True


class GatewayError(MpesaError):
    """Daraja answered, and the answer was not a success."""
