"""
Error taxonomy — every failure the invoicing core can raise.

All errors derive from InvoicingError and carry an ErrorCode, so the HTTP
boundary can log precisely and pick a status without inspecting messages:

  CONFIGURATION_ERROR     SigningError (key material unreadable, fatal)
  AUTHENTICATION_ERROR    AuthenticationError, InvalidCredentialsError
  EXTERNAL_SERVICE_ERROR  RemoteCallError, SoapFault, SequencingError,
                          MissingAuthorizationDetailError
  TIMEOUT_ERROR           RemoteTimeoutError (retryable by the caller)
  BUSINESS_RULE_ERROR     RemoteBusinessError, receiver eligibility errors
  VALIDATION_ERROR        MalformedRequestError (raised before any remote call)

The core never swallows these; they propagate to the boundary unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum, unique
from typing import Any


@unique
class ErrorCode(Enum):
    """Structured error codes, grouped by how the boundary reports them."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


class InvoicingError(Exception):
    """Base class for all invoicing failures."""

    code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SigningError(InvoicingError):
    """Key or certificate material is unreadable, malformed or mismatched."""

    code = ErrorCode.CONFIGURATION_ERROR


class AuthenticationError(InvoicingError):
    """WSAA login failed."""

    code = ErrorCode.AUTHENTICATION_ERROR


class InvalidCredentialsError(AuthenticationError):
    """The login response did not carry both token and sign."""


class RemoteCallError(InvoicingError):
    """Transport-level failure or unparsable response from a remote service."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class RemoteTimeoutError(RemoteCallError):
    """A remote call exceeded its timeout."""

    code = ErrorCode.TIMEOUT_ERROR


class SoapFault(RemoteCallError):
    """
    A SOAP Fault returned by the remote party.

    `fault_code` is the local part of <faultcode> (namespace prefix removed);
    `detail` holds the children of <detail> converted to plain data.
    """

    ALREADY_AUTHENTICATED = "coe.alreadyAuthenticated"

    def __init__(
        self,
        fault_code: str,
        message: str,
        detail: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{fault_code}: {message}")
        self.fault_code = fault_code
        self.fault_string = message
        self.detail: dict[str, Any] = dict(detail or {})

    @property
    def is_already_authenticated(self) -> bool:
        return self.fault_code == self.ALREADY_AUTHENTICATED


class RemoteBusinessError(InvoicingError):
    """A rule violation reported by the tax authority (Errors/Err or an observation)."""

    code = ErrorCode.BUSINESS_RULE_ERROR

    def __init__(self, remote_code: int | str, remote_message: str) -> None:
        super().__init__(f"AFIP error {remote_code}: {remote_message}")
        self.remote_code = remote_code
        self.remote_message = remote_message


class NoEligibleConditionError(InvoicingError):
    """The gateway returned no receiver VAT conditions at all."""

    code = ErrorCode.BUSINESS_RULE_ERROR


class IneligibleReceiverError(InvoicingError):
    """No receiver VAT condition matches the requested invoice class."""

    code = ErrorCode.BUSINESS_RULE_ERROR


class ExpiredConditionError(InvoicingError):
    """The matching receiver VAT condition is no longer in force."""

    code = ErrorCode.BUSINESS_RULE_ERROR


class SequencingError(InvoicingError):
    """The last authorized voucher number could not be read."""


class MalformedRequestError(InvoicingError):
    code = ErrorCode.VALIDATION_ERROR


class MissingAuthorizationDetailError(InvoicingError):
    """FECAESolicitar answered without any FECAEDetResponse."""
