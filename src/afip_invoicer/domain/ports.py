"""
Ports — Protocol-based interfaces between the invoicing services and adapters.

  VoucherSequencer / ReceiverEligibilityChecker / InvoiceIssuer
      ↓ depend on
  CredentialProvider (WSAA)   InvoicingGateway (WSFE)
      ↓                           ↓
  TicketSigner, RemoteCaller  RemoteCaller

Adapters satisfy these structurally; tests substitute AsyncMock objects.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar, runtime_checkable

from afip_invoicer.domain.models import (
    InvoiceHeader,
    InvoiceLine,
    SessionCredential,
)

T = TypeVar("T")


@runtime_checkable
class TicketSigner(Protocol):
    """Port: produce a base64 CMS signed login ticket for a WSAA service."""

    def build(self, service: str) -> str: ...


@runtime_checkable
class RemoteCaller(Protocol):
    """
    Port: one SOAP operation over the wire.

    Marshals `params` into the request body, returns the operation response
    converted to nested dicts, lists and strings.
    """

    async def call(self, operation: str, params: Mapping[str, Any]) -> dict[str, Any]: ...


@runtime_checkable
class CredentialProvider(Protocol):
    """Port: valid WSAA session credentials for a named service."""

    async def authenticate(self, service: str) -> SessionCredential: ...

    async def call_with_session(
        self,
        service: str,
        call: Callable[[SessionCredential], Awaitable[T]],
    ) -> T:
        """
        Run `call` with a valid credential, recovering once from an
        already-authenticated fault by clearing the cache and logging in again.
        """
        ...


@runtime_checkable
class InvoicingGateway(Protocol):
    """Port: the WSFE operations the invoicing services consume."""

    async def last_authorized(
        self,
        credential: SessionCredential,
        sales_point: int,
        invoice_type: int,
    ) -> dict[str, Any]: ...

    async def receiver_conditions(
        self,
        credential: SessionCredential,
        invoice_class: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def solicit_authorization(
        self,
        credential: SessionCredential,
        header: InvoiceHeader,
        lines: list[InvoiceLine],
    ) -> list[dict[str, Any]]: ...
