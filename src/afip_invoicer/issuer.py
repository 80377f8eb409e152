"""
Invoice issuer — the orchestration that turns an invoice into a CAE.

Service layer — pure orchestration over ports; all I/O lives in adapters.

Steps, strictly in order for one invoice:

  validate line count (before any remote call)
    → VoucherSequencer.next_number(sales_point, type)
      → ReceiverEligibilityChecker.check_eligibility(class, doc)
        → FECAESolicitar {Auth, FeCabReq, FeDetReq}
          → first FECAEDetResponse → AuthorizationResult

Every WSFE call runs through CredentialProvider.call_with_session, so an
already-authenticated fault from the gateway clears the credential cache and
retries that call exactly once.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import replace
from datetime import date
from typing import Any

import structlog

from afip_invoicer.adapters.soap import as_list
from afip_invoicer.domain.errors import (
    MalformedRequestError,
    MissingAuthorizationDetailError,
    RemoteBusinessError,
    RemoteCallError,
)
from afip_invoicer.domain.models import (
    AuthorizationResult,
    InvoiceHeader,
    InvoiceLine,
    InvoiceRequest,
    SessionCredential,
    parse_afip_date,
)
from afip_invoicer.domain.ports import CredentialProvider, InvoicingGateway
from afip_invoicer.eligibility import ReceiverEligibilityChecker
from afip_invoicer.sequencer import VoucherSequencer

log = structlog.get_logger()

REJECTED = "R"


def _raise_if_rejected(detail: dict[str, Any]) -> None:
    """A detail with Resultado "R" carries the reason in its first observation."""
    if detail.get("Resultado") != REJECTED:
        return
    observations = as_list((detail.get("Observaciones") or {}).get("Obs"))
    first = observations[0] if observations and isinstance(observations[0], dict) else {}
    raise RemoteBusinessError(
        first.get("Code") or REJECTED,
        first.get("Msg") or "Invoice rejected by AFIP",
    )


class InvoiceIssuer:
    def __init__(
        self,
        credentials: CredentialProvider,
        gateway: InvoicingGateway,
        sequencer: VoucherSequencer,
        eligibility: ReceiverEligibilityChecker,
        sales_point: int,
        service: str = "wsfe",
        serialize_numbering: bool = True,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._credentials = credentials
        self._gateway = gateway
        self._sequencer = sequencer
        self._eligibility = eligibility
        self._sales_point = sales_point
        self._service = service
        self._serialize_numbering = serialize_numbering
        self._today = today

    @property
    def sales_point(self) -> int:
        return self._sales_point

    async def issue_request(self, request: InvoiceRequest) -> AuthorizationResult:
        """Issue a single-line invoice for a validated amount request, dated today."""
        header, lines = request.to_invoice(self._sales_point, self._today())
        return await self.issue(header, lines)

    async def issue(self, header: InvoiceHeader, lines: list[InvoiceLine]) -> AuthorizationResult:
        """
        Authorize `lines` under `header` and return the CAE of the first line.

        Line i receives voucher number next + i; with the usual single line
        that is exactly the next number.
        """
        if header.line_count < 1 or len(lines) != header.line_count:
            raise MalformedRequestError(
                f"Header declares {header.line_count} lines but {len(lines)} were given"
            )

        guard = (
            self._sequencer.lock_for(header.sales_point, header.invoice_type)
            if self._serialize_numbering
            else nullcontext()
        )
        async with guard:
            return await self._issue_in_order(header, lines)

    async def _issue_in_order(
        self,
        header: InvoiceHeader,
        lines: list[InvoiceLine],
    ) -> AuthorizationResult:
        voucher_number = await self._sequencer.next_number(header.sales_point, header.invoice_type)

        condition = await self._eligibility.check_eligibility(
            header.invoice_class, lines[0].doc_type, lines[0].doc_number
        )
        receiver = condition.as_ref()
        prepared = [
            replace(
                line,
                voucher_from=voucher_number + index,
                voucher_to=voucher_number + index,
                receiver_tax_condition=receiver,
            )
            for index, line in enumerate(lines)
        ]

        async def _solicit(credential: SessionCredential) -> list[dict[str, Any]]:
            return await self._gateway.solicit_authorization(credential, header, prepared)

        details = await self._credentials.call_with_session(self._service, _solicit)
        if not details or not isinstance(details[0], dict):
            raise MissingAuthorizationDetailError("FECAESolicitar returned no FECAEDetResponse")

        first = details[0]
        _raise_if_rejected(first)
        cae = first.get("CAE")
        if not cae:
            raise MissingAuthorizationDetailError("FECAEDetResponse carries no CAE")

        try:
            cae_expiry = parse_afip_date(first.get("CAEFchVto"))
        except RemoteCallError:
            log.warning(
                "issuer.unparsable_cae_expiry",
                cae=str(cae),
                voucher_number=voucher_number,
                raw=str(first.get("CAEFchVto")),
            )
            cae_expiry = None

        result = AuthorizationResult(
            cae=str(cae),
            cae_expiry=cae_expiry,
            voucher_number=voucher_number,
        )
        log.info(
            "issuer.authorized",
            sales_point=header.sales_point,
            invoice_type=header.invoice_type,
            voucher_number=voucher_number,
            cae_expiry=str(result.cae_expiry),
        )
        return result
