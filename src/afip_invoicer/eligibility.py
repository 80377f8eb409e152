"""
Receiver eligibility — which VAT condition the receiver may hold for a class.

Queried from FEParamGetCondicionIvaReceptor before every submission and
never cached, since the authority can change the rules between calls.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
from typing import Any

import structlog

from afip_invoicer.domain.errors import (
    ExpiredConditionError,
    IneligibleReceiverError,
    NoEligibleConditionError,
    RemoteCallError,
)
from afip_invoicer.domain.models import ReceiverTaxCondition, SessionCredential, parse_afip_date
from afip_invoicer.domain.ports import CredentialProvider, InvoicingGateway

log = structlog.get_logger()


def condition_from_entry(entry: dict[str, Any]) -> ReceiverTaxCondition:
    """Map one CondicionIvaReceptor entry to a ReceiverTaxCondition."""
    try:
        return ReceiverTaxCondition(
            id=int(entry["Id"]),
            description=str(entry.get("Desc") or ""),
            invoice_class=str(entry.get("Cmp_Clase") or ""),
            valid_from=parse_afip_date(entry.get("FechaDesde")),
            valid_to=parse_afip_date(entry.get("FechaHasta")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RemoteCallError(f"Malformed receiver VAT condition: {entry!r}") from exc


class ReceiverEligibilityChecker:
    def __init__(
        self,
        credentials: CredentialProvider,
        gateway: InvoicingGateway,
        service: str = "wsfe",
        today: Callable[[], date] = date.today,
    ) -> None:
        self._credentials = credentials
        self._gateway = gateway
        self._service = service
        self._today = today

    async def list_conditions(self, invoice_class: str | None = None) -> list[ReceiverTaxCondition]:
        """All receiver VAT conditions the gateway reports, optionally filtered by class."""

        async def _fetch(credential: SessionCredential) -> list[dict[str, Any]]:
            return await self._gateway.receiver_conditions(credential, invoice_class)

        entries = await self._credentials.call_with_session(self._service, _fetch)
        return [condition_from_entry(entry) for entry in entries if isinstance(entry, dict)]

    async def check_eligibility(
        self,
        invoice_class: str,
        doc_type: int,
        doc_number: int | None = None,
    ) -> ReceiverTaxCondition:
        """
        Return the receiver VAT condition applicable to `invoice_class`.

        Raises RemoteBusinessError (from the gateway), NoEligibleConditionError,
        IneligibleReceiverError or ExpiredConditionError.
        """
        conditions = await self.list_conditions(invoice_class)
        if not conditions:
            raise NoEligibleConditionError(
                f"No receiver VAT conditions returned for class {invoice_class}"
            )

        selected = next((c for c in conditions if c.applies_to(invoice_class)), None)
        if selected is None:
            raise IneligibleReceiverError(
                f"Receiver has no VAT condition valid for class {invoice_class} invoices"
            )

        if selected.is_expired(self._today()):
            raise ExpiredConditionError(
                f"Receiver VAT condition {selected.id} expired on {selected.valid_to}"
            )

        log.info(
            "eligibility.accepted",
            invoice_class=invoice_class,
            doc_type=doc_type,
            condition_id=selected.id,
            condition=selected.description,
        )
        return selected
