"""
Voucher sequencing — the next voucher number for a sales point and type.

Read-then-increment against the gateway's state: two processes issuing for
the same sales point and type can read the same last number. Within one
process the issuer serializes the whole read-increment-submit sequence per
(sales point, type) with `lock_for`; across processes the gateway rejects
the duplicate.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict

import structlog

from afip_invoicer.domain.errors import SequencingError
from afip_invoicer.domain.models import SessionCredential
from afip_invoicer.domain.ports import CredentialProvider, InvoicingGateway

log = structlog.get_logger()


class VoucherSequencer:
    def __init__(
        self,
        credentials: CredentialProvider,
        gateway: InvoicingGateway,
        service: str = "wsfe",
    ) -> None:
        self._credentials = credentials
        self._gateway = gateway
        self._service = service
        self._locks: defaultdict[tuple[int, int], asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock_for(self, sales_point: int, invoice_type: int) -> asyncio.Lock:
        """The in-process lock guarding numbering for (sales_point, invoice_type)."""
        return self._locks[(sales_point, invoice_type)]

    async def next_number(self, sales_point: int, invoice_type: int) -> int:
        """
        Return FECompUltimoAutorizado.CbteNro + 1.

        Raises SequencingError when the gateway answer has no numeric CbteNro.
        """

        async def _last_authorized(credential: SessionCredential) -> dict[str, object]:
            return await self._gateway.last_authorized(credential, sales_point, invoice_type)

        result = await self._credentials.call_with_session(self._service, _last_authorized)
        raw = result.get("CbteNro")
        try:
            last_number = int(str(raw))
        except ValueError as exc:
            raise SequencingError(
                f"Last authorized voucher for sales point {sales_point}, "
                f"type {invoice_type} is not a number: {raw!r}"
            ) from exc
        if last_number < 0:
            raise SequencingError(f"Last authorized voucher is negative: {last_number}")

        log.info(
            "sequencer.next_number",
            sales_point=sales_point,
            invoice_type=invoice_type,
            last_number=last_number,
        )
        return last_number + 1
