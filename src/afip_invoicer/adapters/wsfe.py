"""
WSFE adapter — marshalling for the electronic invoicing service (wsfev1).

Adapter layer — implements the InvoicingGateway port on top of a
RemoteCaller bound to the WSFE endpoint. Each operation:

  1. builds the Auth block {Token, Sign, Cuit} from the session credential
  2. maps domain models to the FEV1 request structure (field order matters,
     the service validates against an xs:sequence)
  3. unwraps <Operation>Result and raises RemoteBusinessError for the first
     entry of Errors/Err

Interpretation of the returned fields is left to the invoicing services.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from afip_invoicer.adapters.soap import as_list
from afip_invoicer.domain.errors import RemoteBusinessError, RemoteCallError
from afip_invoicer.domain.models import InvoiceHeader, InvoiceLine, SessionCredential
from afip_invoicer.domain.ports import RemoteCaller

log = structlog.get_logger()

WSFE_NAMESPACE = "http://ar.gov.afip.dif.FEV1/"


def unwrap_result(response: Mapping[str, Any], result_key: str) -> dict[str, Any]:
    """Return response[result_key], raising RemoteBusinessError if it reports errors."""
    result = response.get(result_key)
    if not isinstance(result, dict):
        raise RemoteCallError(f"WSFE response lacks {result_key}")

    errors = as_list((result.get("Errors") or {}).get("Err"))
    if errors:
        first = errors[0] if isinstance(errors[0], dict) else {}
        code = first.get("Code") or "?"
        message = first.get("Msg") or "unspecified error"
        log.warning("wsfe.remote_error", result=result_key, code=code, message=message)
        raise RemoteBusinessError(code, message)
    return result


def line_to_request(line: InvoiceLine) -> dict[str, Any]:
    """Map an InvoiceLine to FECAEDetRequest, in schema order."""
    request: dict[str, Any] = {
        "Concepto": line.concept,
        "DocTipo": line.doc_type,
        "DocNro": line.doc_number,
        "CbteDesde": line.voucher_from,
        "CbteHasta": line.voucher_to,
        "CbteFch": line.date,
        "ImpTotal": line.total_amount,
        "ImpTotConc": line.non_taxed_amount,
        "ImpNeto": line.net_amount,
        "ImpOpEx": line.exempt_amount,
        "ImpTrib": line.tax_amount,
        "ImpIVA": line.vat_amount,
        "MonId": line.currency_id,
        "MonCotiz": line.currency_rate,
    }
    if line.receiver_tax_condition is not None:
        request["CondicionIVAReceptorId"] = line.receiver_tax_condition.id
    if line.vat_breakdown:
        request["Iva"] = {
            "AlicIva": [
                {"Id": rate.id, "BaseImp": rate.base_amount, "Importe": rate.amount}
                for rate in line.vat_breakdown
            ]
        }
    return request


class WsfeClient:
    """FEV1 operations for one taxpayer; implements the InvoicingGateway port."""

    def __init__(self, caller: RemoteCaller, cuit: str) -> None:
        self._caller = caller
        self._cuit = cuit

    def _auth(self, credential: SessionCredential) -> dict[str, str]:
        return {"Token": credential.token, "Sign": credential.sign, "Cuit": self._cuit}

    async def last_authorized(
        self,
        credential: SessionCredential,
        sales_point: int,
        invoice_type: int,
    ) -> dict[str, Any]:
        """FECompUltimoAutorizado — returns the result block (CbteNro, PtoVta, CbteTipo)."""
        response = await self._caller.call(
            "FECompUltimoAutorizado",
            {"Auth": self._auth(credential), "PtoVta": sales_point, "CbteTipo": invoice_type},
        )
        return unwrap_result(response, "FECompUltimoAutorizadoResult")

    async def receiver_conditions(
        self,
        credential: SessionCredential,
        invoice_class: str | None = None,
    ) -> list[dict[str, Any]]:
        """FEParamGetCondicionIvaReceptor — the CondicionIvaReceptor entries, possibly empty."""
        response = await self._caller.call(
            "FEParamGetCondicionIvaReceptor",
            {"Auth": self._auth(credential), "ClaseCmp": invoice_class},
        )
        result = unwrap_result(response, "FEParamGetCondicionIvaReceptorResult")
        return as_list((result.get("ResultGet") or {}).get("CondicionIvaReceptor"))

    async def solicit_authorization(
        self,
        credential: SessionCredential,
        header: InvoiceHeader,
        lines: list[InvoiceLine],
    ) -> list[dict[str, Any]]:
        """FECAESolicitar — the FECAEDetResponse entries, possibly empty."""
        response = await self._caller.call(
            "FECAESolicitar",
            {
                "Auth": self._auth(credential),
                "FeCAEReq": {
                    "FeCabReq": {
                        "CantReg": header.line_count,
                        "PtoVta": header.sales_point,
                        "CbteTipo": header.invoice_type,
                    },
                    "FeDetReq": {"FECAEDetRequest": [line_to_request(line) for line in lines]},
                },
            },
        )
        result = unwrap_result(response, "FECAESolicitarResult")
        return as_list((result.get("FeDetResp") or {}).get("FECAEDetResponse"))
