"""
Taxpayer registry adapter — public CUIT lookup through padrón A5 (getPersona_v2).

Uses its own WSAA service (ws_sr_constancia_inscripcion) and the same
session recovery as the invoicing calls.
"""

from __future__ import annotations

from typing import Any

import structlog

from afip_invoicer.domain.models import SessionCredential, TaxpayerProfile
from afip_invoicer.domain.ports import CredentialProvider, RemoteCaller

log = structlog.get_logger()

REGISTRY_NAMESPACE = "http://a5.soap.ws.server.puc.sr/"
REGISTERED_RESPONSIBLE = "Resp. Inscripto"
EXEMPT = "Exento"


def mask_cuit(cuit: str) -> str:
    return f"***{cuit[-4:]}"


def profile_from_persona(persona: dict[str, Any]) -> TaxpayerProfile | None:
    """
    Build a TaxpayerProfile from a personaReturn block.

    A taxpayer with any general-regime tax is a registered VAT responsible
    (invoice type 1, Factura A); everyone else gets type 6 (Factura B).
    """
    general = persona.get("datosGenerales")
    if not isinstance(general, dict):
        return None

    if general.get("tipoPersona") == "FISICA":
        name = f"{general.get('apellido') or ''} {general.get('nombre') or ''}".strip()
    else:
        name = general.get("razonSocial") or ""

    regime = persona.get("datosRegimenGeneral")
    has_taxes = isinstance(regime, dict) and bool(regime.get("impuesto"))
    vat_condition = REGISTERED_RESPONSIBLE if has_taxes else EXEMPT

    address = general.get("domicilioFiscal")
    address = address if isinstance(address, dict) else {}

    return TaxpayerProfile(
        cuit=str(general.get("idPersona") or ""),
        name=name,
        person_type=general.get("tipoPersona"),
        vat_condition=vat_condition,
        suggested_invoice_type=1 if vat_condition == REGISTERED_RESPONSIBLE else 6,
        address=address.get("direccion"),
        locality=address.get("localidad") or address.get("datoAdicional"),
        province=address.get("descripcionProvincia"),
        postal_code=address.get("codPostal"),
    )


class TaxpayerRegistry:
    """Look up taxpayers on behalf of the represented CUIT."""

    def __init__(
        self,
        caller: RemoteCaller,
        credentials: CredentialProvider,
        represented_cuit: str,
        service: str = "ws_sr_constancia_inscripcion",
    ) -> None:
        self._caller = caller
        self._credentials = credentials
        self._represented_cuit = represented_cuit
        self._service = service

    async def lookup(self, cuit: str) -> TaxpayerProfile | None:
        """Return the registry profile for `cuit`, or None when the registry has no data."""

        async def _get_persona(credential: SessionCredential) -> dict[str, Any]:
            return await self._caller.call(
                "getPersona_v2",
                {
                    "token": credential.token,
                    "sign": credential.sign,
                    "cuitRepresentada": self._represented_cuit,
                    "idPersona": cuit,
                },
            )

        response = await self._credentials.call_with_session(self._service, _get_persona)
        persona = response.get("personaReturn")
        profile = profile_from_persona(persona) if isinstance(persona, dict) else None
        log.info("registry.lookup", cuit=mask_cuit(cuit), found=profile is not None)
        return profile
