"""
Acceptance tests — end-to-end invoice issuing over mocked AFIP endpoints.

Runs the real object graph (signer with a throwaway key, SOAP clients,
WSAA/WSFE adapters, services and the FastAPI app) against respx routes
that answer like WSAA and WSFEv1. Only the network is simulated.

Flow under test:
  POST /afip/ticket-test
    → loginCms (signed CMS)
    → FECompUltimoAutorizado (last = 41)
    → FEParamGetCondicionIvaReceptor (class B → Consumidor Final)
    → FECAESolicitar (voucher 42)
    → 200 {CAE, CAEFchVto, voucherNumber}
"""

from __future__ import annotations

import base64
from collections.abc import Iterator
from datetime import date
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
import respx
from asn1crypto import cms
from fastapi.testclient import TestClient
from lxml import etree

from afip_invoicer import asgi
from afip_invoicer.adapters.wsfe import WSFE_NAMESPACE
from afip_invoicer.config import (
    AppSettings,
    CertificateSettings,
    TaxpayerSettings,
    WsaaSettings,
    WsfeSettings,
)
from afip_invoicer.domain.models import InvoiceRequest
from afip_invoicer.main import create_services
from tests.conftest import login_ticket_response, soap_envelope, soap_fault

WSAA_URL = "https://wsaahomo.example.test/ws/services/LoginCms"
WSFE_URL = "https://wswhomo.example.test/wsfev1/service.asmx"
CUIT = "20123456786"
SALES_POINT = 3


def _wsfe_response(operation: str, result: str) -> str:
    return soap_envelope(
        f'<{operation}Response xmlns="{WSFE_NAMESPACE}">'
        f"<{operation}Result>{result}</{operation}Result>"
        f"</{operation}Response>"
    )


class FakeWsfe:
    """Answers the three WSFEv1 operations and records what was submitted."""

    def __init__(self, last_number: int = 41, condition_class: str = "B") -> None:
        self.last_number = last_number
        self.condition_class = condition_class
        self.operations: list[str] = []
        self.submitted: list[etree._Element] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        root = etree.fromstring(request.content)
        body = root.find("{http://schemas.xmlsoap.org/soap/envelope/}Body")
        operation_element = body[0]
        operation = etree.QName(operation_element).localname
        self.operations.append(operation)

        if operation == "FECompUltimoAutorizado":
            return httpx.Response(
                200,
                text=_wsfe_response(
                    operation,
                    f"<PtoVta>{SALES_POINT}</PtoVta><CbteTipo>6</CbteTipo>"
                    f"<CbteNro>{self.last_number}</CbteNro>",
                ),
            )
        if operation == "FEParamGetCondicionIvaReceptor":
            return httpx.Response(
                200,
                text=_wsfe_response(
                    operation,
                    "<ResultGet><CondicionIvaReceptor>"
                    f"<Id>5</Id><Desc>Consumidor Final</Desc><Cmp_Clase>{self.condition_class}</Cmp_Clase>"
                    "</CondicionIvaReceptor></ResultGet>",
                ),
            )
        if operation == "FECAESolicitar":
            self.submitted.append(operation_element)
            number = self.last_number + 1
            self.last_number = number
            return httpx.Response(
                200,
                text=_wsfe_response(
                    operation,
                    "<FeCabResp><Resultado>A</Resultado></FeCabResp>"
                    "<FeDetResp><FECAEDetResponse>"
                    f"<CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta>"
                    "<Resultado>A</Resultado><CAE>12345678901234</CAE><CAEFchVto>20261029</CAEFchVto>"
                    "</FECAEDetResponse></FeDetResp>",
                ),
            )
        return httpx.Response(500, text=soap_fault("Client", f"unknown operation {operation}"))


def _settings(key_material: tuple[Path, Path]) -> AppSettings:
    key_path, cert_path = key_material
    return AppSettings(
        taxpayer=TaxpayerSettings(cuit=CUIT, sales_point=SALES_POINT),
        certificates=CertificateSettings(private_key_path=key_path, certificate_path=cert_path),
        wsaa=WsaaSettings(url=WSAA_URL),
        wsfe=WsfeSettings(url=WSFE_URL),
    )


@pytest.fixture()
def app_env(monkeypatch: pytest.MonkeyPatch, key_material: tuple[Path, Path]) -> None:
    key_path, cert_path = key_material
    monkeypatch.setenv("TAXPAYER__CUIT", CUIT)
    monkeypatch.setenv("TAXPAYER__SALES_POINT", str(SALES_POINT))
    monkeypatch.setenv("CERTIFICATES__PRIVATE_KEY_PATH", str(key_path))
    monkeypatch.setenv("CERTIFICATES__CERTIFICATE_PATH", str(cert_path))
    monkeypatch.setenv("WSAA__URL", WSAA_URL)
    monkeypatch.setenv("WSFE__URL", WSFE_URL)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")


@pytest.fixture()
def fake_wsfe() -> FakeWsfe:
    return FakeWsfe()


@pytest.fixture()
def mocked_afip(fake_wsfe: FakeWsfe) -> Iterator[respx.MockRouter]:
    with respx.mock(assert_all_called=False) as router:
        router.post(WSAA_URL).mock(return_value=httpx.Response(200, text=login_ticket_response()))
        router.post(WSFE_URL).mock(side_effect=fake_wsfe)
        yield router


class TestTicketEndToEnd:
    """Full HTTP round trip with the application lifespan running."""

    def test_test_ticket_is_authorized(
        self, app_env: None, mocked_afip: respx.MockRouter, fake_wsfe: FakeWsfe
    ) -> None:
        """
        GIVEN WSAA grants a ticket and WSFE reports last voucher 41
        WHEN POST /afip/ticket-test is called
        THEN 200 with CAE 12345678901234, expiry 2026-10-29 and voucher 42.
        """
        with TestClient(asgi.app) as client:
            response = client.post("/afip/ticket-test")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["CAE"] == "12345678901234"
        assert data["CAEFchVto"] == "2026-10-29"
        assert data["voucherNumber"] == 42
        assert data["montoNeto"] == 82.64
        assert data["montoIVA"] == 17.36
        assert fake_wsfe.operations == [
            "FECompUltimoAutorizado",
            "FEParamGetCondicionIvaReceptor",
            "FECAESolicitar",
        ]

    def test_submitted_request_matches_invoice(
        self, app_env: None, mocked_afip: respx.MockRouter, fake_wsfe: FakeWsfe
    ) -> None:
        """
        GIVEN a 100.00 final consumer invoice
        WHEN it is issued
        THEN FECAESolicitar carries Auth, FeCabReq and a detail numbered 42
        with DocTipo 99, DocNro 0, the VAT split and receiver condition 5.
        """
        with TestClient(asgi.app) as client:
            client.post("/afip/ticket", json={"doctipo": 99, "docnro": 777, "monto": 100, "tipfac": 6})

        ns = {"f": WSFE_NAMESPACE}
        submitted = fake_wsfe.submitted[0]
        assert submitted.findtext("f:Auth/f:Token", namespaces=ns) == "TOKEN"
        assert submitted.findtext("f:Auth/f:Cuit", namespaces=ns) == CUIT
        header = submitted.find("f:FeCAEReq/f:FeCabReq", namespaces=ns)
        assert header.findtext("f:CantReg", namespaces=ns) == "1"
        assert header.findtext("f:PtoVta", namespaces=ns) == str(SALES_POINT)
        assert header.findtext("f:CbteTipo", namespaces=ns) == "6"

        detail = submitted.find("f:FeCAEReq/f:FeDetReq/f:FECAEDetRequest", namespaces=ns)
        expected = {
            "DocTipo": "99",
            "DocNro": "0",
            "CbteDesde": "42",
            "CbteHasta": "42",
            "ImpTotal": "100.00",
            "ImpNeto": "82.64",
            "ImpIVA": "17.36",
            "MonId": "PES",
            "CondicionIVAReceptorId": "5",
        }
        for field, value in expected.items():
            assert detail.findtext(f"f:{field}", namespaces=ns) == value, field
        assert detail.findtext("f:Iva/f:AlicIva/f:Id", namespaces=ns) == "5"

    def test_ineligible_receiver_is_not_submitted(
        self, app_env: None, mocked_afip: respx.MockRouter, fake_wsfe: FakeWsfe
    ) -> None:
        fake_wsfe.condition_class = "A"

        with TestClient(asgi.app) as client:
            response = client.post("/afip/ticket-test")

        assert response.status_code == 500
        assert response.json()["error_code"] == "BUSINESS_RULE_ERROR"
        assert "FECAESolicitar" not in fake_wsfe.operations


class TestServicesEndToEnd:
    """The wired services without the HTTP layer."""

    @pytest.mark.anyio
    async def test_login_sends_signed_ticket_and_is_reused(
        self,
        key_material: tuple[Path, Path],
        mocked_afip: respx.MockRouter,
        fake_wsfe: FakeWsfe,
    ) -> None:
        """
        GIVEN the real signer and a WSAA mock
        WHEN two invoices are issued in a row
        THEN loginCms is called once with a CMS container for "wsfe",
        and the vouchers are 42 and 43.
        """
        async with httpx.AsyncClient() as http_client:
            services = create_services(_settings(key_material), http_client)
            first = await services.issuer.issue_request(_request())
            second = await services.issuer.issue_request(_request())

        assert (first.voucher_number, second.voucher_number) == (42, 43)
        assert first.cae_expiry == date(2026, 10, 29)

        wsaa_calls = [call for call in mocked_afip.calls if str(call.request.url) == WSAA_URL]
        assert len(wsaa_calls) == 1
        envelope = etree.fromstring(wsaa_calls[0].request.content)
        in0 = envelope.findtext(".//{http://wsaa.view.sua.dvadac.desein.afip.gov}in0")
        content_info = cms.ContentInfo.load(base64.b64decode(in0))
        ticket = etree.fromstring(content_info["content"]["encap_content_info"]["content"].native)
        assert ticket.findtext("service") == "wsfe"


def _request() -> InvoiceRequest:
    return InvoiceRequest(invoice_type=6, doc_type=99, doc_number=0, amount=Decimal("100"))
