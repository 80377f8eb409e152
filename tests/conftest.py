"""
Shared test fixtures and helpers for the afip-invoicer test suite.

Provides throwaway key material (RSA key + self-signed certificate written
as PEM files), SOAP response builders for the WSAA/WSFE mocks, and the
anyio backend used by the async tests.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TypeVar

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from afip_invoicer.domain.models import SessionCredential

T = TypeVar("T")

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def key_material(tmp_path: Path) -> tuple[Path, Path]:
    """Write an RSA private key and a matching self-signed certificate; return their paths."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "AR"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Taxpayer"),
            x509.NameAttribute(NameOID.COMMON_NAME, "invoicer-test"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "CUIT 20123456786"),
        ]
    )
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )

    key_path = tmp_path / "key.pem"
    cert_path = tmp_path / "cert.pem"
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    return key_path, cert_path


def make_credential(
    service: str = "wsfe",
    token: str = "TOKEN",
    sign: str = "SIGN",
    issued_at: datetime | None = None,
) -> SessionCredential:
    return SessionCredential(
        service=service,
        token=token,
        sign=sign,
        issued_at=issued_at or datetime.now(UTC),
    )


def soap_envelope(body: str) -> str:
    """Wrap `body` in a SOAP 1.1 envelope."""
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP_ENV}"><soap:Body>{body}</soap:Body></soap:Envelope>'
    )


def soap_fault(fault_code: str, fault_string: str, detail: str = "") -> str:
    """A SOAP 1.1 Fault envelope; `detail` is inserted verbatim inside <detail>."""
    detail_xml = f"<detail>{detail}</detail>" if detail else ""
    return soap_envelope(
        "<soap:Fault>"
        f'<faultcode xmlns:ns1="http://xml.apache.org/axis/">ns1:{fault_code}</faultcode>'
        f"<faultstring>{fault_string}</faultstring>"
        f"{detail_xml}"
        "</soap:Fault>"
    )


def login_ticket_response(token: str = "TOKEN", sign: str = "SIGN") -> str:
    """The loginCms response, with the ticket response escaped inside loginCmsReturn."""
    ticket = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<loginTicketResponse version="1.0">'
        "<header><source>CN=wsaa</source><destination>CN=invoicer-test</destination>"
        "<uniqueId>1</uniqueId><generationTime>2026-10-19T10:00:00-03:00</generationTime>"
        "<expirationTime>2026-10-19T22:00:00-03:00</expirationTime></header>"
        f"<credentials><token>{token}</token><sign>{sign}</sign></credentials>"
        "</loginTicketResponse>"
    )
    escaped = ticket.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return soap_envelope(
        '<loginCmsResponse xmlns="http://wsaa.view.sua.dvadac.desein.afip.gov">'
        f"<loginCmsReturn>{escaped}</loginCmsReturn>"
        "</loginCmsResponse>"
    )


class StaticCredentials:
    """CredentialProvider stub that hands the same credential to every call."""

    def __init__(self, credential: SessionCredential | None = None) -> None:
        self.credential = credential or make_credential()
        self.services: list[str] = []

    async def authenticate(self, service: str) -> SessionCredential:
        self.services.append(service)
        return self.credential

    async def call_with_session(
        self,
        service: str,
        call: Callable[[SessionCredential], Awaitable[T]],
    ) -> T:
        return await call(await self.authenticate(service))
