"""
Login ticket signer — builds the WSAA TRA and wraps it in CMS signed-data.

Adapter layer — implements the TicketSigner port using:
  - lxml: serialization of the loginTicketRequest document
  - cryptography (PyCA): PEM key/certificate loading and PKCS#7 signing

Pipeline:
  service name
    → LoginTicketRequest (now − 10 min … now + 10 min)
    → loginTicketRequest XML (UTF-8, with declaration)
    → PKCS#7 SignedData, SHA-256, content embedded, signer cert included
    → DER → base64 (the `in0` argument of loginCms)

Key material is re-read on every build so that rotated certificates are
picked up without a restart.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.types import CertificatePublicKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs7
from lxml import etree

from afip_invoicer.domain.errors import SigningError
from afip_invoicer.domain.models import LoginTicketRequest

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def serialize_ticket(ticket: LoginTicketRequest) -> bytes:
    """Render a LoginTicketRequest as the XML document WSAA expects."""
    root = etree.Element("loginTicketRequest", version="1.0")
    header = etree.SubElement(root, "header")
    etree.SubElement(header, "uniqueId").text = str(ticket.unique_id)
    etree.SubElement(header, "generationTime").text = ticket.generation_time.isoformat(
        timespec="seconds"
    )
    etree.SubElement(header, "expirationTime").text = ticket.expiration_time.isoformat(
        timespec="seconds"
    )
    etree.SubElement(root, "service").text = ticket.service
    return etree.tostring(root, encoding="UTF-8", xml_declaration=True)


class SignedTicketBuilder:
    """
    Sign login tickets with the taxpayer's private key and certificate.

    Implements the TicketSigner port. Any problem with the key material is
    raised as SigningError; it is never retried.
    """

    def __init__(
        self,
        private_key_path: Path,
        certificate_path: Path,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._private_key_path = Path(private_key_path)
        self._certificate_path = Path(certificate_path)
        self._clock = clock

    def build(self, service: str) -> str:
        """Return the base64 DER CMS container wrapping a fresh ticket for `service`."""
        ticket = LoginTicketRequest.for_service(service, self._clock())
        content = serialize_ticket(ticket)
        private_key, certificate = self._load_material()

        try:
            der = (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(content)
                .add_signer(certificate, private_key, hashes.SHA256())
                .sign(serialization.Encoding.DER, [])
            )
        except (TypeError, ValueError) as exc:
            raise SigningError(f"Could not sign login ticket: {exc}") from exc

        log.info("ticket.signed", service=service, unique_id=ticket.unique_id)
        return base64.b64encode(der).decode("ascii")

    def _load_material(
        self,
    ) -> tuple[rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey, x509.Certificate]:
        try:
            key_bytes = self._private_key_path.read_bytes()
            cert_bytes = self._certificate_path.read_bytes()
        except OSError as exc:
            raise SigningError(f"Key material is unreadable: {exc}") from exc

        try:
            private_key = serialization.load_pem_private_key(key_bytes, password=None)
            certificate = x509.load_pem_x509_certificate(cert_bytes)
        except (TypeError, ValueError) as exc:
            raise SigningError(f"Key material is malformed: {exc}") from exc

        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise SigningError(
                f"Unsupported private key type: {type(private_key).__name__}"
            )
        if _public_key_der(private_key.public_key()) != _public_key_der(certificate.public_key()):
            raise SigningError("Private key does not match the certificate public key")
        return private_key, certificate


def _public_key_der(key: CertificatePublicKeyTypes) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
