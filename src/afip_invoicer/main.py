"""
Application entry point — composition root and server launcher.

This is the ONLY place where concrete adapters are instantiated; the
services depend on the Protocol ports in domain.ports.

Responsibilities:
  1. Configure structlog
  2. Build the object graph from AppSettings: one credential cache, one
     signer, one SOAP client per endpoint, WSAA/WSFE/registry adapters and
     the invoicing services
  3. Launch uvicorn with the FastAPI app (afip_invoicer.asgi:app)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import timedelta

import httpx
import structlog

from afip_invoicer.adapters.credential_cache import SessionCredentialCache
from afip_invoicer.adapters.registry import REGISTRY_NAMESPACE, TaxpayerRegistry, mask_cuit
from afip_invoicer.adapters.soap import SoapClient
from afip_invoicer.adapters.ticket_signer import SignedTicketBuilder
from afip_invoicer.adapters.wsaa import WSAA_NAMESPACE, AuthenticationClient
from afip_invoicer.adapters.wsfe import WSFE_NAMESPACE, WsfeClient
from afip_invoicer.config import AppSettings
from afip_invoicer.eligibility import ReceiverEligibilityChecker
from afip_invoicer.issuer import InvoiceIssuer
from afip_invoicer.sequencer import VoucherSequencer


def configure_structlog(log_level: str = "INFO") -> None:
    """Configure structlog for structured console logging at `log_level`."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True)
class Services:
    """The wired object graph handed to the HTTP layer."""

    cache: SessionCredentialCache
    authentication: AuthenticationClient
    sequencer: VoucherSequencer
    eligibility: ReceiverEligibilityChecker
    issuer: InvoiceIssuer
    registry: TaxpayerRegistry


def create_services(settings: AppSettings, http_client: httpx.AsyncClient) -> Services:
    """
    Instantiate every adapter and service from application settings.

    `http_client` is shared by all SOAP clients and owned by the caller.
    """
    timeout = settings.http_timeout_seconds
    invoicing_service = settings.wsaa.invoicing_service

    cache = SessionCredentialCache(
        validity=timedelta(minutes=settings.cache.validity_minutes),
    )
    signer = SignedTicketBuilder(
        private_key_path=settings.certificates.private_key_path,
        certificate_path=settings.certificates.certificate_path,
    )
    authentication = AuthenticationClient(
        signer=signer,
        caller=SoapClient(settings.wsaa.url, WSAA_NAMESPACE, http_client, timeout=timeout),
        cache=cache,
    )
    gateway = WsfeClient(
        caller=SoapClient(
            settings.wsfe.url,
            WSFE_NAMESPACE,
            http_client,
            timeout=timeout,
            soap_action_prefix=WSFE_NAMESPACE,
        ),
        cuit=settings.taxpayer.cuit,
    )
    sequencer = VoucherSequencer(authentication, gateway, service=invoicing_service)
    eligibility = ReceiverEligibilityChecker(authentication, gateway, service=invoicing_service)
    issuer = InvoiceIssuer(
        credentials=authentication,
        gateway=gateway,
        sequencer=sequencer,
        eligibility=eligibility,
        sales_point=settings.taxpayer.sales_point,
        service=invoicing_service,
        serialize_numbering=settings.serialize_numbering,
    )
    registry = TaxpayerRegistry(
        caller=SoapClient(
            settings.registry.url,
            REGISTRY_NAMESPACE,
            http_client,
            timeout=timeout,
            qualified=False,
        ),
        credentials=authentication,
        represented_cuit=settings.taxpayer.cuit,
        service=settings.wsaa.registry_service,
    )
    return Services(
        cache=cache,
        authentication=authentication,
        sequencer=sequencer,
        eligibility=eligibility,
        issuer=issuer,
        registry=registry,
    )


def main() -> None:
    """Validate configuration and serve the API with uvicorn."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version="0.1.0",
        cuit=mask_cuit(settings.taxpayer.cuit),
        sales_point=settings.taxpayer.sales_point,
        port=settings.port,
    )

    import uvicorn

    uvicorn.run(
        "afip_invoicer.asgi:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
