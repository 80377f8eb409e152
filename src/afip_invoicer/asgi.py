"""
FastAPI + Uvicorn ASGI application — the HTTP front door of the invoicer.

Architecture:
  - FastAPI: request validation (pydantic) and routing
  - lifespan: builds the object graph once (main.create_services), starts the
    credential sweeper and closes the shared httpx client on shutdown
  - every core failure is logged with its ErrorCode and answered with a
    generic failure body; RemoteBusinessError also exposes the AFIP code and
    message so callers can act on it

Entry point for production: uvicorn afip_invoicer.asgi:app --host 0.0.0.0 --port 5001
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Literal

import httpx
import structlog
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from afip_invoicer import __version__
from afip_invoicer.config import AppSettings
from afip_invoicer.domain.errors import ErrorCode, InvoicingError, RemoteBusinessError
from afip_invoicer.domain.models import (
    FINAL_CONSUMER_DOC_TYPE,
    AuthorizationResult,
    InvoiceRequest,
)
from afip_invoicer.main import Services, configure_structlog, create_services
from afip_invoicer.scheduler import create_sweeper

# ─────────────────────── Global State ───────────────────────
# Set during app startup; tests assign a Services stub directly.

_services: Services | None = None
_error_message: str | None = None
log = structlog.get_logger()

TEST_TICKET_AMOUNT = Decimal("100")

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.TIMEOUT_ERROR: 504,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: load settings, wire services, start the sweeper.
    Shutdown: stop the sweeper and close the HTTP client.
    """
    global _services, _error_message

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)

    http_client = httpx.AsyncClient()
    _services = create_services(settings, http_client)
    sweeper = create_sweeper(_services.cache, settings.cache.sweep_interval_seconds)
    sweeper.start()
    log.info("asgi.startup_complete", sales_point=settings.taxpayer.sales_point)

    try:
        yield
    finally:
        log.info("asgi.shutdown")
        sweeper.shutdown(wait=False)
        await http_client.aclose()
        _services = None
        log.info("asgi.shutdown_complete")


app = FastAPI(
    title="afip-invoicer",
    description="Electronic invoice issuing (CAE) against AFIP/ARCA web services",
    version=__version__,
    lifespan=lifespan,
)


# ─────────────────────── Request models ───────────────────────


class TicketRequest(BaseModel):
    """Body of POST /afip/ticket; final consumers (doctipo 99) always get docnro 0."""

    doctipo: int = Field(ge=0)
    docnro: int = Field(default=0, ge=0)
    monto: Decimal = Field(gt=0, decimal_places=2)
    tipfac: Literal[1, 6]

    @model_validator(mode="after")
    def check_document(self) -> TicketRequest:
        if self.doctipo == FINAL_CONSUMER_DOC_TYPE:
            self.docnro = 0
        elif self.docnro <= 0:
            raise ValueError("Invalid document number")
        return self

    def to_invoice_request(self) -> InvoiceRequest:
        return InvoiceRequest(
            invoice_type=self.tipfac,
            doc_type=self.doctipo,
            doc_number=self.docnro,
            amount=self.monto,
        )


# ─────────────────────── Helpers ───────────────────────


def _require_services() -> Services | JSONResponse:
    if _services is None:
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Service not initialized"},
        )
    return _services


def _failure(exc: Exception, message: str, operation: str) -> JSONResponse:
    """Log `exc` precisely and answer with a generic body."""
    if not isinstance(exc, InvoicingError):
        log.error(f"{operation}.unexpected_error", error=str(exc), exc_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"success": False, "error": message})

    log.error(
        f"{operation}.failed",
        error_code=exc.code.value,
        exc_type=type(exc).__name__,
        error=exc.message,
    )
    content: dict[str, Any] = {"success": False, "error": message, "error_code": exc.code.value}
    if isinstance(exc, RemoteBusinessError):
        content["remote_code"] = exc.remote_code
        content["remote_message"] = exc.remote_message
    return JSONResponse(status_code=_STATUS_BY_CODE.get(exc.code, 500), content=content)


def _invoice_body(result: AuthorizationResult, request: InvoiceRequest) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "CAE": result.cae,
            "CAEFchVto": result.cae_expiry.isoformat() if result.cae_expiry else None,
            "voucherNumber": result.voucher_number,
            "montoTotal": float(request.amount),
            "montoNeto": float(request.net_amount),
            "montoIVA": float(request.vat_amount),
        },
    }


async def _issue(request: InvoiceRequest) -> JSONResponse:
    services = _require_services()
    if isinstance(services, JSONResponse):
        return services
    try:
        result = await services.issuer.issue_request(request)
    except Exception as e:
        return _failure(e, "Error issuing invoice", "ticket")
    log.info(
        "ticket.issued",
        cae=result.cae,
        voucher_number=result.voucher_number,
        amount=str(request.amount),
    )
    return JSONResponse(status_code=200, content=_invoice_body(result, request))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": detail})


# ─────────────────────── Endpoints ───────────────────────


@app.get("/")
async def index() -> dict[str, Any]:
    return {
        "name": "AFIP/ARCA invoicing API",
        "version": __version__,
        "endpoints": {
            "POST /afip/ticket": "Issue an electronic invoice",
            "POST /afip/ticket-test": "Test invoice ($100, final consumer)",
            "GET /afip/contribuyente?cuit=XX": "Taxpayer lookup",
            "GET /afip/condicion-iva": "Receiver VAT conditions",
        },
    }


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe — unhealthy when startup failed or services are not wired."""
    if _error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )
    if _services is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "services not initialized"},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "cached_credentials": len(_services.cache)},
    )


@app.post("/afip/ticket")
async def issue_ticket(body: TicketRequest) -> JSONResponse:
    return await _issue(body.to_invoice_request())


@app.post("/afip/ticket-test")
async def issue_test_ticket() -> JSONResponse:
    """Issue a fixed 100.00 Factura B to a final consumer."""
    log.info("ticket.test_requested")
    return await _issue(
        InvoiceRequest(
            invoice_type=6,
            doc_type=FINAL_CONSUMER_DOC_TYPE,
            doc_number=0,
            amount=TEST_TICKET_AMOUNT,
        )
    )


@app.get("/afip/contribuyente")
async def taxpayer(cuit: str | None = Query(default=None)) -> JSONResponse:
    if not cuit:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "The 'cuit' parameter is required"},
        )
    digits = cuit.replace("-", "").replace(" ", "")
    if len(digits) != 11 or not digits.isdigit():
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "CUIT must have 11 digits"},
        )

    services = _require_services()
    if isinstance(services, JSONResponse):
        return services
    try:
        profile = await services.registry.lookup(digits)
    except Exception as e:
        return _failure(e, "Error querying AFIP", "taxpayer")

    if profile is None:
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": "Taxpayer not found"},
        )
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "data": {
                "razonSocial": profile.name,
                "cuit": profile.cuit,
                "tipoPersona": profile.person_type,
                "condicionIVA": profile.vat_condition,
                "tipoFactura": profile.suggested_invoice_type,
                "domicilio": profile.address,
                "localidad": profile.locality,
                "provincia": profile.province,
                "codigoPostal": profile.postal_code,
            },
        },
    )


@app.get("/afip/condicion-iva")
async def receiver_conditions(clase: str | None = Query(default=None)) -> JSONResponse:
    invoice_class = clase.upper() if clase else None
    if invoice_class is not None and invoice_class not in ("A", "B"):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Class must be A or B"},
        )

    services = _require_services()
    if isinstance(services, JSONResponse):
        return services
    try:
        conditions = await services.eligibility.list_conditions(invoice_class)
    except Exception as e:
        return _failure(e, "Error querying VAT conditions", "receiver_conditions")

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "data": [
                {
                    "Id": condition.id,
                    "Desc": condition.description,
                    "Cmp_Clase": condition.invoice_class,
                    "FechaDesde": condition.valid_from.isoformat() if condition.valid_from else None,
                    "FechaHasta": condition.valid_to.isoformat() if condition.valid_to else None,
                }
                for condition in conditions
            ],
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("afip_invoicer.asgi:app", host="0.0.0.0", port=5001, log_level="info")
