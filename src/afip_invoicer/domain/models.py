"""
Domain models — immutable values exchanged between the invoicing components.

Session credentials and login tickets belong to the WSAA side; the invoice
header, lines, VAT breakdown and authorization result mirror the WSFE
FECAESolicitar structures (FeCabReq, FECAEDetRequest, FECAEDetResponse)
with Python names.

All models are frozen dataclasses. The issuer derives new lines with
dataclasses.replace() rather than mutating them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from afip_invoicer.domain.errors import RemoteCallError

CENT = Decimal("0.01")
VAT_21_RATE = Decimal("1.21")
VAT_21_ID = 5
FINAL_CONSUMER_DOC_TYPE = 99
CURRENCY_PESOS = "PES"
CONCEPT_PRODUCTS = 1

TICKET_WINDOW = timedelta(minutes=10)


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_afip_date(value: object) -> date | None:
    """
    Parse a date as the gateway sends it: "20261019", "2026-10-19" or an
    ISO timestamp. Empty values and the literal "NULL" mean no date.
    Anything else raises RemoteCallError.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.upper() == "NULL":
        return None
    try:
        if len(text) == 8 and text.isdigit():
            return datetime.strptime(text, "%Y%m%d").date()
        return datetime.fromisoformat(text[:10]).date()
    except ValueError as exc:
        raise RemoteCallError(f"Unparsable date from gateway: {text!r}") from exc


def invoice_class_for(invoice_type: int) -> str:
    """Factura A (type 1) is class 'A'; every other supported type is class 'B'."""
    return "A" if invoice_type == 1 else "B"


# ─────────────────────── WSAA ───────────────────────


@dataclass(frozen=True, slots=True)
class SessionCredential:
    """
    Token + sign pair proving an open WSAA session for one service.

    Owned by SessionCredentialCache; a refresh creates a new instance.
    """

    service: str
    token: str = field(repr=False)
    sign: str = field(repr=False)
    issued_at: datetime


@dataclass(frozen=True, slots=True)
class LoginTicketRequest:
    """
    The TRA (ticket de requerimiento de acceso) signed for every login attempt.

    Valid from ten minutes in the past to ten minutes in the future so that
    moderate clock skew with the gateway is tolerated.
    """

    unique_id: int
    generation_time: datetime
    expiration_time: datetime
    service: str

    @classmethod
    def for_service(cls, service: str, now: datetime) -> LoginTicketRequest:
        return cls(
            unique_id=int(now.timestamp()),
            generation_time=now - TICKET_WINDOW,
            expiration_time=now + TICKET_WINDOW,
            service=service,
        )


# ─────────────────────── Receiver VAT conditions ───────────────────────


@dataclass(frozen=True, slots=True)
class ReceiverConditionRef:
    """The {Id, Desc} pair attached to each invoice line."""

    id: int
    description: str


@dataclass(frozen=True, slots=True)
class ReceiverTaxCondition:
    """
    One entry of FEParamGetCondicionIvaReceptor.

    `invoice_class` is the Cmp_Clase value; the gateway may list several
    classes separated by "/" (e.g. "A/M/C"). A null `valid_to` means the
    condition is open ended.
    """

    id: int
    description: str
    invoice_class: str
    valid_from: date | None = None
    valid_to: date | None = None

    def applies_to(self, invoice_class: str) -> bool:
        classes = {part.strip().upper() for part in self.invoice_class.split("/")}
        return invoice_class.upper() in classes

    def is_expired(self, today: date) -> bool:
        return self.valid_to is not None and self.valid_to < today

    def as_ref(self) -> ReceiverConditionRef:
        return ReceiverConditionRef(id=self.id, description=self.description)


# ─────────────────────── Invoices ───────────────────────


@dataclass(frozen=True, slots=True)
class VatRate:
    """One AlicIva entry: VAT code, taxable base and VAT amount."""

    id: int
    base_amount: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class InvoiceHeader:
    """FeCabReq — `line_count` must equal the number of lines submitted."""

    invoice_type: int
    line_count: int
    sales_point: int

    @property
    def invoice_class(self) -> str:
        return invoice_class_for(self.invoice_type)


@dataclass(frozen=True, slots=True)
class InvoiceLine:
    """
    FECAEDetRequest — one voucher (or range of vouchers) to authorize.

    `voucher_from`/`voucher_to` and `receiver_tax_condition` are filled in by
    the issuer; callers build lines without them.
    """

    doc_type: int
    doc_number: int
    date: date
    total_amount: Decimal
    net_amount: Decimal
    vat_amount: Decimal
    concept: int = CONCEPT_PRODUCTS
    exempt_amount: Decimal = Decimal("0")
    non_taxed_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    currency_id: str = CURRENCY_PESOS
    currency_rate: Decimal = Decimal("1")
    vat_breakdown: tuple[VatRate, ...] = ()
    voucher_from: int | None = None
    voucher_to: int | None = None
    receiver_tax_condition: ReceiverConditionRef | None = None


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    cae: str
    cae_expiry: date | None
    voucher_number: int


@dataclass(frozen=True, slots=True)
class InvoiceRequest:
    """
    A validated single-amount invoice request as received from the API.

    The amount is VAT-inclusive at 21 %: net = amount / 1.21 and
    vat = amount - net, both rounded to the cent, so net + vat == amount.
    """

    invoice_type: int
    doc_type: int
    doc_number: int
    amount: Decimal

    @property
    def net_amount(self) -> Decimal:
        return round_cents(self.amount / VAT_21_RATE)

    @property
    def vat_amount(self) -> Decimal:
        return round_cents(self.amount - self.net_amount)

    def to_invoice(
        self,
        sales_point: int,
        issue_date: date,
    ) -> tuple[InvoiceHeader, list[InvoiceLine]]:
        net = self.net_amount
        vat = self.vat_amount
        header = InvoiceHeader(
            invoice_type=self.invoice_type,
            line_count=1,
            sales_point=sales_point,
        )
        line = InvoiceLine(
            doc_type=self.doc_type,
            doc_number=self.doc_number,
            date=issue_date,
            total_amount=round_cents(self.amount),
            net_amount=net,
            vat_amount=vat,
            vat_breakdown=(VatRate(id=VAT_21_ID, base_amount=net, amount=vat),),
        )
        return header, [line]


@dataclass(frozen=True, slots=True)
class TaxpayerProfile:
    """Public registry data for a CUIT (padrón A5, getPersona_v2)."""

    cuit: str
    name: str
    person_type: str | None
    vat_condition: str
    suggested_invoice_type: int
    address: str | None = None
    locality: str | None = None
    province: str | None = None
    postal_code: str | None = None
