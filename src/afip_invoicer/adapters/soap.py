"""
SOAP adapter — async SOAP 1.1 calls over httpx with lxml (de)serialization.

Adapter layer — implements the RemoteCaller port. A SoapClient is bound to
one endpoint and one target namespace:

  params mapping
    → <soapenv:Envelope><soapenv:Body><ns:Operation>…</ns:Operation>
    → POST (bounded timeout)
    → <OperationResponse> converted to dicts / lists / strings

Error mapping:
  - httpx.TimeoutException           → RemoteTimeoutError (not retried here)
  - connection could not be opened   → retried 3× (tenacity), then RemoteCallError
  - <soap:Fault> in the body         → SoapFault(fault_code, faultstring, detail)
  - other HTTP status / broken XML   → RemoteCallError
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date
from decimal import Decimal
from typing import Any

import httpx
import structlog
from lxml import etree
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from afip_invoicer.domain.errors import RemoteCallError, RemoteTimeoutError, SoapFault

log = structlog.get_logger()

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    return str(value)


def _append(parent: etree._Element, name: str, value: Any, namespace: str | None) -> None:
    """Append `value` under `parent`; sequences become repeated elements, None is omitted."""
    if value is None:
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append(parent, name, item, namespace)
        return
    tag = f"{{{namespace}}}{name}" if namespace else name
    element = etree.SubElement(parent, tag)
    if isinstance(value, Mapping):
        for child_name, child_value in value.items():
            _append(element, child_name, child_value, namespace)
    else:
        element.text = _to_text(value)


def element_to_data(element: etree._Element) -> Any:
    """
    Convert an element to plain data.

    Leaves become their stripped text (None when absent), elements with
    children become dicts keyed by local name, and repeated children become
    lists in document order.
    """
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return element.text.strip() if element.text is not None else None

    data: dict[str, Any] = {}
    for child in children:
        name = _local_name(child.tag)
        value = element_to_data(child)
        if name in data:
            existing = data[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                data[name] = [existing, value]
        else:
            data[name] = value
    return data


def as_list(value: Any) -> list[Any]:
    """Normalize a maybe-repeated element: None → [], single → [single]."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def build_envelope(
    operation: str,
    params: Mapping[str, Any],
    namespace: str,
    qualified: bool = True,
) -> bytes:
    """Serialize a SOAP 1.1 request for `operation` in `namespace`."""
    nsmap = {"soapenv": SOAP_ENV_NS, "ns": namespace}
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap=nsmap)
    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    request = etree.SubElement(body, f"{{{namespace}}}{operation}")
    child_namespace = namespace if qualified else None
    for name, value in params.items():
        _append(request, name, value, child_namespace)
    return etree.tostring(envelope, encoding="UTF-8", xml_declaration=True)


def parse_envelope(content: bytes) -> etree._Element:
    """
    Return the operation response element of a SOAP response body.

    Raises SoapFault when the Body holds a Fault, and RemoteCallError on
    broken XML or a missing or empty Body.
    """
    try:
        root = etree.fromstring(content)
    except etree.XMLSyntaxError as exc:
        raise RemoteCallError(f"Unparsable SOAP response: {exc}") from exc

    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if body is None:
        raise RemoteCallError("SOAP response has no Body")

    fault = body.find(f"{{{SOAP_ENV_NS}}}Fault")
    if fault is not None:
        fault_code = fault.findtext("faultcode") or ""
        detail_element = fault.find("detail")
        detail = element_to_data(detail_element) if detail_element is not None else None
        raise SoapFault(
            fault_code=fault_code.split(":")[-1].strip(),
            message=(fault.findtext("faultstring") or "").strip(),
            detail=detail if isinstance(detail, dict) else None,
        )

    payload = next((child for child in body if isinstance(child.tag, str)), None)
    if payload is None:
        raise RemoteCallError("SOAP response Body is empty")
    return payload


class SoapClient:
    """
    Call operations of one SOAP endpoint.

    Implements the RemoteCaller port. The httpx.AsyncClient is shared and
    owned by the caller (created and closed in the application lifespan).
    """

    def __init__(
        self,
        url: str,
        namespace: str,
        http_client: httpx.AsyncClient,
        timeout: float = 30.0,
        qualified: bool = True,
        soap_action_prefix: str | None = None,
    ) -> None:
        self._url = url
        self._namespace = namespace
        self._http = http_client
        self._timeout = timeout
        self._qualified = qualified
        self._soap_action_prefix = soap_action_prefix

    @property
    def url(self) -> str:
        return self._url

    async def call(self, operation: str, params: Mapping[str, Any]) -> dict[str, Any]:
        """
        Invoke `operation` and return its response element as plain data.

        Raises SoapFault, RemoteTimeoutError or RemoteCallError.
        """
        envelope = build_envelope(operation, params, self._namespace, self._qualified)
        try:
            response = await self._post(operation, envelope)
        except httpx.TimeoutException as exc:
            log.warning("soap.timeout", url=self._url, operation=operation)
            raise RemoteTimeoutError(
                f"{operation} timed out after {self._timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteCallError(f"{operation} transport error: {exc}") from exc

        if response.status_code >= 400 and response.status_code != 500:
            raise RemoteCallError(f"{operation} failed with HTTP {response.status_code}")

        try:
            payload = parse_envelope(response.content)
        except SoapFault as fault:
            log.warning(
                "soap.fault",
                operation=operation,
                fault_code=fault.fault_code,
                fault_string=fault.fault_string,
            )
            raise
        if response.status_code == 500:
            raise RemoteCallError(f"{operation} failed with HTTP 500")

        data = element_to_data(payload)
        log.debug("soap.call_completed", operation=operation, status=response.status_code)
        return data if isinstance(data, dict) else {}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=5),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _post(self, operation: str, envelope: bytes) -> httpx.Response:
        """HTTP POST with retry on connection failures only; the request was never sent."""
        soap_action = f"{self._soap_action_prefix}{operation}" if self._soap_action_prefix else ""
        return await self._http.post(
            self._url,
            content=envelope,
            headers={
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{soap_action}"',
            },
            timeout=self._timeout,
        )
