"""
WSAA adapter — session credentials for AFIP web services.

Adapter layer — implements the CredentialProvider port.

Authentication flow per service:
  1. SessionCredentialCache hit → return it (no network call)
  2. SignedTicketBuilder → base64 CMS → loginCms(in0=cms)
  3. loginCmsReturn (an XML string) → credentials/token + credentials/sign
  4. cache and return

Already-authenticated recovery: WSAA refuses a second login while a ticket
for the same service is still open and answers with the SOAP fault
`coe.alreadyAuthenticated`. When the fault detail carries token/sign they
are used as-is; otherwise the whole cache is cleared and the login is tried
exactly once more. Recovery is never a loop.

Logins are single-flight per service so concurrent requests on a cold cache
do not trigger the already-authenticated fault against each other.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog
from lxml import etree
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from afip_invoicer.adapters.credential_cache import SessionCredentialCache
from afip_invoicer.domain.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    RemoteCallError,
    RemoteTimeoutError,
    SoapFault,
)
from afip_invoicer.domain.models import SessionCredential
from afip_invoicer.domain.ports import RemoteCaller, TicketSigner

log = structlog.get_logger()

T = TypeVar("T")

WSAA_NAMESPACE = "http://wsaa.view.sua.dvadac.desein.afip.gov"


def _is_already_authenticated(exc: BaseException) -> bool:
    return isinstance(exc, SoapFault) and exc.is_already_authenticated


def parse_login_response(response: Mapping[str, Any]) -> tuple[str, str]:
    """
    Extract (token, sign) from a loginCms response.

    Raises InvalidCredentialsError when either is missing and
    AuthenticationError when the embedded ticket response is not XML.
    """
    ticket_xml = response.get("loginCmsReturn")
    if not ticket_xml:
        raise InvalidCredentialsError("loginCms response has no loginCmsReturn")

    try:
        root = etree.fromstring(str(ticket_xml).encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise AuthenticationError(f"loginTicketResponse is not valid XML: {exc}") from exc

    token = (root.findtext("credentials/token") or "").strip()
    sign = (root.findtext("credentials/sign") or "").strip()
    if not token or not sign:
        raise InvalidCredentialsError("loginTicketResponse lacks credentials token or sign")
    return token, sign


class AuthenticationClient:
    """Obtain and cache WSAA credentials; implements the CredentialProvider port."""

    def __init__(
        self,
        signer: TicketSigner,
        caller: RemoteCaller,
        cache: SessionCredentialCache,
    ) -> None:
        self._signer = signer
        self._caller = caller
        self._cache = cache
        self._login_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def authenticate(self, service: str) -> SessionCredential:
        """
        Return a valid credential for `service`.

        Raises SigningError (fatal), RemoteTimeoutError, InvalidCredentialsError
        or AuthenticationError.
        """
        cached = self._cache.get(service)
        if cached is not None:
            return cached

        async with self._login_locks[service]:
            cached = self._cache.get(service)
            if cached is not None:
                return cached

            credential = await self._attempt_login(service)
            if credential is None:
                log.warning("wsaa.recovery_started", service=service)
                self._cache.clear()
                credential = await self._attempt_login(service)
            if credential is None:
                raise AuthenticationError(
                    f"WSAA reports an active session for {service} and returned no credentials"
                )
            return credential

    async def call_with_session(
        self,
        service: str,
        call: Callable[[SessionCredential], Awaitable[T]],
    ) -> T:
        """
        Run `call` with a credential for `service`.

        If the remote service answers with an already-authenticated fault the
        cache is cleared, a new credential is obtained and `call` runs exactly
        once more. A second fault is raised as AuthenticationError.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception(_is_already_authenticated),
            before_sleep=self._reset_sessions,
            reraise=True,
        )
        try:
            return await retrying(self._call_once, service, call)
        except SoapFault as fault:
            if fault.is_already_authenticated:
                raise AuthenticationError(
                    f"{service} kept reporting an active session after recovery"
                ) from fault
            raise

    async def _call_once(
        self,
        service: str,
        call: Callable[[SessionCredential], Awaitable[T]],
    ) -> T:
        credential = await self.authenticate(service)
        return await call(credential)

    async def _attempt_login(self, service: str) -> SessionCredential | None:
        """
        One loginCms round trip.

        Returns None only for an already-authenticated fault without
        credentials in its detail; the caller decides whether to retry.
        """
        try:
            return await self._login(service)
        except SoapFault as fault:
            if not fault.is_already_authenticated:
                raise AuthenticationError(f"WSAA login for {service} failed: {fault}") from fault
            log.info("wsaa.already_authenticated", service=service)
            return self._credential_from_fault(service, fault)
        except RemoteTimeoutError:
            raise
        except RemoteCallError as exc:
            raise AuthenticationError(f"WSAA login for {service} failed: {exc}") from exc

    async def _login(self, service: str) -> SessionCredential:
        # key loading and RSA signing run off the event loop
        assertion = await asyncio.to_thread(self._signer.build, service)
        response = await self._caller.call("loginCms", {"in0": assertion})
        token, sign = parse_login_response(response)
        credential = self._cache.put(
            SessionCredential(service=service, token=token, sign=sign, issued_at=datetime.now(UTC))
        )
        log.info("wsaa.login_succeeded", service=service)
        return credential

    def _credential_from_fault(self, service: str, fault: SoapFault) -> SessionCredential | None:
        token = fault.detail.get("token")
        sign = fault.detail.get("sign")
        if not isinstance(token, str) or not isinstance(sign, str) or not token or not sign:
            return None
        log.info("wsaa.credentials_recovered_from_fault", service=service)
        return self._cache.put(
            SessionCredential(service=service, token=token, sign=sign, issued_at=datetime.now(UTC))
        )

    def _reset_sessions(self, retry_state: RetryCallState) -> None:
        log.warning(
            "wsaa.session_rejected",
            attempt=retry_state.attempt_number,
            action="clearing credential cache",
        )
        self._cache.clear()
