"""
WSAA login client.

Exchanges a signed login ticket request for a token/sign pair and keeps the
result in the TokenCache.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import httpx

from arca_mcp.api.client import DEFAULT_TIMEOUT, SoapClient
from arca_mcp.api.models import AccountConfig, CachedToken, LoginResponse
from arca_mcp.config import Environment
from arca_mcp.errors import (
    AuthenticationError,
    CertificateFormatError,
    StaleTokenStateError,
    TransportError,
)
from arca_mcp.token_cache import TokenCache
from arca_mcp.utils.parsers import parse_login_response
from arca_mcp.utils.signing import sign_ticket_request
from arca_mcp.utils.xml_builder import build_login_envelope, build_ticket_request

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(hours=12)


class WSAAClient(SoapClient):
    """Client for the WSAA loginCms operation."""

    def __init__(
        self,
        token_cache: TokenCache,
        environment: Environment = Environment.TESTING,
        service: str = "wsfe",
        timeout: float = DEFAULT_TIMEOUT,
        default_ttl: timedelta = DEFAULT_TOKEN_TTL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(environment, timeout, transport)
        self.token_cache = token_cache
        self.service = service
        self.default_ttl = default_ttl
        self.url = environment.endpoints.wsaa

    async def login(self, account: AccountConfig) -> LoginResponse:
        """
        Sign a fresh ticket request and send it to loginCms.

        Does not touch the cache. Use ``get_token`` for the cached flow.

        Raises:
            CertificateFormatError: certificate or key missing/unreadable
            SigningError: envelope could not be signed
            TransportError: network failure or unreadable response
        """
        if not account.has_signing_material:
            raise CertificateFormatError("Certificate or private key not configured")

        tra = build_ticket_request(self.service)
        cms = sign_ticket_request(tra, account.certificate, account.private_key)
        response = await self._post(self.url, build_login_envelope(cms), soap_action="")

        parsed = parse_login_response(response.text)
        if parsed.ticket is None and parsed.fault is None and response.is_error:
            raise TransportError(f"WSAA returned HTTP {response.status_code}")
        return parsed

    async def get_token(self, account: AccountConfig, force: bool = False) -> CachedToken:
        """
        Return a usable token for the account, logging in only when needed.

        Runs under the account's cache lock. When WSAA answers that a valid
        ticket already exists, the cached one is returned even if the local
        clock thinks it has expired.

        Args:
            account: Account with signing material
            force: Skip the cache check and always call loginCms

        Raises:
            AuthenticationError: WSAA rejected the request
            StaleTokenStateError: WSAA has a ticket we never stored; retry later
        """
        async with self.token_cache.lock(account.id):
            entry = self.token_cache.get(account.id)
            if not force and self.token_cache.is_valid(entry):
                return entry

            logger.info("Requesting WSAA ticket for account %s (%s)", account.id, self.environment.value)
            response = await self.login(account)

            if response.ticket is not None:
                expiration = response.ticket.expiration or (
                    datetime.now(timezone.utc) + self.default_ttl
                )
                return self.token_cache.set(
                    account.id, response.ticket.token, response.ticket.sign, expiration
                )

            if response.already_authenticated:
                if entry is not None:
                    logger.warning(
                        "WSAA reports a valid ticket for account %s; reusing cached one "
                        "that expires %s",
                        account.id, entry.expiration.isoformat(),
                    )
                    return entry
                raise StaleTokenStateError(
                    "WSAA reports an active ticket that is not cached locally; "
                    "retry once it expires"
                )

            if response.fault:
                logger.error("WSAA rejected login for account %s: %s", account.id, response.fault)
                raise AuthenticationError(response.fault)
            raise AuthenticationError("WSAA response contains neither a ticket nor a fault")
