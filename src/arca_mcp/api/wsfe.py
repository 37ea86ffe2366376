"""
WSFEv1 client: numbering, authorization (CAE) and voucher queries.

Every operation takes a token obtained from WSAAClient.get_token. Responses
go through the typed parsers in ``utils.parsers``.
"""

from __future__ import annotations

import logging
from datetime import date

from arca_mcp.api.client import SoapClient
from arca_mcp.api.models import (
    AccountConfig,
    AssociatedVoucher,
    AuthorizationResult,
    CachedToken,
    Invoice,
    QueriedInvoice,
    ServiceStatus,
    VoucherType,
)
from arca_mcp.utils.parsers import (
    parse_authorization_response,
    parse_dummy_response,
    parse_last_authorized_response,
    parse_query_response,
)
from arca_mcp.utils.xml_builder import (
    authority_today,
    build_authorization_request,
    build_dummy_request,
    build_last_authorized_request,
    build_query_request,
    wsfe_soap_action,
)

logger = logging.getLogger(__name__)


class WSFEClient(SoapClient):
    """Client for ARCA's electronic invoicing service (WSFEv1)."""

    @property
    def url(self) -> str:
        return self.environment.endpoints.wsfe

    async def _call(self, operation: str, body: bytes) -> str:
        response = await self._post(self.url, body, soap_action=wsfe_soap_action(operation))
        return response.text

    async def dummy(self) -> ServiceStatus:
        """FEDummy: application, database and auth server status."""
        text = await self._call("FEDummy", build_dummy_request())
        return parse_dummy_response(text)

    async def last_authorized(
        self,
        account: AccountConfig,
        token: CachedToken,
        voucher_type: VoucherType,
        sales_point: int | None = None,
    ) -> int:
        """
        Last authorized number at the account's sales point.

        Returns 0 when nothing has been issued yet. Two calls with no
        authorization in between return the same number.

        Raises:
            AuthorityRejection: authority returned an error block
            TransportError: network failure or unreadable response
        """
        body = build_last_authorized_request(
            token.token, token.sign, account.cuit,
            sales_point or account.sales_point, voucher_type,
        )
        number = parse_last_authorized_response(
            await self._call("FECompUltimoAutorizado", body)
        )
        logger.debug(
            "Last authorized %s at sales point %s: %s",
            voucher_type.value, sales_point or account.sales_point, number,
        )
        return number

    async def authorize(
        self,
        account: AccountConfig,
        token: CachedToken,
        invoice: Invoice,
        number: int,
        issue_date: date | None = None,
        associated: AssociatedVoucher | None = None,
    ) -> AuthorizationResult:
        """
        Request a CAE for one voucher (FECAESolicitar).

        Business rejections come back as ``success=False`` results carrying
        the authority's message; only transport problems raise.

        Args:
            account: Issuing account
            token: Valid WSAA token
            invoice: Invoice to authorize
            number: Sequence number, normally last_authorized + 1
            issue_date: Emission date; today in authority time by default
            associated: Original voucher for credit/debit notes

        Raises:
            TransportError: network failure or unreadable response
        """
        issue_date = issue_date or authority_today()
        body = build_authorization_request(
            token.token, token.sign, account.cuit,
            invoice, number, issue_date, associated,
        )
        result = parse_authorization_response(
            await self._call("FECAESolicitar", body), number
        )
        if result.success:
            logger.info(
                "CAE %s granted for %s %s-%s",
                result.cae, invoice.voucher_type.value, invoice.sales_point, number,
            )
        else:
            logger.warning(
                "Authorization of %s %s-%s rejected: %s",
                invoice.voucher_type.value, invoice.sales_point, number, result.error_message,
            )
        return result

    async def query(
        self,
        account: AccountConfig,
        token: CachedToken,
        voucher_type: VoucherType,
        number: int,
        sales_point: int | None = None,
    ) -> QueriedInvoice:
        """
        Fetch the authority's record of one voucher (FECompConsultar).

        Raises:
            AuthorityRejection: voucher unknown or other authority error
            TransportError: network failure or unreadable response
        """
        body = build_query_request(
            token.token, token.sign, account.cuit,
            sales_point or account.sales_point, voucher_type, number,
        )
        return parse_query_response(
            await self._call("FECompConsultar", body), voucher_type
        )
