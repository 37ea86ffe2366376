"""
Base SOAP transport for ARCA web services.

Async HTTP over httpx with a bounded timeout. Network failures and timeouts
surface as TransportError; httpx exceptions never leave this module.

Requires: httpx>=0.25.0
"""

from __future__ import annotations

import logging

import httpx

from arca_mcp.config import Environment
from arca_mcp.errors import TransportError

logger = logging.getLogger(__name__)

COMMON_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "Accept": "text/xml",
}

DEFAULT_TIMEOUT = 30.0


class SoapClient:
    """Shared POST logic for WSAA and WSFE clients."""

    def __init__(
        self,
        environment: Environment = Environment.TESTING,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            environment: testing or production endpoints
            timeout: Seconds before a request is abandoned
            transport: Optional httpx transport (mocked in tests)
        """
        self.environment = environment
        self.timeout = timeout
        self.transport = transport

    async def _post(self, url: str, body: bytes, soap_action: str) -> httpx.Response:
        """
        POST a SOAP envelope and return the response without status checks.

        WSAA reports faults with HTTP 500 and a SOAP body, so callers parse
        the body first and decide on the status afterwards.
        """
        headers = {**COMMON_HEADERS, "SOAPAction": soap_action}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Timeout after %ss calling %s", self.timeout, url)
            raise TransportError(f"Timeout calling {url}") from e
        except httpx.HTTPError as e:
            logger.warning("HTTP error calling %s: %s", url, e)
            raise TransportError(f"Error calling {url}: {e}") from e

        logger.debug("%s -> HTTP %s (%d bytes)", url, response.status_code, len(response.content))
        return response
