import logging
import re
from typing import Optional

import httpx

from ..config import CasSourceConfig, ValidationMethod
from . import response_parser
from .errors import TransportError, ValidationRejected
from .outcome import Failure, Success, ValidationOutcome, ValidationRequest
from .urls import build_url

logger = logging.getLogger(__name__)


class CASClient:
    def __init__(self, config: CasSourceConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http_client = http_client

    def get_login_url(self, service_url: str) -> str:
        """
        Generate the CAS login URL with the service parameter.
        """
        return build_url(self.config.login_url, {'service': service_url})

    def get_logout_url(self, service_url: str = None) -> Optional[str]:
        """
        Generate the CAS logout URL, or None when the source has no logout endpoint.
        """
        if not self.config.logout_url:
            return None
        if service_url:
            return build_url(self.config.logout_url, {'service': service_url})
        return self.config.logout_url

    async def validate_ticket(self, ticket: str, service_url: str) -> ValidationOutcome:
        """
        Validate the Service Ticket (ST) against the CAS server.
        Uses /validate (CAS 1.0) or /serviceValidate (CAS 2.0) depending on configuration.

        Exactly one request is made per call: tickets are single use, so a
        failed attempt is reported to the caller and never retried here.
        """
        request = ValidationRequest(ticket=ticket, service_url=service_url)
        try:
            body = await self._fetch(request)
        except TransportError as e:
            logger.error("CAS Validation Error: %s", e)
            return Failure(e.code, e.message, e)

        if self.config.validation_method == ValidationMethod.CAS1:
            return self._parse_cas1(body, request)
        return response_parser.parse(body, self.config.response_dialect)

    async def _fetch(self, request: ValidationRequest) -> str:
        params = {
            'ticket': request.ticket,
            'service': request.service_url,
        }
        logger.debug("CAS validation request to %s for ticket %s", self.config.validation_url, request.ticket)
        try:
            if self._http_client is not None:
                response = await self._http_client.get(
                    self.config.validation_url, params=params, timeout=self.config.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(
                        self.config.validation_url, params=params, timeout=self.config.timeout
                    )
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}")

        if response.status_code != 200:
            raise TransportError(f"CAS Validation Failed: HTTP {response.status_code}", code="http-error")
        return response.text

    @staticmethod
    def _parse_cas1(body: str, request: ValidationRequest) -> ValidationOutcome:
        # CAS 1.0 answers "yes\n<user>\n" or "no\n\n"
        lines = re.split(r"\r?\n", body)
        if lines[0] == "yes" and len(lines) > 1:
            return Success(username=lines[1])
        message = f"Failed to validate CAS service ticket: {request.ticket}"
        logger.warning("CAS Auth Failure: CAS 1.0 server rejected the service ticket")
        logger.debug("CAS Auth Failure: %s", message)
        return Failure(ValidationRejected.code, message, ValidationRejected(message))
