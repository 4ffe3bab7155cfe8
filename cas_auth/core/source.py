import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from ..config import CasSourceConfig, DirectoryConfig
from .attribute_mapper import map_attributes
from .cas_client import CASClient
from .directory import DirectoryAttributeMerger, DirectoryLookup, default_directory_factory
from .errors import AuthenticationFailed, BadRequest, CASError, ConfigurationError, ExtractionError
from .outcome import AttributeMap, Failure
from .registry import SourceRegistry
from .state import STATE_ID, StateStore
from .urls import build_url

logger = logging.getLogger(__name__)


class AuthStage(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_CAS_REDIRECT = "awaiting-cas-redirect"
    AWAITING_LINKBACK = "awaiting-linkback"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"


class AuthSource(Protocol):
    auth_id: str

    def authenticate(self, state: Dict[str, Any], linkback_url: str) -> str: ...

    async def finalize_login(self, state: Dict[str, Any], linkback_url: str) -> Dict[str, Any]: ...

    def logout(self, state_id: Optional[str], return_url: Optional[str] = None) -> Optional[str]: ...


class CASAuthSource:
    """
    Authenticate using CAS.

    authenticate() saves the caller's state and returns the CAS login URL;
    the CAS server sends the browser back to the linkback URL with a ticket,
    and finalize_login() turns that ticket into a username and attributes.
    """

    # state store stage markers
    STAGE_INIT = "cas_auth.CASAuthSource.state"
    STAGE_DONE = "cas_auth.CASAuthSource.done"
    STAGE_FAILED = "cas_auth.CASAuthSource.failed"

    # keys in the state dict
    AUTHID = "cas_auth.CASAuthSource.AuthId"
    STAGE = "cas:stage"
    TICKET = "cas:ticket"
    USER = "cas:user"
    ATTRIBUTES = "Attributes"
    EXTRACTION_ERRORS = "cas:extraction_errors"

    def __init__(
        self,
        auth_id: str,
        config: CasSourceConfig,
        state_store: StateStore,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[SourceRegistry] = None,
        directory_factory: Callable[[DirectoryConfig], DirectoryLookup] = default_directory_factory,
    ):
        self.auth_id = auth_id
        self.config = config
        self.state_store = state_store
        self.client = CASClient(config, http_client)
        self.merger = DirectoryAttributeMerger(registry, directory_factory)

    @staticmethod
    def service_url(linkback_url: str, state_id: str) -> str:
        return build_url(linkback_url, {"stateId": state_id})

    def authenticate(self, state: Dict[str, Any], linkback_url: str) -> str:
        """Save the state and return the CAS login URL the browser must be sent to."""
        # the linkback needs the auth id to find this source again
        state[self.AUTHID] = self.auth_id
        state[self.STAGE] = AuthStage.AWAITING_CAS_REDIRECT.value
        state_id = self.state_store.save(state, self.STAGE_INIT)

        login_url = self.client.get_login_url(self.service_url(linkback_url, state_id))
        logger.info("Redirecting to CAS login for source %s (state %s)", self.auth_id, state_id)
        return login_url

    begin_login = authenticate

    async def validate_ticket(self, ticket: str, service_url: str) -> Tuple[str, AttributeMap, List[ExtractionError]]:
        """Run ticket validation and attribute mapping; raises the typed error of the failing stage."""
        outcome = await self.client.validate_ticket(ticket, service_url)
        if isinstance(outcome, Failure):
            outcome.raise_error()

        errors: List[ExtractionError] = []
        attributes = map_attributes(
            outcome, self.config.attribute_rules, self.config.merge_policy, errors
        )
        return outcome.username, attributes, errors

    async def finalize_login(self, state: Dict[str, Any], linkback_url: str) -> Dict[str, Any]:
        """
        Called by the linkback with the state loaded and the ticket stored
        under cas:ticket. On success the state gets the username and
        Attributes and is saved as completed. On failure the state is saved
        as failed, no attributes are stored, and AuthenticationFailed is raised.
        """
        ticket = state.get(self.TICKET)
        state_id = state.get(STATE_ID)
        if not ticket:
            raise BadRequest("Missing ticket parameter.")
        if not state_id:
            raise BadRequest("Missing stateId parameter.")
        if state.get(self.AUTHID) != self.auth_id:
            raise ConfigurationError(
                f"Authentication state belongs to source {state.get(self.AUTHID)!r}, not {self.auth_id!r}"
            )

        state[self.STAGE] = AuthStage.VALIDATING.value
        service = self.service_url(linkback_url, state_id)
        try:
            username, attributes, errors = await self.validate_ticket(ticket, service)
            attributes = self.merger.merge(username, attributes, self.config.directory)
        except CASError as e:
            # rejection messages can quote the ticket
            logger.warning("CAS login failed for source %s (state %s): %s", self.auth_id, state_id, e.code)
            logger.debug("CAS login failure detail for state %s: %s", state_id, e)
            state[self.STAGE] = AuthStage.FAILED.value
            self.state_store.save(state, self.STAGE_FAILED)
            raise AuthenticationFailed(e) from e

        state[self.USER] = username
        state[self.ATTRIBUTES] = attributes
        if errors:
            state[self.EXTRACTION_ERRORS] = [str(e) for e in errors]
        state[self.STAGE] = AuthStage.COMPLETED.value
        self.state_store.save(state, self.STAGE_DONE)
        logger.info("CAS login completed for %s via source %s", username, self.auth_id)
        return state

    finish_login = finalize_login

    def logout(self, state_id: Optional[str], return_url: Optional[str] = None) -> Optional[str]:
        """Forget the state and return the CAS logout URL, if one is configured."""
        if state_id:
            self.state_store.delete(state_id)
        return self.client.get_logout_url(return_url)


async def handle_linkback(
    registry: SourceRegistry,
    state_store: StateStore,
    state_id: Optional[str],
    ticket: Optional[str],
    linkback_url: str,
) -> Dict[str, Any]:
    """
    Handle the browser coming back from CAS: find the saved state and the
    source that started the login, then let that source finish it.
    """
    if not state_id:
        raise BadRequest("Missing stateId parameter.")
    state = state_store.load(state_id, CASAuthSource.STAGE_INIT)
    state[STATE_ID] = state_id
    state[CASAuthSource.STAGE] = AuthStage.AWAITING_LINKBACK.value

    if not ticket:
        raise BadRequest("Missing ticket parameter.")
    state[CASAuthSource.TICKET] = ticket

    source_id = state.get(CASAuthSource.AUTHID)
    if source_id is None:
        raise BadRequest("Authentication state does not name an authentication source.")
    source = registry.get(source_id)
    if source is None:
        raise ConfigurationError(f"Could not find authentication source with id {source_id}")

    return await source.finalize_login(state, linkback_url)
