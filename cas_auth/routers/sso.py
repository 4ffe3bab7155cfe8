import logging
from functools import lru_cache
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from ..config import CasSourceConfig
from ..core.directory import LocalUserDirectory
from ..core.errors import AuthenticationFailed, BadRequest, ConfigurationError
from ..core.registry import SourceRegistry
from ..core.source import CASAuthSource, handle_linkback
from ..core.state import SQLStateStore, StateStore
from ..database import engine
from ..settings import COOKIE_NAME, LINKBACK_URL, load_authsources

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cas")

# directory source every CAS source can reference through ldap.authsource
LOCAL_DIRECTORY_ID = "local-directory"


def build_registry(configs: Dict[str, CasSourceConfig], state_store: StateStore, db_engine) -> SourceRegistry:
    registry = SourceRegistry()
    registry.register(LOCAL_DIRECTORY_ID, LocalUserDirectory(db_engine))
    for auth_id, config in configs.items():
        registry.register(auth_id, CASAuthSource(auth_id, config, state_store, registry=registry))
    return registry


@lru_cache
def get_state_store() -> StateStore:
    return SQLStateStore(engine)


@lru_cache
def get_registry() -> SourceRegistry:
    return build_registry(load_authsources(), get_state_store(), engine)


def get_cas_source(auth_id: str, registry: SourceRegistry = Depends(get_registry)) -> CASAuthSource:
    source = registry.get(auth_id)
    if not isinstance(source, CASAuthSource):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown authentication source")
    return source


def linkback_url(request: Request) -> str:
    return LINKBACK_URL or str(request.url_for("cas_linkback"))


@router.get("/{auth_id}/login")
async def sso_login(
    request: Request,
    return_to: str = "/",
    source: CASAuthSource = Depends(get_cas_source),
):
    """
    Start a CAS login: save the state and send the browser to the CAS server,
    which comes back to the linkback with a ticket.
    """
    state = {"ReturnTo": return_to}
    return RedirectResponse(source.authenticate(state, linkback_url(request)), status_code=status.HTTP_302_FOUND)


@router.get("/linkback", name="cas_linkback")
async def sso_linkback(
    request: Request,
    state_id: Optional[str] = Query(None, alias="stateId"),
    ticket: Optional[str] = None,
    registry: SourceRegistry = Depends(get_registry),
    state_store: StateStore = Depends(get_state_store),
):
    try:
        state = await handle_linkback(registry, state_store, state_id, ticket, linkback_url(request))
    except BadRequest as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except AuthenticationFailed as e:
        # details stay in the logs
        logger.info("Linkback for state %s rejected: %s", state_id, e.error.code)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication failed")
    except ConfigurationError as e:
        logger.error("Linkback for state %s: %s", state_id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Authentication source misconfigured")

    response = JSONResponse({
        "user": state[CASAuthSource.USER],
        "attributes": state[CASAuthSource.ATTRIBUTES],
        "return_to": state.get("ReturnTo", "/"),
    })
    response.set_cookie(key=COOKIE_NAME, value=state_id, httponly=True, max_age=1800)
    return response


@router.get("/{auth_id}/logout")
async def sso_logout(
    request: Request,
    return_to: Optional[str] = None,
    source: CASAuthSource = Depends(get_cas_source),
):
    """
    Logout locally and from CAS.
    """
    redirect_url = source.logout(request.cookies.get(COOKIE_NAME), return_to) or "/"
    response = RedirectResponse(redirect_url, status_code=status.HTTP_302_FOUND)
    response.delete_cookie(COOKIE_NAME)
    return response
