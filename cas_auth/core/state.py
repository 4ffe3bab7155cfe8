import json
import logging
import secrets
from typing import Any, Dict, Protocol

from sqlmodel import Session

from ..models import AuthState, utcnow
from .errors import NoState

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    def save(self, state: Dict[str, Any], stage: str) -> str: ...

    def load(self, state_id: str, stage: str) -> Dict[str, Any]: ...

    def delete(self, state_id: str) -> None: ...


STATE_ID = "cas:state_id"


class SQLStateStore:
    """
    Keeps authentication states in the AuthState table.

    Saving a state that already carries an id updates it in place, so the id
    sent to the CAS server stays valid for the whole attempt.
    """

    def __init__(self, engine):
        self.engine = engine

    def save(self, state: Dict[str, Any], stage: str) -> str:
        state_id = state.get(STATE_ID) or secrets.token_urlsafe(32)
        state[STATE_ID] = state_id
        # round-trip through JSON so the stored copy shares nothing with the caller's dict
        data = json.loads(json.dumps(state))
        with Session(self.engine) as session:
            row = session.get(AuthState, state_id)
            if row is None:
                row = AuthState(id=state_id, stage=stage, data=data)
            else:
                row.stage = stage
                row.data = data
                row.updated_at = utcnow()
            session.add(row)
            session.commit()
        return state_id

    def load(self, state_id: str, stage: str) -> Dict[str, Any]:
        with Session(self.engine) as session:
            row = session.get(AuthState, state_id)
            if row is None or row.stage != stage:
                logger.info("No authentication state %s at stage %s", state_id, stage)
                raise NoState(f"Unable to find the current authentication state ({state_id}).")
            return dict(row.data)

    def delete(self, state_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(AuthState, state_id)
            if row is not None:
                session.delete(row)
                session.commit()
