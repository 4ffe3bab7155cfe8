from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import JSON, Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """Local user directory, consulted after CAS validation to add attributes."""

    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(index=True, unique=True)  # CAS username
    display_name: str
    mail: Optional[str] = None
    department: Optional[str] = None
    # e.g. ["student", "member"]
    affiliation: List[str] = Field(default=[], sa_type=JSON)
    is_active: bool = Field(default=True)


class AuthState(SQLModel, table=True):
    """In-flight authentication state, saved before the CAS redirect."""

    id: str = Field(primary_key=True)
    stage: str = Field(index=True)
    data: Dict[str, Any] = Field(default={}, sa_type=JSON)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
