import logging
from functools import lru_cache
from typing import Callable, Literal, Optional, Protocol, Union, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, create_engine, select

from ..config import DirectoryConfig, DirectoryFailurePolicy
from ..models import User
from .errors import ConfigurationError, DirectoryError
from .outcome import AttributeMap
from .registry import SourceRegistry

logger = logging.getLogger(__name__)


@runtime_checkable
class DirectoryLookup(Protocol):
    def validate(self, config: DirectoryConfig, username: str) -> Union[AttributeMap, Literal[False]]:
        """Attributes of `username`, or False when the directory does not accept the user."""
        ...


class LocalUserDirectory:
    """Directory lookup against the local User table."""

    FIELDS = {
        "uid": "uid",
        "displayName": "display_name",
        "mail": "mail",
        "department": "department",
        "eduPersonAffiliation": "affiliation",
    }

    def __init__(self, engine):
        self.engine = engine

    def validate(self, config: DirectoryConfig, username: str) -> Union[AttributeMap, Literal[False]]:
        wanted = config.options.get("attributes") or list(self.FIELDS)
        try:
            with Session(self.engine) as session:
                user = session.exec(select(User).where(User.uid == username)).first()
        except SQLAlchemyError as e:
            raise DirectoryError(f"Directory lookup for {username!r} failed: {e}")

        if user is None or not user.is_active:
            return False

        attributes: AttributeMap = {}
        for name in wanted:
            field = self.FIELDS.get(name)
            if field is None:
                continue
            value = getattr(user, field)
            if value is None or value == "" or value == []:
                continue
            attributes[name] = [str(v) for v in value] if isinstance(value, list) else [str(value)]
        return attributes


@lru_cache
def _directory_engine(url: str):
    # one engine per database URL for the life of the process
    return create_engine(url)


def default_directory_factory(config: DirectoryConfig) -> DirectoryLookup:
    # inline directories: `servers` is the database URL holding the user table
    return LocalUserDirectory(_directory_engine(config.servers))


def merge_recursive(first: AttributeMap, second: AttributeMap) -> AttributeMap:
    """Per-key concatenation, values of `first` before those of `second`."""
    merged = {key: list(values) for key, values in first.items()}
    for key, values in second.items():
        merged.setdefault(key, []).extend(values)
    return merged


class DirectoryAttributeMerger:
    def __init__(
        self,
        registry: Optional[SourceRegistry] = None,
        factory: Callable[[DirectoryConfig], DirectoryLookup] = default_directory_factory,
    ):
        self.registry = registry or SourceRegistry()
        self.factory = factory

    def resolve(self, config: DirectoryConfig) -> DirectoryLookup:
        if config.authsource:
            source = self.registry.get(config.authsource)
            if source is None:
                raise ConfigurationError(f"Could not find authentication source with id {config.authsource}")
            if not isinstance(source, DirectoryLookup):
                raise ConfigurationError(
                    f"Configured ldap.authsource '{config.authsource}' is not an LDAP authsource."
                )
            return source
        try:
            return self.factory(config)
        except (SQLAlchemyError, ValueError) as e:
            raise ConfigurationError(f"Unable to use ldap.servers {config.servers!r}: {e}") from e

    def merge(self, username: str, cas_attributes: AttributeMap, config: DirectoryConfig) -> AttributeMap:
        """
        Add directory attributes to the CAS ones. Both sources are kept: values
        for the same key are concatenated, CAS values first.

        Configuration errors always propagate. Lookup failures propagate as
        DirectoryError under the fatal policy; under the advisory policy they
        are logged and the CAS attributes are returned alone.
        """
        if not config.is_configured:
            return cas_attributes

        lookup = self.resolve(config)
        try:
            directory_attributes = lookup.validate(config, username)
            if directory_attributes is False:
                raise DirectoryError("Failed to authenticate against LDAP-server.")
        except DirectoryError as e:
            if config.on_failure == DirectoryFailurePolicy.ADVISORY:
                logger.warning("Directory lookup for %s failed, using CAS attributes only: %s", username, e)
                return cas_attributes
            raise

        return merge_recursive(cas_attributes, directory_attributes or {})
